"""
Metrics tracking utilities
"""
from typing import Optional

from prometheus_client import Counter, Histogram
import structlog

logger = structlog.get_logger()

# Define metrics
stream_frames_counter = Counter(
    'askdocs_stream_frames_total',
    'Frames received from the chat backend',
    ['kind']
)

frame_parse_errors_counter = Counter(
    'askdocs_frame_parse_errors_total',
    'Frames dropped because their payload could not be decoded'
)

stream_failures_counter = Counter(
    'askdocs_stream_failures_total',
    'Chat streams that ended on a failure',
    ['reason']
)

citations_counter = Counter(
    'askdocs_citations_extracted_total',
    'Inline citations turned into source references',
    ['pattern']
)

first_delta_latency = Histogram(
    'askdocs_first_delta_latency_seconds',
    'Time from request to first text delta',
    buckets=[0.1, 0.5, 1.0, 1.5, 2.0, 3.0, 5.0, 10.0]
)

stream_duration = Histogram(
    'askdocs_stream_duration_seconds',
    'Total duration of a streamed answer',
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0]
)


def track_frame(kind: str):
    """Count one received frame by interpreted kind"""
    stream_frames_counter.labels(kind=kind).inc()


def track_parse_error():
    """Count one dropped frame"""
    frame_parse_errors_counter.inc()


def track_stream_failure(reason: str):
    """Count a failed or cancelled stream"""
    stream_failures_counter.labels(reason=reason).inc()


def track_citation(pattern: str):
    """Count an extracted citation by surface form"""
    citations_counter.labels(pattern=pattern).inc()


def track_stream_completed(
    duration: float,
    frames: int,
    characters: int,
    sources: int = 0,
    first_delta: Optional[float] = None
):
    """Track timings of a finished stream"""
    stream_duration.observe(duration)
    if first_delta is not None:
        first_delta_latency.observe(first_delta)
    logger.info(
        "Stream completed",
        duration=duration,
        frames=frames,
        characters=characters,
        sources=sources,
        time_to_first_delta=first_delta
    )
