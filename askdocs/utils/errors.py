"""
Error taxonomy for the chat stream pipeline
"""
from typing import Optional


class AskDocsError(Exception):
    """Base class for askdocs errors"""


class NetworkError(AskDocsError):
    """Backend connection failed or answered with a non-2xx status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamError(NetworkError):
    """Reading the response body failed after the stream had started"""


class FrameParseError(AskDocsError):
    """A single frame carried a payload that could not be decoded"""

    def __init__(self, message: str, payload: str = ""):
        super().__init__(message)
        self.payload = payload


class MessageFinalizedError(AskDocsError):
    """Content was appended to a message that is already finalized"""
