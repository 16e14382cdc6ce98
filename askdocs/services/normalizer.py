"""
Markdown repair and span rendering for assistant answers

Model output often arrives with glued headings, tables and lists, escaped
newlines and leftover provenance markers. ``normalize`` repairs the markdown;
``MessageRenderer`` turns the repaired text into text, citation and table
spans.
"""
import re
from typing import Iterable, List, NamedTuple, Optional, Tuple, Union

from askdocs.models.chat import (
    CitationSpan,
    RenderedMessage,
    SourceReference,
    StrongSpan,
    TableHeaderSpan,
    TableRowSpan,
    TextSpan,
)
from askdocs.services.citations import (
    DEFAULT_EXTENSIONS,
    CitationExtractor,
    clean_file_name,
    extension_alternation,
)
from askdocs.services.files import unique_sources

_ESCAPED_NEWLINE = re.compile(r"\\r\\n|\\n")
_HEADING_SPACE = re.compile(r"^([ \t]*)(#{2,6})(?=[^\s#])", re.MULTILINE)
_GLUED_HEADING = re.compile(r"(?<=[^\n#|])[ \t]*(#{2,6})[ \t]*(?=[^\s#|])")
_TABLE_SEPARATOR = re.compile(r"[ \t]*\|?[ \t]*:?-")
_GLUED_LIST = re.compile(r":[ \t]+(?=(?:[-*]|\d{1,3}\.)[ \t]+\S)")
_BLANK_RUN = re.compile(r"\n(?:[ \t]*\n){2,}")
_STRONG = re.compile(r"\*\*([^*\n]+?)\*\*")


def normalize(text: str) -> str:
    """
    Repair common markdown defects. Idempotent.

    - literal ``\\n`` sequences become real newlines
    - headings get a space after their hashes and a blank line before them
    - a table header glued to preceding text moves to its own paragraph
    - a list glued to a colon starts on its own paragraph
    - runs of blank lines collapse to one
    """
    if not text:
        return ""

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _ESCAPED_NEWLINE.sub("\n", text)
    text = _HEADING_SPACE.sub(r"\1\2 ", text)
    text = _GLUED_HEADING.sub(r"\n\n\1 ", text)
    text = split_glued_tables(text)
    text = _GLUED_LIST.sub(":\n\n", text)
    text = _BLANK_RUN.sub("\n\n", text)
    return text.strip()


def split_glued_tables(text: str) -> str:
    """Move a header row glued to prose onto its own paragraph, one line at a time"""
    lines = text.split("\n")
    repaired = []

    for i, line in enumerate(lines):
        prefix, pipe, rest = line.partition("|")
        head = prefix.rstrip(" \t")
        if (
            pipe
            and head.strip()
            and rest.rstrip(" \t").endswith("|")
            and i + 1 < len(lines)
            and _TABLE_SEPARATOR.match(lines[i + 1])
        ):
            repaired.extend([head, "", pipe + rest])
        else:
            repaired.append(line)

    return "\n".join(repaired)


class Block(NamedTuple):
    kind: str  # "text" or "table"
    lines: List[str]


def segment_blocks(text: str) -> List[Block]:
    """Group consecutive lines into pipe-table runs and text runs"""
    blocks: List[Block] = []
    kind = None
    lines: List[str] = []

    for line in text.split("\n"):
        line_kind = "table" if line.strip().startswith("|") else "text"
        if line_kind != kind:
            if lines:
                blocks.append(Block(kind, lines))
            kind, lines = line_kind, []
        lines.append(line)

    if lines:
        blocks.append(Block(kind, lines))
    return blocks


def is_structured_table(lines: List[str]) -> bool:
    """Header line plus a separator line containing dashes"""
    return len(lines) >= 2 and "-" in lines[1]


def parse_table_row(line: str) -> List[str]:
    cells = [cell.strip() for cell in line.strip().split("|")]
    if cells and cells[0] == "":
        cells = cells[1:]
    if cells and cells[-1] == "":
        cells = cells[:-1]
    return cells


def split_strong(text: str) -> List[Union[TextSpan, StrongSpan]]:
    """Split ``**bold**`` runs out of plain text"""
    spans: List[Union[TextSpan, StrongSpan]] = []
    last = 0
    for match in _STRONG.finditer(text):
        if match.start() > last:
            spans.append(TextSpan(value=text[last:match.start()]))
        spans.append(StrongSpan(value=match.group(1)))
        last = match.end()
    if last < len(text):
        spans.append(TextSpan(value=text[last:]))
    return spans


class MessageRenderer:
    """
    Renders answer text into spans.

    With provenance stripping on, raw ``Source:`` lines, ``[From ...]``
    remnants and bracketed file names are removed from plain text; the file
    names they mention are kept as sources.
    """

    def __init__(
        self,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        strip_provenance: bool = True,
        extractor: Optional[CitationExtractor] = None
    ):
        extensions = list(extensions)
        self.extractor = extractor or CitationExtractor(extensions)
        self.strip_provenance = strip_provenance

        ext = extension_alternation(extensions) or extension_alternation(DEFAULT_EXTENSIONS)
        self._source_line = re.compile(
            r"^[ \t]*(?:\*\*|__)?Source(?:\*\*|__)?[ \t]*:(?:\*\*|__)?(?P<rest>[^\n]*)(?:\n|$)",
            re.IGNORECASE | re.MULTILINE
        )
        self._from_remnant = re.compile(r"\[From\s+(?P<rest>[^\]\n]+)\]", re.IGNORECASE)
        self._bracketed_file = re.compile(
            r"\[(?P<rest>[^\]\n]*?\.(?:" + ext + r")[^\]\n]*?)\](?!\()",
            re.IGNORECASE
        )
        self._file_reference = re.compile(
            r"(?P<file>[^\s,;:()\[\]\"“”'*]+\.(?:" + ext + r"))\b"
            r"(?:\s*,?\s*(?:lines?|lignes?)\s*(?P<line>\d+))?",
            re.IGNORECASE
        )

    def render(self, text: str, strip_provenance: Optional[bool] = None) -> RenderedMessage:
        """Normalize text and segment it into render-ready spans"""
        if strip_provenance is None:
            strip_provenance = self.strip_provenance

        normalized = normalize(text)
        spans = []
        citations: List[CitationSpan] = []
        captured: List[SourceReference] = []

        for block in segment_blocks(normalized):
            if block.kind == "table" and is_structured_table(block.lines):
                spans.append(self._table_span(TableHeaderSpan, block.lines[0], citations))
                for line in block.lines[2:]:
                    spans.append(self._table_span(TableRowSpan, line, citations))
                continue

            body = "\n".join(block.lines).strip()
            if not body:
                continue

            at_line_start = True
            for piece in self.extractor.split(body):
                if isinstance(piece, CitationSpan):
                    spans.append(piece)
                    citations.append(piece)
                    at_line_start = False
                    continue

                value = piece.value
                if strip_provenance:
                    value, found = self.remove_provenance(value, at_line_start=at_line_start)
                    captured.extend(found)
                if value:
                    spans.extend(split_strong(value))

        sources = unique_sources([c.to_source() for c in citations] + captured)
        return RenderedMessage(
            text=normalized,
            spans=spans,
            citations=citations,
            sources=sources
        )

    def remove_provenance(
        self,
        text: str,
        at_line_start: bool = True
    ) -> Tuple[str, List[SourceReference]]:
        """
        Strip provenance scaffolding, returning the files it named.

        ``at_line_start`` is False when ``text`` continues a line, e.g. right
        after a citation span; its first line is then never a ``Source:`` line.
        """
        found: List[SourceReference] = []

        def capture(match: re.Match) -> str:
            found.extend(self._references(match.group("rest")))
            return ""

        if at_line_start:
            text = self._source_line.sub(capture, text)
        else:
            first, newline, rest = text.partition("\n")
            text = first + newline + self._source_line.sub(capture, rest)
        text = self._from_remnant.sub(capture, text)
        text = self._bracketed_file.sub(capture, text)
        return _BLANK_RUN.sub("\n\n", text), found

    def _references(self, text: str) -> List[SourceReference]:
        references = []
        for match in self._file_reference.finditer(text):
            file_name = clean_file_name(match.group("file"))
            if file_name:
                line = match.group("line")
                references.append(SourceReference(
                    file_name=file_name,
                    line_number=int(line) if line else None
                ))
        return references

    def _table_span(self, span_type, line: str, citations: List[CitationSpan]):
        cells = parse_table_row(line)
        row_citations = [c for cell in cells for c in self.extractor.find(cell)]
        citations.extend(row_citations)
        return span_type(cells=cells, citations=row_citations)
