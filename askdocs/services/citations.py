"""
Inline citation extraction

Recognizes the citation surface forms the answer model writes (English,
French and Arabic variants) and turns each match into a CitationSpan bound to
a file name. Text that matches no form passes through unchanged.
"""
import re
from typing import Iterable, List, NamedTuple, Optional, Union

from askdocs.models.chat import CitationSpan, TextSpan

DEFAULT_EXTENSIONS = ("pdf", "docx", "doc", "txt", "xlsx", "xls", "pptx", "ppt", "csv", "md")

_QUOTE_CHARS = "\"'`*“”«»‘’„"

_LINE_WORD = r"(?:lines?|lignes?)"


class CitationPattern(NamedTuple):
    """
    One surface form. ``regex`` names the file capture ``file`` and the
    optional line capture ``line``; ``<EXT>`` expands to the known document
    extensions.
    """
    name: str
    regex: str


# Declaration order decides between forms matching at the same position;
# across positions the leftmost match wins.
CITATION_PATTERNS = [
    CitationPattern(
        "bracket_source",
        r"\[\s*Source\s*:\s*(?P<file>[^,\]\n]+?)\s*"
        r"(?:,\s*" + _LINE_WORD + r"\s*(?P<line>\d+)[^\]\n]*)?\]"
    ),
    CitationPattern(
        "paren_source",
        r"\*?\(\s*Source\s*:\s*(?P<file>[^,)\n]+?)\s*"
        r"(?:,\s*" + _LINE_WORD + r"\s*(?P<line>\d+)[^)\n]*)?\)\*?"
    ),
    CitationPattern(
        "bracket_from",
        r"\[\s*(?:From(?:\s+file)?|File)\s*:?\s*(?P<file>[^,\]\n]+?)\s*"
        r"(?:,\s*" + _LINE_WORD + r"\s*(?P<line>\d+)[^\]\n]*)?\]"
    ),
    CitationPattern(
        "selon_document",
        r"Selon\s+le\s+document\s*[\"“”«'‘’]\s*(?P<file>[^\"“”«»'‘’\n]+?)\s*[\"“”»'‘’]"
        r"\s*,?\s*(?:à|a)\s+la\s+ligne\s*(?P<line>\d+)"
    ),
    CitationPattern(
        "arabic_line",
        r"(?:\*\s*)?--\s*(?P<file>[^\n-][^\n]*?)\s*--[^\n]*?السطر\s*(?P<line>\d+)"
    ),
    CitationPattern(
        "from_file",
        r"\bFrom\s+file\s*:\s*(?P<file>[^\n,;()\[\]\"“”]*?\.(?:<EXT>)\b"
        r"|[^\s,;()\[\]\"“”]*[^\s,;:.()\[\]\"“”])"
    ),
    CitationPattern(
        "from_name",
        r"\bFrom\s+(?P<file>[^\s,;()\[\]\"“”]+\.(?:<EXT>))\b"
    ),
    CitationPattern(
        "quoted_name",
        r"[\"“«]\s*(?P<file>[^\"“”«»\n]+?\.(?:<EXT>))\s*[\"”»]"
    ),
    CitationPattern(
        "sources_item_line",
        r"^[ \t]*[-*][ \t]+(?P<file>[^\n()\[\]]+?\.[a-z0-9]{1,5})[ \t]*"
        r"\(" + _LINE_WORD + r"[ \t]*(?P<line>\d+)\)[ \t]*$"
    ),
    CitationPattern(
        "sources_item",
        r"^[ \t]*[-*][ \t]+(?P<file>[^\n()\[\]]+?\.(?:<EXT>))[ \t]*$"
    ),
]


def extension_alternation(extensions: Iterable[str]) -> str:
    """Regex alternation of extensions, longest first so ``docx`` beats ``doc``"""
    cleaned = {e.strip().lower().lstrip(".") for e in extensions if e and e.strip()}
    return "|".join(re.escape(e) for e in sorted(cleaned, key=lambda e: (-len(e), e)))


def clean_file_name(raw: Optional[str]) -> str:
    """Printable, trimmed, quote-stripped file name ("" when nothing is left)"""
    if not raw:
        return ""
    name = "".join(ch for ch in raw if ch.isprintable())
    return name.strip().strip(_QUOTE_CHARS).strip()


class CitationExtractor:
    """Finds citations with one combined, linear-time regex pass"""

    def __init__(self, extensions: Iterable[str] = DEFAULT_EXTENSIONS):
        ext = extension_alternation(extensions) or extension_alternation(DEFAULT_EXTENSIONS)
        self.extensions = ext.split("|")

        parts = []
        for pattern in CITATION_PATTERNS:
            regex = (
                pattern.regex
                .replace("<EXT>", ext)
                .replace("(?P<file>", f"(?P<{pattern.name}__file>")
                .replace("(?P<line>", f"(?P<{pattern.name}__line>")
            )
            parts.append(f"(?P<{pattern.name}>{regex})")

        self._names = [pattern.name for pattern in CITATION_PATTERNS]
        self._regex = re.compile("|".join(parts), re.IGNORECASE | re.MULTILINE)

    def split(self, text: str) -> List[Union[TextSpan, CitationSpan]]:
        """Partition text into plain runs and citation spans, in order"""
        spans: List[Union[TextSpan, CitationSpan]] = []
        last = 0

        for match in self._regex.finditer(text):
            citation = self._to_citation(match)
            if citation is None:
                # Empty file name: leave the matched text alone
                continue
            if match.start() > last:
                spans.append(TextSpan(value=text[last:match.start()]))
            spans.append(citation)
            last = match.end()

        if last < len(text):
            spans.append(TextSpan(value=text[last:]))
        return spans

    def find(self, text: str) -> List[CitationSpan]:
        """Only the citations found in text"""
        return [span for span in self.split(text) if isinstance(span, CitationSpan)]

    def _to_citation(self, match: re.Match) -> Optional[CitationSpan]:
        for name in self._names:
            if match.group(name) is None:
                continue

            file_name = clean_file_name(match.group(f"{name}__file"))
            if not file_name:
                return None

            line = self._group(match, f"{name}__line")
            return CitationSpan(
                display_text=match.group(0),
                file_name=file_name,
                line_number=int(line) if line else None,
                pattern=name
            )
        return None

    @staticmethod
    def _group(match: re.Match, name: str) -> Optional[str]:
        try:
            return match.group(name)
        except IndexError:
            return None
