"""
Source bookkeeping and document links
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

from askdocs.models.chat import SourceReference


def unique_sources(sources: Iterable[SourceReference]) -> List[SourceReference]:
    """
    One entry per file name, in first-seen order.

    When a file appears twice the higher relevance score wins, and a missing
    line number or excerpt is filled in from the other entry.
    """
    merged: Dict[str, SourceReference] = {}

    for source in sources:
        current = merged.get(source.file_name)
        if current is None:
            merged[source.file_name] = source
            continue

        best, other = current, source
        if (source.relevance_score or 0) > (current.relevance_score or 0):
            best, other = source, current

        merged[source.file_name] = best.model_copy(update={
            "line_number": best.line_number if best.line_number is not None else other.line_number,
            "excerpt_text": best.excerpt_text or other.excerpt_text,
        })

    return list(merged.values())


class FileResolver(ABC):
    """Turns a cited file name into something a client can open"""

    @abstractmethod
    def resolve(self, file_name: str) -> Optional[str]:
        """URL for the file, or None when it cannot be linked"""


class StorageFileResolver(FileResolver):
    """Public object URLs in a storage bucket"""

    def __init__(self, base_url: str, bucket: str = "documents"):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket.strip("/")

    def resolve(self, file_name: str) -> Optional[str]:
        path = (file_name or "").strip().lstrip("/")
        if not path:
            return None
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"


def link_sources(
    sources: Iterable[SourceReference],
    resolver: Optional[FileResolver]
) -> List[Dict[str, Any]]:
    """Serialized sources, each with the URL the resolver gives it"""
    linked = []
    for source in sources:
        item = source.model_dump(by_alias=True, exclude_none=True)
        item["url"] = resolver.resolve(source.file_name) if resolver else None
        linked.append(item)
    return linked
