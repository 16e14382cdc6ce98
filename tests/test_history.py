"""Tests for history storage and document links."""

import pytest

from askdocs.models.chat import ChatMessage, MessageRole, SourceReference
from askdocs.services.files import StorageFileResolver, link_sources
from askdocs.services.history import InMemoryHistoryStore, room_title


def answer(text: str) -> ChatMessage:
    message = ChatMessage(role=MessageRole.ASSISTANT, content=text)
    message.add_sources([SourceReference(file_name="a.pdf", line_number=1)])
    message.finalize()
    return message


@pytest.mark.asyncio
async def test_save_turn_creates_room():
    """Test room creation on the first turn."""
    store = InMemoryHistoryStore()
    room = await store.save_turn(None, "What is the refund policy?", answer("Thirty days."))

    assert room.title == "What is the refund policy?"
    assert room.user_answers == ["What is the refund policy?"]
    assert room.ai_answers[0].content == "Thirty days."
    assert room.ai_answers[0].sources[0].file_name == "a.pdf"
    assert room.updated_at is not None


@pytest.mark.asyncio
async def test_save_turn_appends_to_room():
    """Test a second turn in the same room."""
    store = InMemoryHistoryStore()
    room = await store.save_turn("room-1", "First", answer("One"))
    await store.save_turn(room.id, "Second", answer("Two"))

    stored = await store.get_room("room-1")
    assert stored.user_answers == ["First", "Second"]
    assert [a.content for a in stored.ai_answers] == ["One", "Two"]
    assert len(await store.list_rooms()) == 1


@pytest.mark.asyncio
async def test_streaming_message_cannot_be_saved():
    """Only finalized answers are persisted."""
    store = InMemoryHistoryStore()
    with pytest.raises(ValueError):
        await store.save_turn(None, "q", ChatMessage(role=MessageRole.ASSISTANT))


@pytest.mark.asyncio
async def test_stored_rooms_are_copies():
    """Callers cannot mutate stored history."""
    store = InMemoryHistoryStore()
    room = await store.save_turn(None, "q", answer("a"))
    room.user_answers.append("tampered")
    assert (await store.get_room(room.id)).user_answers == ["q"]


def test_room_title_truncated():
    """Test long titles."""
    title = room_title("word " * 30)
    assert len(title) <= 53
    assert title.endswith("...")
    assert room_title("   ") == "New conversation"


def test_storage_resolver():
    """Test public object URLs."""
    resolver = StorageFileResolver("http://storage.test/", "documents")
    assert resolver.resolve("report.pdf") == (
        "http://storage.test/storage/v1/object/public/documents/report.pdf"
    )
    assert resolver.resolve("dossier/l'été.pdf").endswith("/documents/dossier/l%27%C3%A9t%C3%A9.pdf")
    assert resolver.resolve("  ") is None


def test_link_sources():
    """Test serialized sources with URLs."""
    resolver = StorageFileResolver("http://storage.test", "documents")
    linked = link_sources([SourceReference(file_name="a.pdf", line_number=2, relevance_score=0.5)], resolver)
    assert linked == [{
        "fileName": "a.pdf",
        "lineNumber": 2,
        "score": 0.5,
        "url": "http://storage.test/storage/v1/object/public/documents/a.pdf"
    }]
