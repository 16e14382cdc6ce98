"""
Conversation history storage
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog

from askdocs.models.chat import AIAnswer, ChatMessage, Room

logger = structlog.get_logger()

TITLE_LENGTH = 50


def room_title(question: str) -> str:
    """First question, collapsed and truncated"""
    title = " ".join(question.split())
    if len(title) > TITLE_LENGTH:
        title = title[:TITLE_LENGTH].rstrip() + "..."
    return title or "New conversation"


class HistoryStore(ABC):
    """Where finalized turns go"""

    @abstractmethod
    async def save_turn(
        self,
        room_id: Optional[str],
        question: str,
        answer: ChatMessage
    ) -> Room:
        """Append one question/answer pair, creating the room if needed"""

    @abstractmethod
    async def get_room(self, room_id: str) -> Optional[Room]:
        pass

    @abstractmethod
    async def list_rooms(self) -> List[Room]:
        pass


class InMemoryHistoryStore(HistoryStore):
    """Process-local rooms, lost on restart"""

    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    async def save_turn(
        self,
        room_id: Optional[str],
        question: str,
        answer: ChatMessage
    ) -> Room:
        if not answer.is_finalized:
            raise ValueError("Only finalized answers can be saved")

        async with self._lock:
            room = self._rooms.get(room_id) if room_id else None
            if room is None:
                room = Room(title=room_title(question))
                if room_id:
                    room = room.model_copy(update={"id": room_id})
                self._rooms[room.id] = room
                logger.info("Room created", room_id=room.id)

            room.user_answers.append(question)
            room.ai_answers.append(AIAnswer(content=answer.content, sources=list(answer.sources)))
            room.updated_at = datetime.now(timezone.utc)

        logger.debug("Turn saved", room_id=room.id, turns=len(room.ai_answers))
        return room.model_copy(deep=True)

    async def get_room(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    async def list_rooms(self) -> List[Room]:
        return [room.model_copy(deep=True) for room in self._rooms.values()]
