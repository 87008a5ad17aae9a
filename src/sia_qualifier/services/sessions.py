"""In-memory session store (conversations live only as long as the process)."""

import logging
from typing import Dict, Optional

from sia_qualifier.agents.controller import SessionController
from sia_qualifier.agents.orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)


class ConversationNotFoundError(KeyError):
    pass


class SessionStore:
    def __init__(self, orchestrator: TurnOrchestrator):
        self.orchestrator = orchestrator
        self._sessions: Dict[str, SessionController] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, conversation_id: str) -> SessionController:
        try:
            return self._sessions[conversation_id]
        except KeyError:
            raise ConversationNotFoundError(conversation_id) from None

    def get_or_create(self, conversation_id: Optional[str] = None) -> SessionController:
        if conversation_id and conversation_id in self._sessions:
            return self._sessions[conversation_id]
        session = SessionController(self.orchestrator, conversation_id=conversation_id)
        self._sessions[session.conversation_id] = session
        logger.info(f"[SESSION] Nova conversa {session.conversation_id}")
        return session

    def drop(self, conversation_id: str) -> None:
        """Reset and forget a conversation; raises SessionBusyError while streaming."""
        session = self.get(conversation_id)
        session.reset()
        del self._sessions[conversation_id]
        logger.info(f"[SESSION] Conversa {conversation_id} removida")
