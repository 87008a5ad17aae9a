"""
Session controller.

Owns one conversation's history and is the only writer to it. Every
mutation happens synchronously when the method is called. Operations that
trigger a model turn return a TurnStream, which the caller must consume or
close; the session is released when it ends. The controller applies each
event to the assistant message before passing it on, so history is always
up to date with what the client has seen.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator, Callable, List, Optional

from sia_qualifier.agents.location_selection import format_location_selection
from sia_qualifier.agents.orchestrator import TurnOrchestrator
from sia_qualifier.agents.session_state import SessionSnapshot, derive_session_state, pending_location_request
from sia_qualifier.agents.transcript import apply_event
from sia_qualifier.models.messages import Message, Role, TextPart, ToolInvocationPart, TurnEvent, TurnStart, new_id
from sia_qualifier.models.schemas import LocationSelection, TurnSettings

logger = logging.getLogger(__name__)


class SessionBusyError(Exception):
    """A turn is already streaming for this session."""


class MessageNotFoundError(Exception):
    """No message with the given id exists in the session."""


class TurnStream:
    """
    Async iterator over one turn's events.

    The session is released when the events run out, when iteration fails
    and on aclose(), including a stream that was never iterated.
    """

    def __init__(self, events: AsyncIterator[TurnEvent], release: Callable[[], None]):
        self._events = events
        self._release = release

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> TurnEvent:
        try:
            return await self._events.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        try:
            await self._events.aclose()
        finally:
            self._release()


class SessionController:
    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        conversation_id: Optional[str] = None,
        history: Optional[List[Message]] = None,
    ):
        self.orchestrator = orchestrator
        self.conversation_id = conversation_id or new_id("conv")
        self.history: List[Message] = list(history or [])
        self._streaming = False
        self._cancel_event: Optional[asyncio.Event] = None

    # -----------------------------
    # READS
    # -----------------------------
    @property
    def is_streaming(self) -> bool:
        return self._streaming

    def snapshot(self) -> SessionSnapshot:
        return derive_session_state(self.history)

    def pending_location_request(self) -> Optional[ToolInvocationPart]:
        return pending_location_request(self.history)

    def get_message(self, message_id: str) -> Message:
        return self.history[self._index(message_id)]

    # -----------------------------
    # MUTATIONS
    # -----------------------------
    def append(self, text: str, turn_settings: Optional[TurnSettings] = None) -> TurnStream:
        """Append a user message and start a turn answering it."""
        self._ensure_idle()
        self.history.append(Message.user(text))
        return self._start_turn(turn_settings)

    def send_location(
        self, selection: LocationSelection, turn_settings: Optional[TurnSettings] = None
    ) -> TurnStream:
        """Send an address picked in the assisted search as a user message."""
        logger.info(f"[SESSION] {self.conversation_id}: localização selecionada {selection.formatted_address!r}")
        return self.append(format_location_selection(selection), turn_settings)

    def delete(self, message_id: str) -> Message:
        """Remove one message; aggregates it contributed to roll back."""
        self._ensure_idle()
        return self.history.pop(self._index(message_id))

    def edit_and_regenerate(
        self, message_id: str, text: str, turn_settings: Optional[TurnSettings] = None
    ) -> Optional[TurnStream]:
        """
        Edit a message.

        User message: everything after it is dropped, its text replaced and
        a new turn started (the returned iterator). Assistant message: its
        text is replaced in place, tool parts are kept and no turn runs
        (returns None).
        """
        self._ensure_idle()
        index = self._index(message_id)
        message = self.history[index]

        if message.role == Role.USER:
            del self.history[index + 1:]
            message.parts = [TextPart(text=text)]
            return self._start_turn(turn_settings)

        _replace_text(message, text)
        return None

    def regenerate(self, turn_settings: Optional[TurnSettings] = None) -> TurnStream:
        """Drop the assistant replies after the last user message and answer it again."""
        self._ensure_idle()
        last_user = None
        for index in range(len(self.history) - 1, -1, -1):
            if self.history[index].role == Role.USER:
                last_user = index
                break
        if last_user is None:
            raise MessageNotFoundError("No user message to regenerate from")

        del self.history[last_user + 1:]
        return self._start_turn(turn_settings)

    def stop(self) -> bool:
        """Ask the running turn to stop. Returns False when nothing is streaming."""
        if not self._streaming or self._cancel_event is None:
            return False
        logger.info(f"[SESSION] {self.conversation_id}: interrompendo turno")
        self._cancel_event.set()
        return True

    def reset(self) -> None:
        self._ensure_idle()
        self.history = []

    def load(self, messages: List[Message]) -> None:
        """Replace the whole history (canned scenarios)."""
        self._ensure_idle()
        self.history = list(messages)

    # -----------------------------
    # HELPERS
    # -----------------------------
    def _ensure_idle(self) -> None:
        if self._streaming:
            raise SessionBusyError(f"Conversation {self.conversation_id} is already generating a reply")

    def _index(self, message_id: str) -> int:
        for index, message in enumerate(self.history):
            if message.id == message_id:
                return index
        raise MessageNotFoundError(f"Message {message_id} not found")

    def _start_turn(self, turn_settings: Optional[TurnSettings]) -> TurnStream:
        # The session is claimed now, not when iteration starts
        cancel_event = asyncio.Event()
        self._streaming = True
        self._cancel_event = cancel_event
        events = self._stream(turn_settings or TurnSettings(), cancel_event)
        return TurnStream(events, lambda: self._release(cancel_event))

    def _release(self, cancel_event: asyncio.Event) -> None:
        # A stale stream must not release a newer turn
        if self._cancel_event is cancel_event:
            self._streaming = False
            self._cancel_event = None

    async def _stream(self, turn_settings: TurnSettings, cancel_event: asyncio.Event) -> AsyncIterator[TurnEvent]:
        assistant = Message.assistant(id=new_id())
        history = list(self.history)
        turn = self.orchestrator.run_turn(history, turn_settings, assistant.id, cancel_event)
        async with aclosing(turn) as events:
            async for event in events:
                if isinstance(event, TurnStart):
                    self.history.append(assistant)
                else:
                    apply_event(assistant, event)
                yield event


def _replace_text(message: Message, text: str) -> None:
    """Put the new text where the first text part was; drop the other text parts."""
    parts = []
    replaced = False
    for part in message.parts:
        if isinstance(part, TextPart):
            if not replaced:
                parts.append(TextPart(text=text))
                replaced = True
        else:
            parts.append(part)
    if not replaced:
        parts.append(TextPart(text=text))
    message.parts = parts
