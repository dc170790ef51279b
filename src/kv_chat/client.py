"""Client-side conversation state machine and its HTTP transport.

The client keeps a local view of the transcript made of two parts:

    confirmed   messages whose round trip has finished
    pending     the optimistic user turn while a request is in flight

``transcript`` (confirmed + pending) is what a UI renders. States are
``idle`` and ``sending``; only one round trip may be in flight, and every
``submit`` ends back in ``idle`` whether the request worked or not.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Protocol

import httpx

from .messages import Message, Transcript, transcript_from_dicts

logger = logging.getLogger(__name__)

DEFAULT_CHAT_PATH = "/api/chat"
FAILURE_MESSAGE = "Sorry, something went wrong while contacting the AI. Please try again."


class ChatTransportError(Exception):
    """The round trip failed: transport error, non-2xx status or unreadable body."""


@dataclass(frozen=True)
class ServerReply:
    chat_id: Optional[str]
    reply: str
    history: Optional[Transcript] = None


class ChatTransport(Protocol):
    async def send(self, chat_id: str, user_message: str) -> ServerReply:
        ...


def parse_server_reply(data: Any) -> ServerReply:
    """Read a ``{chatId, reply, history}`` body. Only a non-object body is fatal."""
    if not isinstance(data, dict):
        raise ChatTransportError(f"unexpected response body: {type(data).__name__}")
    chat_id = data.get("chatId")
    reply = data.get("reply")
    try:
        history: Optional[Transcript] = transcript_from_dicts(data.get("history"))
    except ValueError:
        history = None
    return ServerReply(
        chat_id=chat_id if isinstance(chat_id, str) and chat_id else None,
        reply=reply if isinstance(reply, str) else "",
        history=history,
    )


class HttpChatTransport:
    """POST ``{chatId, userMessage}`` to the chat endpoint with httpx."""

    def __init__(
        self,
        base_url: str,
        *,
        path: str = DEFAULT_CHAT_PATH,
        timeout: Optional[float] = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = base_url.rstrip("/") + path
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def send(self, chat_id: str, user_message: str) -> ServerReply:
        try:
            resp = await self._client.post(self.url, json={"chatId": chat_id, "userMessage": user_message})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise ChatTransportError(f"request failed: {e}") from e
        except ValueError as e:
            raise ChatTransportError(f"response is not JSON: {e}") from e
        return parse_server_reply(data)

    async def aclose(self) -> None:
        await self._client.aclose()


class ClientState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"


@dataclass
class ConversationSession:
    """The client's mirror of one conversation. Not authoritative."""

    conversation_id: str
    confirmed: List[Message] = field(default_factory=list)
    pending: List[Message] = field(default_factory=list)
    input_buffer: str = ""
    state: ClientState = ClientState.IDLE

    @property
    def busy(self) -> bool:
        return self.state is ClientState.SENDING

    @property
    def transcript(self) -> List[Message]:
        return self.confirmed + self.pending


class ChatClient:
    """Drive a conversation session through optimistic round trips.

    By default the local view only grows by appending and is never replaced
    by the server's ``history``, so it can drift from the stored transcript
    (another tab on the same id, a lost local state). Pass
    ``adopt_server_history=True`` to take the server's history as the
    confirmed log after every successful turn instead.
    """

    def __init__(
        self,
        transport: ChatTransport,
        *,
        conversation_id: Optional[str] = None,
        adopt_server_history: bool = False,
        failure_message: str = FAILURE_MESSAGE,
    ) -> None:
        self.transport = transport
        self.adopt_server_history = adopt_server_history
        self.failure_message = failure_message
        self.session = ConversationSession(conversation_id=conversation_id or str(uuid.uuid4()))

    # --------- views ----------
    @property
    def conversation_id(self) -> str:
        return self.session.conversation_id

    @property
    def state(self) -> ClientState:
        return self.session.state

    @property
    def busy(self) -> bool:
        return self.session.busy

    @property
    def transcript(self) -> List[Message]:
        return self.session.transcript

    @property
    def input_buffer(self) -> str:
        return self.session.input_buffer

    def set_input(self, text: str) -> None:
        self.session.input_buffer = text

    # --------- transitions ----------
    async def submit(self, text: Optional[str] = None) -> bool:
        """Send ``text`` (or the input buffer). Returns False if nothing was sent."""
        raw = self.session.input_buffer if text is None else text
        text = (raw or "").strip()
        if not text or self.session.busy:
            return False

        s = self.session
        s.pending.append(Message.user(text))
        s.input_buffer = ""
        s.state = ClientState.SENDING
        try:
            reply = await self.transport.send(s.conversation_id, text)
        except Exception as e:
            logger.warning("Chat request failed: %s", e)
            self._on_failure()
        else:
            self._on_success(reply)
        finally:
            s.state = ClientState.IDLE
        return True

    def _on_success(self, reply: ServerReply) -> None:
        s = self.session
        if reply.chat_id and reply.chat_id != s.conversation_id:
            logger.info("Adopting server conversation id %s", reply.chat_id)
            s.conversation_id = reply.chat_id

        if self.adopt_server_history and reply.history is not None:
            s.confirmed = list(reply.history)
            s.pending.clear()
            return

        s.confirmed.extend(s.pending)
        s.pending.clear()
        s.confirmed.append(Message.assistant(reply.reply))

    def _on_failure(self) -> None:
        s = self.session
        s.confirmed.extend(s.pending)
        s.pending.clear()
        s.confirmed.append(Message.assistant(self.failure_message))
