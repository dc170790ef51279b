"""Session coordinator: one user turn from request to persisted transcript."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .assembler import assemble_messages
from .errors import ChatError, ModelInvocationFailure
from .llm import ModelCapability, extract_reply
from .messages import (
    ConversationRef,
    ExistingConversation,
    Message,
    NonEmptyText,
    Transcript,
    conversation_ref,
    transcript_to_dicts,
)
from .store import TranscriptStore

logger = logging.getLogger(__name__)


def new_conversation_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class TurnResult:
    conversation_id: str
    assistant_reply: str
    transcript: Transcript

    def history(self) -> List[Dict[str, str]]:
        return transcript_to_dicts(self.transcript)


class SessionCoordinator:
    """Load, extend, answer and persist one conversation turn.

    Every call reads the whole transcript, appends the user turn, asks the
    model, appends the reply and writes the whole transcript back with a
    single ``save``. If anything before that save fails, the stored value is
    left exactly as it was, so a stored transcript never ends on an
    unanswered user turn.

    Known limitation: there is no per-conversation lock or version check.
    Two turns racing on one id both read the same transcript and the last
    ``save`` wins; the other turn is lost.
    """

    def __init__(
        self,
        store: TranscriptStore,
        model: ModelCapability,
        persona: str,
        *,
        id_factory: Callable[[], str] = new_conversation_id,
    ) -> None:
        self.store = store
        self.model = model
        self.persona = persona
        self._id_factory = id_factory

    def resolve(self, ref: ConversationRef) -> str:
        if isinstance(ref, ExistingConversation):
            return ref.conversation_id
        return self._id_factory()

    async def handle_turn(self, conversation_id: Optional[str], user_text: Optional[str]) -> TurnResult:
        # Validation happens before anything else: no id, no I/O on bad input.
        text = NonEmptyText.parse(user_text)
        chat_id = self.resolve(conversation_ref(conversation_id))

        transcript = await self.store.load(chat_id)
        transcript = transcript + (Message.user(text.value),)

        messages = assemble_messages(self.persona, transcript)
        result = await self._invoke(messages)

        reply = extract_reply(result)
        if not reply:
            logger.warning("Model returned no usable text for %s; storing empty reply", chat_id)
        transcript = transcript + (Message.assistant(reply),)

        await self.store.save(chat_id, transcript)
        logger.info("Turn complete: chat_id=%s messages=%d", chat_id, len(transcript))
        return TurnResult(conversation_id=chat_id, assistant_reply=reply, transcript=transcript)

    async def _invoke(self, messages: List[Dict[str, str]]) -> Any:
        try:
            return await self.model.run(messages)
        except ChatError:
            raise
        except Exception as e:
            raise ModelInvocationFailure("Model invocation failed", detail=str(e)) from e

