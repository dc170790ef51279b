"""Build the exact message list handed to the language model."""

from __future__ import annotations

from typing import Dict, Iterable, List

from .messages import Message

SYSTEM_ROLE = "system"


def assemble_messages(persona: str, transcript: Iterable[Message]) -> List[Dict[str, str]]:
    """Return ``[system persona, *transcript]`` as plain role/content dicts.

    Pure: a fresh list is built on every call and the inputs are not touched.
    The persona is only ever sent to the model, never stored or returned.
    """
    msgs: List[Dict[str, str]] = [{"role": SYSTEM_ROLE, "content": persona}]
    for m in transcript:
        msgs.append({"role": m.role, "content": m.content})
    return msgs
