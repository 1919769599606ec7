"""``{{variable}}`` substitution in message content."""

from __future__ import annotations

import re

from pipe_engine.engine.models import Message

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\}")


def substitute(text: str, variables: dict[str, str]) -> str:
    """Replace bound placeholders; unbound ones stay verbatim."""
    if not variables or "{{" not in text:
        return text
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), m.group(0))), text)


def resolve_messages(messages: list[Message], variables: dict[str, str]) -> list[Message]:
    if not variables:
        return list(messages)
    return [
        m.model_copy(update={"content": substitute(m.content, variables)}) if "{{" in m.content else m
        for m in messages
    ]


def find_placeholders(messages: list[Message]) -> set[str]:
    return {name for m in messages for name in _PLACEHOLDER.findall(m.content)}
