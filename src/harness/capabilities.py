"""Demo capabilities for local runs (``serve --demo-capabilities``).

Each one is small enough to read at a glance and covers one path through
the harness: an async handler, a sync handler run in a worker thread, and
a handler that returns sensitive values so tokenization is visible
end to end.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from harness.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

# Fixed, fictional directory for contacts__lookup.
_CONTACTS = {
    "ada": {"name": "Ada Lovelace", "email": "ada@example.com", "phone": "555-123-4567"},
    "alan": {"name": "Alan Turing", "email": "alan.turing@example.org", "phone": "555-987-6543"},
    "grace": {"name": "Grace Hopper", "email": "grace@example.net", "phone": "555-222-0199"},
}

_WORD_RE = re.compile(r"\b\w+\b")


def register(registry: CapabilityRegistry) -> None:
    """Register the demo capabilities on ``registry``."""

    @registry.capability(
        "workspace__echo",
        "Return the given message unchanged.",
        {
            "type": "object",
            "properties": {"message": {"type": "string"}},
            "required": ["message"],
        },
    )
    async def echo(payload: dict[str, Any]) -> dict[str, Any]:
        return {"message": payload["message"]}

    @registry.capability(
        "text__word_count",
        "Count words, lines and characters in a text.",
        {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    )
    def word_count(payload: dict[str, Any]) -> dict[str, int]:
        text = str(payload["text"])
        return {
            "words": len(_WORD_RE.findall(text)),
            "lines": len(text.splitlines()),
            "characters": len(text),
        }

    @registry.capability(
        "contacts__lookup",
        "Look up a contact by first name. Returns name, email and phone.",
        {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        },
    )
    def lookup(payload: dict[str, Any]) -> dict[str, str]:
        key = str(payload["name"]).strip().lower()
        contact = _CONTACTS.get(key)
        if contact is None:
            raise KeyError(f"no contact named {payload['name']!r}")
        return dict(contact)
