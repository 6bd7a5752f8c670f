"""Privacy-preserving tokenization of sensitive values.

Sensitive substrings (emails, phone numbers, national IDs, card numbers,
IP addresses, plus any configured extras) are replaced by stable,
bracket-delimited placeholder tokens such as ``[EMAIL_1]`` before data
reaches the model-facing side, and restored before data reaches an
external capability.

Detection is an ordered list of ``PiiRule`` strategies; earlier rules win
when two patterns could match the same text.  Each session owns its own
``SessionMapping``; all mutation of one mapping happens under that
mapping's lock so concurrent tool calls cannot mint two tokens for the
same literal.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Matches any token this service can mint.
_TOKEN_RE = re.compile(r"\[([A-Z][A-Z0-9_]*)_(\d+)\]")


@dataclass(frozen=True)
class PiiRule:
    """One sensitive-value detector: a token category and its pattern."""

    category: str
    pattern: re.Pattern[str]

    @classmethod
    def compile(cls, category: str, pattern: str) -> PiiRule:
        return cls(category=category, pattern=re.compile(pattern))


DEFAULT_RULES: tuple[PiiRule, ...] = (
    PiiRule.compile("EMAIL", r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    PiiRule.compile("CREDIT_CARD", r"(?<!\d)(?:\d{4}[ -]?){3}\d{1,4}(?!\d)"),
    PiiRule.compile("SSN", r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)"),
    PiiRule.compile(
        "PHONE",
        r"(?<![\w+])(?:\+?1[-.\s]?)?(?:\(\d{3}\)\s?|\d{3}[-.\s]?)\d{3}[-.\s]?\d{4}(?!\w)",
    ),
    PiiRule.compile(
        "IP_ADDRESS",
        r"(?<![\d.])(?:(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)\.){3}"
        r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(?![\d.])",
    ),
)


@dataclass
class SessionMapping:
    """Bidirectional token table for one session.  Grows monotonically."""

    value_to_token: dict[tuple[str, str], str] = field(default_factory=dict)
    token_to_value: dict[str, str] = field(default_factory=dict)
    counters: dict[str, int] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def token_for(self, category: str, value: str) -> str:
        """Return the existing token for ``value`` or mint the next one.

        Caller must hold ``lock``.
        """
        key = (category, value)
        token = self.value_to_token.get(key)
        if token is None:
            ordinal = self.counters.get(category, 0) + 1
            self.counters[category] = ordinal
            token = f"[{category}_{ordinal}]"
            self.value_to_token[key] = token
            self.token_to_value[token] = value
        return token


class TokenizationService:
    """Per-session reversible PII tokenization over nested structures."""

    def __init__(self, rules: list[PiiRule] | None = None) -> None:
        self._rules: list[PiiRule] = list(rules if rules is not None else DEFAULT_RULES)
        self._sessions: dict[str, SessionMapping] = {}
        self._sessions_lock = threading.Lock()

    # ── Rules ─────────────────────────────────────────────────────────────────

    @property
    def rules(self) -> tuple[PiiRule, ...]:
        return tuple(self._rules)

    def add_rule(self, category: str, pattern: str, *, before: str | None = None) -> PiiRule:
        """Register an extra rule.

        Appended at the end, or inserted ahead of the first rule whose
        category is ``before``.
        """
        if not re.fullmatch(r"[A-Z][A-Z0-9_]*", category):
            raise ValueError(f"category must be UPPER_SNAKE_CASE, got {category!r}")
        rule = PiiRule.compile(category, pattern)
        if before is None:
            self._rules.append(rule)
        else:
            index = next(
                (i for i, r in enumerate(self._rules) if r.category == before),
                len(self._rules),
            )
            self._rules.insert(index, rule)
        logger.info("Tokenizer: added rule %s (%d rules total)", category, len(self._rules))
        return rule

    # ── Sessions ──────────────────────────────────────────────────────────────

    def _mapping(self, session_id: str, *, create: bool) -> SessionMapping | None:
        with self._sessions_lock:
            mapping = self._sessions.get(session_id)
            if mapping is None and create:
                mapping = SessionMapping()
                self._sessions[session_id] = mapping
            return mapping

    def clear_session(self, session_id: str) -> None:
        """Drop a session's mapping; its tokens become permanently undecodable."""
        with self._sessions_lock:
            mapping = self._sessions.pop(session_id, None)
        if mapping is not None:
            logger.debug(
                "Tokenizer: cleared session %s (%d tokens)",
                session_id,
                len(mapping.token_to_value),
            )

    def has_session(self, session_id: str) -> bool:
        with self._sessions_lock:
            return session_id in self._sessions

    def mapping(self, session_id: str) -> dict[str, str]:
        """Snapshot of ``token -> original`` for a session (empty if unknown)."""
        mapping = self._mapping(session_id, create=False)
        if mapping is None:
            return {}
        with mapping.lock:
            return dict(mapping.token_to_value)

    def get_stats(self, session_id: str) -> dict[str, Any]:
        mapping = self._mapping(session_id, create=False)
        if mapping is None:
            return {"token_count": 0, "categories": {}}
        with mapping.lock:
            return {
                "token_count": len(mapping.token_to_value),
                "categories": dict(mapping.counters),
            }

    # ── Transform ─────────────────────────────────────────────────────────────

    def tokenize(self, session_id: str, value: Any) -> Any:
        """Replace every recognised sensitive substring with its session token."""
        mapping = self._mapping(session_id, create=True)
        with mapping.lock:
            return _walk(value, lambda text: self._tokenize_text(mapping, text))

    def detokenize(self, session_id: str, value: Any) -> Any:
        """Restore known tokens; unknown tokens are left as they are."""
        mapping = self._mapping(session_id, create=False)
        if mapping is None:
            return value
        with mapping.lock:
            table = dict(mapping.token_to_value)
        return _walk(value, lambda text: _restore_text(table, text))

    def _tokenize_text(self, mapping: SessionMapping, text: str) -> str:
        for rule in self._rules:
            text = rule.pattern.sub(
                lambda m, category=rule.category: mapping.token_for(category, m.group(0)),
                text,
            )
        return text


def _restore_text(table: dict[str, str], text: str) -> str:
    if "[" not in text:
        return text
    return _TOKEN_RE.sub(lambda m: table.get(m.group(0), m.group(0)), text)


def _walk(value: Any, transform) -> Any:
    """Apply ``transform`` to every string leaf, preserving container shape."""
    if isinstance(value, str):
        return transform(value)
    if isinstance(value, dict):
        return {k: _walk(v, transform) for k, v in value.items()}
    if isinstance(value, list):
        return [_walk(v, transform) for v in value]
    if isinstance(value, tuple):
        return tuple(_walk(v, transform) for v in value)
    return value
