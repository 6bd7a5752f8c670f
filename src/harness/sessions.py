"""Session store: issues and validates per-task bridge credentials.

Each session gets a fresh ``secrets.token_hex`` credential.  The store
indexes sessions by the SHA-256 of that credential, so a lookup never
compares raw tokens and the raw value only lives in the ``Session``
handed to the sandbox engine.

Lifecycle: ``create`` → ``authenticate`` (per bridge call) → ``destroy``.
An expired session fails authentication and is dropped on the spot.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from harness.errors import UnauthorizedBridgeCall
from harness.models import Session

logger = logging.getLogger(__name__)


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class SessionStore:
    """In-memory registry of active sessions, keyed by token hash."""

    def __init__(self, token_bytes: int = 32) -> None:
        self._token_bytes = token_bytes
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}  # session_id -> Session
        self._by_hash: dict[str, str] = {}  # token_hash -> session_id

    def create(
        self,
        user_id: str,
        *,
        skills_dir: Path,
        workspace_dir: Path,
        ttl_seconds: float,
        session_id: str | None = None,
    ) -> Session:
        """Register a new session and mint its credential."""
        now = datetime.now(timezone.utc)
        session = Session(
            session_id=session_id or uuid.uuid4().hex,
            user_id=user_id,
            auth_token=secrets.token_hex(self._token_bytes),
            skills_dir=skills_dir,
            workspace_dir=workspace_dir,
            created_at=now,
            deadline=now + timedelta(seconds=ttl_seconds),
        )
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"session id already in use: {session.session_id}")
            self._sessions[session.session_id] = session
            self._by_hash[token_hash(session.auth_token)] = session.session_id
        logger.debug("SessionStore: created session %s for user %s", session.session_id, user_id)
        return session

    def authenticate(self, token: object) -> Session:
        """Return the live session owning ``token``.

        Raises:
            UnauthorizedBridgeCall: unknown, malformed or expired token.
        """
        if not isinstance(token, str) or not token:
            raise UnauthorizedBridgeCall("missing or malformed session token")

        digest = token_hash(token)
        with self._lock:
            session_id = self._by_hash.get(digest)
            session = self._sessions.get(session_id) if session_id else None

        if session is None or not hmac.compare_digest(digest, token_hash(session.auth_token)):
            raise UnauthorizedBridgeCall("session token invalid or expired")

        if session.is_expired():
            logger.warning("SessionStore: rejected expired session %s", session.session_id)
            self.destroy(session.session_id)
            raise UnauthorizedBridgeCall("session token invalid or expired")
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def destroy(self, session_id: str) -> Session | None:
        """Unregister a session; its token stops authenticating immediately."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._by_hash.pop(token_hash(session.auth_token), None)
        if session is not None:
            logger.debug("SessionStore: destroyed session %s", session_id)
        return session

    def purge_expired(self) -> list[str]:
        now = datetime.now(timezone.utc)
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            self.destroy(sid)
        return expired

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)
