"""Single mutable session record per chat.

Writes merge into the stored record: fields passed to :meth:`SessionStore.save`
overwrite (explicit ``None`` included), everything else is preserved. The
store is last-write-wins; concurrent payment taps are handled by
:mod:`session_lock`.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError

import db
from data_models import ORDER_FIELDS, OrderSession, utcnow

logger = logging.getLogger(__name__)

# Fields callers may never write directly.
_PROTECTED_FIELDS = {"chat_id", "schema_version", "updated_at"}
WRITABLE_FIELDS = frozenset(OrderSession.model_fields) - _PROTECTED_FIELDS

_ORDER_DEFAULTS = {name: OrderSession.model_fields[name].default for name in ORDER_FIELDS}


class SessionStore:
    def __init__(
        self,
        ttl_hours: float = 24,
        expiry_days: float = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = timedelta(hours=ttl_hours)
        self.expiry = timedelta(days=expiry_days)
        self._clock = clock

    def _load(self, chat_id: int) -> Optional[OrderSession]:
        raw = db.get_session(chat_id)
        if raw is None:
            return None
        raw["chat_id"] = chat_id
        try:
            return OrderSession(**raw)
        except ValidationError:
            logger.exception(f"Discarding unreadable session for chat {chat_id}")
            db.delete_session(chat_id)
            return None

    def _write(self, session: OrderSession) -> OrderSession:
        session.updated_at = self._clock()
        ok = db.upsert_session(
            session.chat_id,
            session.model_dump(mode="json"),
            session.updated_at,
            session.expires_at,
        )
        if not ok:
            logger.error(f"Session write failed for chat {session.chat_id}")
        return session

    def get(self, chat_id: int) -> Optional[OrderSession]:
        """Return the chat's session, dropping an order that outlived the TTL."""
        session = self._load(chat_id)
        if session is None:
            return None

        if session.has_order and session.last_activity is not None:
            if self._clock() - session.last_activity > self.ttl:
                logger.info(f"Order in chat {chat_id} expired after {self.ttl}, clearing it")
                for name, default in _ORDER_DEFAULTS.items():
                    setattr(session, name, default)
                self._write(session)
        return session

    def save(self, chat_id: int, **fields: Any) -> OrderSession:
        """Merge ``fields`` into the chat's session, creating it if needed.

        Raises:
            ValueError: If a field name is not part of the session layout.
        """
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        now = self._clock()
        session = self._load(chat_id)
        if session is None:
            session = OrderSession(chat_id=chat_id, expires_at=now + self.expiry)

        merged = session.model_dump()
        merged.update(fields)
        if "last_activity" not in fields and any(name in fields for name in ORDER_FIELDS):
            merged["last_activity"] = now
        if merged.get("expires_at") is None:
            merged["expires_at"] = now + self.expiry

        return self._write(OrderSession(**merged))

    def clear(self, chat_id: int) -> None:
        """Reset the order while keeping the rendered bubble and auth state."""
        session = self._load(chat_id)
        if session is None:
            return
        for name, default in _ORDER_DEFAULTS.items():
            setattr(session, name, default)
        self._write(session)
        logger.debug(f"Cleared order session for chat {chat_id}")

    def set_last_message_id(self, chat_id: int, message_id: Optional[int]) -> None:
        self.save(chat_id, last_msg_id=message_id)

    def get_last_message_id(self, chat_id: int) -> Optional[int]:
        session = self._load(chat_id)
        return session.last_msg_id if session else None

    def cleanup_expired(self, hours_old: float = 24) -> int:
        """Delete sessions that have not been written for ``hours_old`` hours."""
        cutoff = self._clock() - timedelta(hours=hours_old)
        removed = db.delete_sessions_updated_before(cutoff)
        if removed:
            logger.info(f"Removed {removed} sessions idle since before {cutoff.isoformat()}")
        return removed

    def authenticate(self, chat_id: int, user_id: int) -> OrderSession:
        now = self._clock()
        return self.save(
            chat_id,
            user_id=user_id,
            is_authenticated=True,
            expires_at=now + self.expiry,
        )

    def is_authenticated(self, chat_id: int) -> bool:
        session = self._load(chat_id)
        if session is None or not session.is_authenticated:
            return False
        return session.expires_at is None or session.expires_at > self._clock()

    def refresh_activity(self, chat_id: int) -> None:
        self.save(chat_id, last_activity=self._clock())
