from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from sessionvault.logging import get_logger
from sessionvault.service.keys import refresh_key, session_index_key
from sessionvault.service.policy import FailurePolicy, store_failure_policy
from sessionvault.storage.kv import KeyValueStore
from sessionvault.storage.models import RefreshTokenRecord, SessionInfo


class SessionQuery:
    """Read-only projection of a user's live refresh-token sessions."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger(__name__)

    @store_failure_policy(FailurePolicy.FAIL_SOFT, default_factory=lambda self: [])
    async def list_sessions(self, user_id: str) -> List[SessionInfo]:
        """Return sessions oldest first; missing, expired or corrupt members are skipped."""
        if not user_id:
            return []
        members = sorted(await self.store.members_of(session_index_key(user_id)))
        if not members:
            return []
        batch = self.store.batch()
        positions = [batch.get(refresh_key(user_id, member)) for member in members]
        outcome = await batch.execute()
        now = self._clock()
        sessions: List[SessionInfo] = []
        stale = 0
        for member, position in zip(members, positions):
            result = outcome[position]
            if not result.ok:
                self.logger.warning(
                    "session_list_fetch_failed", user_id=user_id, error=result.error
                )
                continue
            if result.value is None:
                stale += 1
                continue
            try:
                record = RefreshTokenRecord.from_json(result.value)
            except ValueError:
                self.logger.warning(
                    "session_list_corrupt_record", user_id=user_id, token_hash=member
                )
                continue
            if record.user_id != user_id or record.is_expired(now):
                stale += 1
                continue
            sessions.append(record.session_info())
        if stale:
            self.logger.debug("session_list_stale_members", user_id=user_id, count=stale)
        sessions.sort(key=lambda session: session.created_at)
        return sessions


__all__ = ["SessionQuery"]
