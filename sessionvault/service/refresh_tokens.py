from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sessionvault.logging import get_logger
from sessionvault.service.errors import ValidationError
from sessionvault.service.hashing import generate_refresh_token, hash_secret
from sessionvault.service.keys import refresh_key, session_index_key
from sessionvault.service.policy import FailurePolicy, store_failure_policy
from sessionvault.service.sessions import SessionQuery
from sessionvault.storage.errors import StoreError
from sessionvault.storage.kv import TTL_MISSING, TTL_PERSISTENT, KeyValueStore
from sessionvault.storage.models import RefreshTokenRecord, SessionInfo

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class RefreshTokenManager:
    """Issue, validate, rotate and revoke opaque refresh tokens.

    Records live under ``rt:<user>:<sha256>``; the per-user index
    ``sess:<user>`` holds the hashes of live records and is capped at
    ``max_sessions``. Store batches are not transactional, so every
    multi-command write inspects each command's result:

    * issue: write record + index in one batch, roll back on any failure,
      then evict the oldest excess sessions and confirm the record TTL.
    * rotate: the new record is written and confirmed before the old one is
      deleted, so a failure at any point leaves at least one valid token.
    * removal: a record is unindexed only after its delete succeeded.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        max_sessions: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
        session_query: Optional[SessionQuery] = None,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.session_query = session_query or SessionQuery(store, clock=self._clock)
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    @store_failure_policy(FailurePolicy.FAIL_SOFT, default=None)
    async def issue(
        self,
        user_id: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[str]:
        """Create a refresh token for ``user_id``; ``None`` if it could not be stored."""
        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("user_id is required")
        token = generate_refresh_token()
        record = self._new_record(user_id, token, device_info, ip_address)
        members = await self._write_record(record)
        if members is None:
            return None
        await self._enforce_session_cap(user_id, members, keep_hash=record.token_hash)
        if not await self._confirm_ttl(record):
            return None
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            token_hash=record.token_hash,
            sessions=min(len(members), self.max_sessions),
        )
        return token

    @store_failure_policy(FailurePolicy.FAIL_CLOSED)
    async def validate(self, user_id: str, token: str) -> Optional[RefreshTokenRecord]:
        """Return the live record for ``token`` or ``None``.

        Raises ``StoreUnavailableError`` when the store cannot answer; an
        outage is never reported as an invalid token.
        """
        if not user_id or not isinstance(token, str) or not token:
            return None
        token_hash = hash_secret(token)
        raw = await self.store.get(refresh_key(user_id, token_hash))
        if raw is None:
            return None
        try:
            record = RefreshTokenRecord.from_json(raw)
        except ValueError as exc:
            self.logger.warning(
                "refresh_token_record_corrupt",
                user_id=user_id,
                token_hash=token_hash,
                error=str(exc),
            )
            return None
        if record.user_id != user_id or record.token_hash != token_hash:
            self.logger.warning(
                "refresh_token_record_mismatch", user_id=user_id, token_hash=token_hash
            )
            return None
        if record.is_expired(self._clock()):
            await self._reap(record)
            return None
        return record

    @store_failure_policy(FailurePolicy.FAIL_CLOSED)
    async def rotate(
        self,
        user_id: str,
        old_token: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[str]:
        """Replace ``old_token`` with a new token.

        Returns ``None`` when the old token is not valid or the new record
        could not be written; in both cases the old token is left untouched.
        """
        current = await self.validate(user_id, old_token)
        if current is None:
            self.logger.info("refresh_rotation_invalid_token", user_id=user_id)
            return None

        new_token = generate_refresh_token()
        record = self._new_record(user_id, new_token, device_info, ip_address)
        members = await self._write_record(record)
        if members is None:
            self.logger.warning(
                "refresh_rotation_aborted",
                user_id=user_id,
                old_token_hash=current.token_hash,
            )
            return None
        if not await self._confirm_ttl(record):
            self.logger.warning(
                "refresh_rotation_aborted",
                user_id=user_id,
                old_token_hash=current.token_hash,
                reason="ttl_unconfirmed",
            )
            return None

        members = await self._retire(current, fallback_members=members)
        await self._enforce_session_cap(user_id, members, keep_hash=record.token_hash)
        self.logger.info(
            "refresh_token_rotated",
            user_id=user_id,
            old_token_hash=current.token_hash,
            token_hash=record.token_hash,
        )
        return new_token

    @store_failure_policy(FailurePolicy.FAIL_SOFT, default=False)
    async def revoke(self, user_id: str, token: str) -> bool:
        if not user_id or not isinstance(token, str) or not token:
            return False
        token_hash = hash_secret(token)
        deleted = await self._delete_records(user_id, [token_hash])
        if token_hash not in deleted:
            # Still indexed, so revoke_all can reach it
            self.logger.warning(
                "refresh_token_revoke_failed", user_id=user_id, token_hash=token_hash
            )
            return False
        self.logger.info(
            "refresh_token_revoked",
            user_id=user_id,
            token_hash=token_hash,
            existed=deleted[token_hash],
        )
        return True

    @store_failure_policy(FailurePolicy.FAIL_SOFT, default=False)
    async def revoke_all(self, user_id: str) -> bool:
        if not user_id:
            return False
        index_key = session_index_key(user_id)
        members = sorted(await self.store.members_of(index_key))
        if members:
            batch = self.store.batch()
            for member in members:
                batch.delete(refresh_key(user_id, member))
            outcome = await batch.execute()
            if not outcome.ok:
                # Index kept so a retry still finds the surviving records
                self.logger.error(
                    "refresh_revoke_all_partial",
                    user_id=user_id,
                    failures=outcome.describe_failures(),
                )
                return False
        await self.store.delete(index_key)
        self.logger.info("refresh_tokens_revoked_all", user_id=user_id, count=len(members))
        return True

    @store_failure_policy(FailurePolicy.FAIL_SOFT, default_factory=lambda self: [])
    async def list_sessions(self, user_id: str) -> List[SessionInfo]:
        return await self.session_query.list_sessions(user_id)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _new_record(
        self,
        user_id: str,
        token: str,
        device_info: Optional[str],
        ip_address: Optional[str],
    ) -> RefreshTokenRecord:
        return RefreshTokenRecord.new(
            hash_secret(token),
            user_id,
            self.ttl_seconds,
            device_info=device_info,
            ip_address=ip_address,
            now=self._clock(),
        )

    async def _write_record(self, record: RefreshTokenRecord) -> Optional[Set[str]]:
        """Store the record and index it; returns the index members or ``None``."""
        index_key = session_index_key(record.user_id)
        batch = self.store.batch()
        batch.set_with_ttl(
            refresh_key(record.user_id, record.token_hash),
            record.to_json(),
            self.ttl_seconds,
        )
        batch.add_to_set(index_key, record.token_hash)
        batch.expire(index_key, self.ttl_seconds)
        members_at = batch.members_of(index_key)
        outcome = await batch.execute()
        if not outcome.ok:
            self.logger.error(
                "refresh_token_write_failed",
                user_id=record.user_id,
                token_hash=record.token_hash,
                failures=outcome.describe_failures(),
            )
            await self._rollback(record)
            return None
        return set(outcome[members_at].value or ())

    async def _rollback(self, record: RefreshTokenRecord) -> None:
        batch = self.store.batch()
        batch.delete(refresh_key(record.user_id, record.token_hash))
        batch.remove_from_set(session_index_key(record.user_id), record.token_hash)
        try:
            outcome = await batch.execute()
        except StoreError as exc:
            self.logger.error(
                "refresh_token_rollback_failed",
                user_id=record.user_id,
                token_hash=record.token_hash,
                error=exc.message,
            )
            return
        if not outcome.ok:
            self.logger.error(
                "refresh_token_rollback_failed",
                user_id=record.user_id,
                token_hash=record.token_hash,
                failures=outcome.describe_failures(),
            )

    async def _confirm_ttl(self, record: RefreshTokenRecord) -> bool:
        """Make sure the new record exists and will expire.

        A store error here rolls the record back before propagating.
        """
        try:
            return await self._check_ttl(record)
        except StoreError:
            await self._rollback(record)
            raise

    async def _check_ttl(self, record: RefreshTokenRecord) -> bool:
        key = refresh_key(record.user_id, record.token_hash)
        remaining = await self.store.ttl(key)
        if remaining == TTL_PERSISTENT:
            self.logger.warning(
                "refresh_token_ttl_missing",
                user_id=record.user_id,
                token_hash=record.token_hash,
            )
            await self.store.expire(key, self.ttl_seconds)
            remaining = await self.store.ttl(key)
        if remaining == TTL_MISSING:
            self.logger.error(
                "refresh_token_missing_after_write",
                user_id=record.user_id,
                token_hash=record.token_hash,
            )
            await self._rollback(record)
            return False
        if remaining == TTL_PERSISTENT:
            self.logger.error(
                "refresh_token_ttl_unrecoverable",
                user_id=record.user_id,
                token_hash=record.token_hash,
            )
            await self._rollback(record)
            return False
        return True

    async def _delete_records(
        self, user_id: str, token_hashes: Iterable[str]
    ) -> Dict[str, bool]:
        """Delete records, then unindex only the ones whose delete succeeded.

        A record whose delete failed keeps its index member, so it stays
        visible to ``revoke_all`` and ``list_sessions``. Returns a mapping of
        deleted hash to whether the record existed. A failed unindex leaves a
        dangling member, which the next eviction pass removes first.
        """
        token_hashes = list(token_hashes)
        batch = self.store.batch()
        positions = [batch.delete(refresh_key(user_id, member)) for member in token_hashes]
        outcome = await batch.execute()
        deleted: Dict[str, bool] = {}
        for member, position in zip(token_hashes, positions):
            if outcome[position].ok:
                deleted[member] = bool(outcome[position].value)
            else:
                self.logger.warning(
                    "refresh_token_delete_failed",
                    user_id=user_id,
                    token_hash=member,
                    error=outcome[position].error,
                )
        if not deleted:
            return deleted

        index_key = session_index_key(user_id)
        batch = self.store.batch()
        for member in deleted:
            batch.remove_from_set(index_key, member)
        try:
            unindexed = await batch.execute()
        except StoreError as exc:
            self.logger.warning(
                "refresh_session_index_stale", user_id=user_id, error=exc.message
            )
            return deleted
        if not unindexed.ok:
            self.logger.warning(
                "refresh_session_index_stale",
                user_id=user_id,
                failures=unindexed.describe_failures(),
            )
        return deleted

    async def _retire(
        self, current: RefreshTokenRecord, *, fallback_members: Set[str]
    ) -> Set[str]:
        """Delete the rotated-out record; returns the index members afterwards."""
        deleted: Dict[str, bool] = {}
        error: Optional[str] = None
        try:
            deleted = await self._delete_records(current.user_id, [current.token_hash])
        except StoreError as exc:
            error = exc.message
        if current.token_hash not in deleted:
            self.logger.error(
                "refresh_rotation_old_token_survived",
                user_id=current.user_id,
                old_token_hash=current.token_hash,
                error=error,
            )
            return fallback_members
        try:
            return await self.store.members_of(session_index_key(current.user_id))
        except StoreError:
            return fallback_members - {current.token_hash}

    async def _reap(self, record: RefreshTokenRecord) -> None:
        batch = self.store.batch()
        batch.delete(refresh_key(record.user_id, record.token_hash))
        batch.remove_from_set(session_index_key(record.user_id), record.token_hash)
        try:
            outcome = await batch.execute()
        except StoreError as exc:
            self.logger.warning(
                "refresh_token_reap_failed",
                user_id=record.user_id,
                token_hash=record.token_hash,
                error=exc.message,
            )
            return
        self.logger.info(
            "refresh_token_expired_reaped",
            user_id=record.user_id,
            token_hash=record.token_hash,
            complete=outcome.ok,
        )

    async def _eviction_order(
        self, user_id: str, candidates: Iterable[str]
    ) -> List[str]:
        """Order index members for eviction: dangling members first, then oldest."""
        candidates = sorted(candidates)
        batch = self.store.batch()
        positions = [batch.get(refresh_key(user_id, member)) for member in candidates]
        outcome = await batch.execute()
        now = self._clock()
        ranked: List[Tuple[int, datetime, str]] = []
        for member, position in zip(candidates, positions):
            result = outcome[position]
            if not result.ok:
                # Age unknown; never evict a session we could not inspect
                continue
            if result.value is None:
                ranked.append((0, _EPOCH, member))
                continue
            try:
                record = RefreshTokenRecord.from_json(result.value)
            except ValueError:
                ranked.append((0, _EPOCH, member))
                continue
            if record.is_expired(now):
                ranked.append((0, record.created_at, member))
            else:
                ranked.append((1, record.created_at, member))
        ranked.sort()
        return [member for _, _, member in ranked]

    async def _enforce_session_cap(
        self, user_id: str, members: Set[str], *, keep_hash: str
    ) -> int:
        """Evict the oldest sessions beyond ``max_sessions``; best-effort."""
        excess = len(members) - self.max_sessions
        if excess <= 0:
            return 0
        try:
            order = await self._eviction_order(
                user_id, (member for member in members if member != keep_hash)
            )
            victims = order[:excess]
            if not victims:
                return 0
            deleted = await self._delete_records(user_id, victims)
        except StoreError as exc:
            self.logger.warning(
                "refresh_session_eviction_failed", user_id=user_id, error=exc.message
            )
            return 0
        if len(deleted) < len(victims):
            self.logger.warning(
                "refresh_session_eviction_partial",
                user_id=user_id,
                survivors=[member for member in victims if member not in deleted],
            )
        self.logger.info(
            "refresh_sessions_evicted",
            user_id=user_id,
            evicted=len(deleted),
            cap=self.max_sessions,
        )
        return len(deleted)


__all__ = ["RefreshTokenManager"]
