from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import msgpack

from verigate.config import Settings
from verigate.models import LifecycleState, MemberRecord, PendingChallenge, ResolveStatus
from verigate.services.logger_service import LoggerService


DEFAULT_STORE: dict[str, Any] = {
    "meta": {"version": 1},
    "members": {},
    "pending": {},
}


class StoreError(RuntimeError):
    """Any failure to read from or commit to the verification store."""


class StoreUnavailableError(StoreError):
    """The store could not be reached at startup after every retry."""


class VerificationStore:
    """
    Durable verification state, keyed by (member_id, guild_id).

    Every method is one atomic read-modify-write; callers never hold a
    transaction open across a role mirror call. Backends raise StoreError on
    I/O failure and leave the previously committed state untouched.
    """

    async def open(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def get_record(self, member_id: int, guild_id: int) -> MemberRecord | None:
        raise NotImplementedError

    async def records_for_guild(self, guild_id: int) -> dict[int, MemberRecord]:
        raise NotImplementedError

    async def get_pending(self, member_id: int, guild_id: int) -> PendingChallenge | None:
        raise NotImplementedError

    async def ensure_tracked(self, member_id: int, guild_id: int, now: datetime) -> bool:
        """Insert an Unverified row if none exists. Returns True when a row was created."""
        raise NotImplementedError

    async def begin_challenge(
        self,
        member_id: int,
        guild_id: int,
        expected_answer: int,
        challenge_id: str,
        now: datetime,
    ) -> bool:
        """Upsert the pending challenge and tag the member pending. False if already verified."""
        raise NotImplementedError

    async def resolve_challenge(
        self,
        member_id: int,
        guild_id: int,
        answer: int | None,
        now: datetime,
        issued_after: datetime,
    ) -> ResolveStatus:
        """
        Consume the pending challenge. A challenge issued at or before
        `issued_after` has timed out and counts as absent (it is deleted).
        """
        raise NotImplementedError

    async def clear_challenge(self, member_id: int, guild_id: int, challenge_id: str) -> bool:
        """Delete the pending row only if it still belongs to `challenge_id`."""
        raise NotImplementedError

    async def sweep_stale_challenges(self, issued_before: datetime) -> int:
        raise NotImplementedError

    async def touch_activity(self, member_id: int, guild_id: int, now: datetime) -> bool:
        raise NotImplementedError

    async def stale_verified(self, cutoff: datetime, *, guild_id: int | None = None) -> list[MemberRecord]:
        """Verified records idle since before `cutoff`, optionally limited to one guild."""
        raise NotImplementedError

    async def expire_verified(self, member_id: int, guild_id: int, cutoff: datetime, now: datetime) -> bool:
        """Tag a Verified member Unverified if its last activity is still older than `cutoff`."""
        raise NotImplementedError

    async def forget_member(self, member_id: int, guild_id: int) -> bool:
        raise NotImplementedError


class MessagePackVerificationStore(VerificationStore):
    """
    Single-file store for small deployments and tests.

    State transitions are written through to disk before the call returns.
    Activity refreshes only mark the store dirty and are flushed by
    autosave_loop, since a lost refresh only delays expiry.
    """

    def __init__(self, path: Path, *, autosave_interval_sec: float = 5.0) -> None:
        self.path = path
        self.autosave_interval_sec = autosave_interval_sec
        self._lock = asyncio.Lock()
        self._dirty = False
        self.data: dict[str, Any] = {}

    async def open(self) -> None:
        async with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                if not self.path.exists():
                    self.data = _clone_defaults()
                    self._save_unlocked()
                    return
                self.data = self._read_unlocked()
            except (OSError, ValueError) as exc:
                raise StoreError(f"Cannot open store at {self.path}: {exc}") from exc
            self._ensure_schema()

    async def close(self) -> None:
        if self._dirty:
            await self.save()

    async def autosave_loop(self, logger: LoggerService | None = None) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval_sec)
            if not self._dirty:
                continue
            try:
                await self.save()
            except StoreError as exc:
                # Still dirty; the next tick retries.
                if logger is not None:
                    logger.log("store.autosave_failed", path=str(self.path), error=str(exc)[:240])

    async def save(self) -> None:
        async with self._lock:
            try:
                self._save_unlocked()
            except OSError as exc:
                raise StoreError(f"Cannot write store at {self.path}: {exc}") from exc

    def _save_unlocked(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        packed = msgpack.packb(self.data, use_bin_type=True)
        tmp.write_bytes(packed)
        tmp.replace(self.path)
        self._dirty = False

    def _read_unlocked(self) -> dict[str, Any]:
        return msgpack.unpackb(self.path.read_bytes(), raw=False)

    def _ensure_schema(self) -> None:
        defaults = _clone_defaults()
        for key, value in defaults.items():
            if key not in self.data:
                self.data[key] = value
                self._dirty = True

    @asynccontextmanager
    async def _transaction(self, *, durable: bool = True) -> AsyncIterator[dict[str, Any]]:
        async with self._lock:
            try:
                yield self.data
                if durable:
                    self._save_unlocked()
                else:
                    self._dirty = True
            except OSError as exc:
                self._rollback_unlocked()
                raise StoreError(f"Store commit failed: {exc}") from exc
            except BaseException:
                self._rollback_unlocked()
                raise

    def _rollback_unlocked(self) -> None:
        # The file on disk always holds the last committed state.
        try:
            self.data = self._read_unlocked() if self.path.exists() else _clone_defaults()
        except (OSError, ValueError):
            self.data = _clone_defaults()
        self._ensure_schema()

    async def get_record(self, member_id: int, guild_id: int) -> MemberRecord | None:
        async with self._lock:
            row = self.data["members"].get(_key(member_id, guild_id))
            return _record_from_row(row) if row else None

    async def records_for_guild(self, guild_id: int) -> dict[int, MemberRecord]:
        async with self._lock:
            out: dict[int, MemberRecord] = {}
            for row in self.data["members"].values():
                if int(row["guild_id"]) == int(guild_id):
                    record = _record_from_row(row)
                    out[record.member_id] = record
            return out

    async def get_pending(self, member_id: int, guild_id: int) -> PendingChallenge | None:
        async with self._lock:
            row = self.data["pending"].get(_key(member_id, guild_id))
            return _pending_from_row(row) if row else None

    async def ensure_tracked(self, member_id: int, guild_id: int, now: datetime) -> bool:
        key = _key(member_id, guild_id)
        async with self._lock:
            if key in self.data["members"]:
                return False
        async with self._transaction() as data:
            if key in data["members"]:
                return False
            data["members"][key] = _new_row(member_id, guild_id, now)
            return True

    async def begin_challenge(
        self,
        member_id: int,
        guild_id: int,
        expected_answer: int,
        challenge_id: str,
        now: datetime,
    ) -> bool:
        key = _key(member_id, guild_id)
        async with self._transaction() as data:
            row = data["members"].get(key)
            if row and row["state"] == LifecycleState.VERIFIED.value:
                return False
            if row is None:
                row = _new_row(member_id, guild_id, now)
                data["members"][key] = row
            row["state"] = LifecycleState.PENDING.value
            data["pending"][key] = {
                "member_id": int(member_id),
                "guild_id": int(guild_id),
                "expected_answer": int(expected_answer),
                "challenge_id": str(challenge_id),
                "issued_at": _ts(now),
            }
            return True

    async def resolve_challenge(
        self,
        member_id: int,
        guild_id: int,
        answer: int | None,
        now: datetime,
        issued_after: datetime,
    ) -> ResolveStatus:
        key = _key(member_id, guild_id)
        async with self._transaction() as data:
            pending = data["pending"].pop(key, None)
            row = data["members"].get(key)
            if pending is None:
                return ResolveStatus.NO_PENDING
            if row is None:
                row = _new_row(member_id, guild_id, now)
                data["members"][key] = row
            if float(pending["issued_at"]) <= _ts(issued_after):
                row["state"] = LifecycleState.UNVERIFIED.value
                return ResolveStatus.NO_PENDING
            if answer is not None and int(answer) == int(pending["expected_answer"]):
                row["state"] = LifecycleState.VERIFIED.value
                row["verified_at"] = _ts(now)
                row["last_activity"] = _ts(now)
                return ResolveStatus.ACCEPTED
            row["state"] = LifecycleState.UNVERIFIED.value
            return ResolveStatus.REJECTED

    async def clear_challenge(self, member_id: int, guild_id: int, challenge_id: str) -> bool:
        key = _key(member_id, guild_id)
        async with self._lock:
            pending = self.data["pending"].get(key)
            if not pending or pending.get("challenge_id") != challenge_id:
                return False
        async with self._transaction() as data:
            pending = data["pending"].get(key)
            if not pending or pending.get("challenge_id") != challenge_id:
                return False
            del data["pending"][key]
            row = data["members"].get(key)
            if row and row["state"] == LifecycleState.PENDING.value:
                row["state"] = LifecycleState.UNVERIFIED.value
            return True

    async def sweep_stale_challenges(self, issued_before: datetime) -> int:
        cutoff = _ts(issued_before)
        async with self._transaction() as data:
            stale = [key for key, row in data["pending"].items() if float(row["issued_at"]) <= cutoff]
            for key in stale:
                del data["pending"][key]
                row = data["members"].get(key)
                if row and row["state"] == LifecycleState.PENDING.value:
                    row["state"] = LifecycleState.UNVERIFIED.value
            return len(stale)

    async def touch_activity(self, member_id: int, guild_id: int, now: datetime) -> bool:
        key = _key(member_id, guild_id)
        async with self._transaction(durable=False) as data:
            row = data["members"].get(key)
            if not row or row["state"] != LifecycleState.VERIFIED.value:
                return False
            row["last_activity"] = _ts(now)
            return True

    async def stale_verified(self, cutoff: datetime, *, guild_id: int | None = None) -> list[MemberRecord]:
        limit = _ts(cutoff)
        async with self._lock:
            return [
                _record_from_row(row)
                for row in self.data["members"].values()
                if row["state"] == LifecycleState.VERIFIED.value
                and float(row.get("last_activity") or 0.0) < limit
                and (guild_id is None or int(row["guild_id"]) == int(guild_id))
            ]

    async def expire_verified(self, member_id: int, guild_id: int, cutoff: datetime, now: datetime) -> bool:
        key = _key(member_id, guild_id)
        async with self._transaction() as data:
            row = data["members"].get(key)
            if not row or row["state"] != LifecycleState.VERIFIED.value:
                return False
            if float(row.get("last_activity") or 0.0) >= _ts(cutoff):
                return False
            row["state"] = LifecycleState.UNVERIFIED.value
            row["verified_at"] = None
            row["last_activity"] = None
            return True

    async def forget_member(self, member_id: int, guild_id: int) -> bool:
        key = _key(member_id, guild_id)
        async with self._transaction() as data:
            existed = data["members"].pop(key, None) is not None
            existed = data["pending"].pop(key, None) is not None or existed
            return existed


async def open_store(settings: Settings, logger: LoggerService) -> VerificationStore:
    """
    Build the configured backend and open it, retrying with a doubling
    backoff. Raises StoreUnavailableError once the attempts are exhausted.
    """
    if settings.store_backend == "mysql":
        from verigate.mysql_store import MySQLVerificationStore

        store: VerificationStore = MySQLVerificationStore(settings)
    else:
        store = MessagePackVerificationStore(settings.store_path)

    delay = settings.store_connect_backoff_sec
    attempts = max(1, settings.store_connect_attempts)
    for attempt in range(1, attempts + 1):
        try:
            await store.open()
        except StoreError as exc:
            logger.log(
                "store.connect_retry",
                backend=settings.store_backend,
                attempt=attempt,
                attempts=attempts,
                error=str(exc)[:240],
            )
            if attempt == attempts:
                raise StoreUnavailableError(
                    f"{settings.store_backend} store unavailable after {attempts} attempts: {exc}"
                ) from exc
            await asyncio.sleep(delay)
            delay *= 2
            continue
        logger.log("store.connected", backend=settings.store_backend, attempt=attempt)
        return store
    raise StoreUnavailableError("store was never opened")


def _key(member_id: int, guild_id: int) -> str:
    return f"{int(guild_id)}:{int(member_id)}"


def _ts(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _dt(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _new_row(member_id: int, guild_id: int, now: datetime) -> dict[str, Any]:
    return {
        "member_id": int(member_id),
        "guild_id": int(guild_id),
        "state": LifecycleState.UNVERIFIED.value,
        "joined_at": _ts(now),
        "verified_at": None,
        "last_activity": None,
    }


def _record_from_row(row: dict[str, Any]) -> MemberRecord:
    return MemberRecord(
        member_id=int(row["member_id"]),
        guild_id=int(row["guild_id"]),
        state=LifecycleState(row["state"]),
        joined_at=_dt(row["joined_at"]) or datetime.fromtimestamp(0, tz=timezone.utc),
        verified_at=_dt(row.get("verified_at")),
        last_activity=_dt(row.get("last_activity")),
    )


def _pending_from_row(row: dict[str, Any]) -> PendingChallenge:
    return PendingChallenge(
        member_id=int(row["member_id"]),
        guild_id=int(row["guild_id"]),
        expected_answer=int(row["expected_answer"]),
        challenge_id=str(row["challenge_id"]),
        issued_at=_dt(row["issued_at"]) or datetime.fromtimestamp(0, tz=timezone.utc),
    )


def _clone_defaults() -> dict[str, Any]:
    return msgpack.unpackb(msgpack.packb(DEFAULT_STORE, use_bin_type=True), raw=False)
