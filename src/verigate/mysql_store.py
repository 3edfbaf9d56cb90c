from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import aiomysql

from verigate.config import Settings
from verigate.models import LifecycleState, MemberRecord, PendingChallenge, ResolveStatus
from verigate.storage import StoreError, VerificationStore

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS member_verification (
      member_id BIGINT NOT NULL,
      guild_id BIGINT NOT NULL,
      state VARCHAR(16) NOT NULL,
      joined_at DATETIME(6) NOT NULL,
      verified_at DATETIME(6) NULL,
      last_activity DATETIME(6) NULL,
      PRIMARY KEY (member_id, guild_id),
      KEY idx_guild (guild_id),
      KEY idx_state_activity (state, last_activity)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_challenges (
      member_id BIGINT NOT NULL,
      guild_id BIGINT NOT NULL,
      expected_answer INT NOT NULL,
      challenge_id VARCHAR(64) NOT NULL,
      issued_at DATETIME(6) NOT NULL,
      PRIMARY KEY (member_id, guild_id),
      KEY idx_issued (issued_at)
    )
    """,
)

RECORD_COLUMNS = "member_id, guild_id, state, joined_at, verified_at, last_activity"
PENDING_COLUMNS = "member_id, guild_id, expected_answer, challenge_id, issued_at"


class MySQLVerificationStore(VerificationStore):
    """
    aiomysql-backed store. A connection is borrowed from the pool per call
    and returned before the caller touches Discord; multi-row transitions
    run inside BEGIN/COMMIT and roll back on any error.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.pool: aiomysql.Pool | None = None

    async def open(self) -> None:
        if self.pool is not None:
            return
        try:
            self.pool = await aiomysql.create_pool(
                host=self.settings.mysql_host,
                port=self.settings.mysql_port,
                user=self.settings.mysql_user,
                password=self.settings.mysql_pass or "",
                db=self.settings.mysql_db,
                autocommit=True,
                minsize=1,
                maxsize=self.settings.mysql_pool_max,
                charset="utf8mb4",
            )
        except (aiomysql.Error, OSError) as exc:
            raise StoreError(f"Cannot connect to MySQL at {self.settings.mysql_host}: {exc}") from exc
        try:
            for statement in SCHEMA:
                await self._exec(statement)
        except StoreError:
            await self.close()
            raise

    async def close(self) -> None:
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        pool.close()
        await pool.wait_closed()

    def _require_pool(self) -> aiomysql.Pool:
        if self.pool is None:
            raise StoreError("MySQL store is not open.")
        return self.pool

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiomysql.DictCursor]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.begin()
                try:
                    async with conn.cursor(aiomysql.DictCursor) as cur:
                        yield cur
                    await conn.commit()
                except BaseException:
                    await conn.rollback()
                    raise
        except (aiomysql.Error, OSError) as exc:
            raise StoreError(f"MySQL transaction failed: {exc}") from exc

    async def _exec(self, sql: str, args: tuple = ()) -> int:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(sql, args)
                    return cur.rowcount
        except (aiomysql.Error, OSError) as exc:
            raise StoreError(f"MySQL statement failed: {exc}") from exc

    async def _one(self, sql: str, args: tuple = ()) -> dict[str, Any] | None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.cursor(aiomysql.DictCursor) as cur:
                    await cur.execute(sql, args)
                    return await cur.fetchone()
        except (aiomysql.Error, OSError) as exc:
            raise StoreError(f"MySQL query failed: {exc}") from exc

    async def _all(self, sql: str, args: tuple = ()) -> list[dict[str, Any]]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.cursor(aiomysql.DictCursor) as cur:
                    await cur.execute(sql, args)
                    return list(await cur.fetchall())
        except (aiomysql.Error, OSError) as exc:
            raise StoreError(f"MySQL query failed: {exc}") from exc

    async def get_record(self, member_id: int, guild_id: int) -> MemberRecord | None:
        row = await self._one(
            f"SELECT {RECORD_COLUMNS} FROM member_verification WHERE member_id=%s AND guild_id=%s",
            (int(member_id), int(guild_id)),
        )
        return _record_from_row(row) if row else None

    async def records_for_guild(self, guild_id: int) -> dict[int, MemberRecord]:
        rows = await self._all(
            f"SELECT {RECORD_COLUMNS} FROM member_verification WHERE guild_id=%s",
            (int(guild_id),),
        )
        return {int(row["member_id"]): _record_from_row(row) for row in rows}

    async def get_pending(self, member_id: int, guild_id: int) -> PendingChallenge | None:
        row = await self._one(
            f"SELECT {PENDING_COLUMNS} FROM pending_challenges WHERE member_id=%s AND guild_id=%s",
            (int(member_id), int(guild_id)),
        )
        return _pending_from_row(row) if row else None

    async def ensure_tracked(self, member_id: int, guild_id: int, now: datetime) -> bool:
        created = await self._exec(
            "INSERT IGNORE INTO member_verification (member_id, guild_id, state, joined_at) VALUES (%s, %s, %s, %s)",
            (int(member_id), int(guild_id), LifecycleState.UNVERIFIED.value, _naive(now)),
        )
        return created == 1

    async def begin_challenge(
        self,
        member_id: int,
        guild_id: int,
        expected_answer: int,
        challenge_id: str,
        now: datetime,
    ) -> bool:
        ids = (int(member_id), int(guild_id))
        async with self._transaction() as cur:
            await cur.execute(
                "SELECT state FROM member_verification WHERE member_id=%s AND guild_id=%s FOR UPDATE",
                ids,
            )
            row = await cur.fetchone()
            if row and row["state"] == LifecycleState.VERIFIED.value:
                return False
            await cur.execute(
                "INSERT INTO member_verification (member_id, guild_id, state, joined_at) VALUES (%s, %s, %s, %s) "
                "ON DUPLICATE KEY UPDATE state=VALUES(state)",
                (*ids, LifecycleState.PENDING.value, _naive(now)),
            )
            await cur.execute(
                f"INSERT INTO pending_challenges ({PENDING_COLUMNS}) VALUES (%s, %s, %s, %s, %s) "
                "ON DUPLICATE KEY UPDATE expected_answer=VALUES(expected_answer), "
                "challenge_id=VALUES(challenge_id), issued_at=VALUES(issued_at)",
                (*ids, int(expected_answer), str(challenge_id), _naive(now)),
            )
            return True

    async def resolve_challenge(
        self,
        member_id: int,
        guild_id: int,
        answer: int | None,
        now: datetime,
        issued_after: datetime,
    ) -> ResolveStatus:
        ids = (int(member_id), int(guild_id))
        async with self._transaction() as cur:
            await cur.execute(
                "SELECT expected_answer, issued_at FROM pending_challenges WHERE member_id=%s AND guild_id=%s FOR UPDATE",
                ids,
            )
            pending = await cur.fetchone()
            if pending is None:
                return ResolveStatus.NO_PENDING
            await cur.execute("DELETE FROM pending_challenges WHERE member_id=%s AND guild_id=%s", ids)

            if _aware(pending["issued_at"]) <= issued_after:
                status = ResolveStatus.NO_PENDING
            elif answer is not None and int(answer) == int(pending["expected_answer"]):
                status = ResolveStatus.ACCEPTED
            else:
                status = ResolveStatus.REJECTED

            if status is ResolveStatus.ACCEPTED:
                await cur.execute(
                    "INSERT INTO member_verification (member_id, guild_id, state, joined_at, verified_at, last_activity) "
                    "VALUES (%s, %s, %s, %s, %s, %s) ON DUPLICATE KEY UPDATE state=VALUES(state), "
                    "verified_at=VALUES(verified_at), last_activity=VALUES(last_activity)",
                    (*ids, LifecycleState.VERIFIED.value, _naive(now), _naive(now), _naive(now)),
                )
            else:
                await cur.execute(
                    "INSERT INTO member_verification (member_id, guild_id, state, joined_at) VALUES (%s, %s, %s, %s) "
                    "ON DUPLICATE KEY UPDATE state=VALUES(state)",
                    (*ids, LifecycleState.UNVERIFIED.value, _naive(now)),
                )
            return status

    async def clear_challenge(self, member_id: int, guild_id: int, challenge_id: str) -> bool:
        ids = (int(member_id), int(guild_id))
        async with self._transaction() as cur:
            await cur.execute(
                "DELETE FROM pending_challenges WHERE member_id=%s AND guild_id=%s AND challenge_id=%s",
                (*ids, str(challenge_id)),
            )
            if cur.rowcount != 1:
                return False
            await cur.execute(
                "UPDATE member_verification SET state=%s WHERE member_id=%s AND guild_id=%s AND state=%s",
                (LifecycleState.UNVERIFIED.value, *ids, LifecycleState.PENDING.value),
            )
            return True

    async def sweep_stale_challenges(self, issued_before: datetime) -> int:
        cutoff = _naive(issued_before)
        async with self._transaction() as cur:
            await cur.execute(
                "UPDATE member_verification m JOIN pending_challenges p "
                "ON p.member_id=m.member_id AND p.guild_id=m.guild_id "
                "SET m.state=%s WHERE p.issued_at <= %s AND m.state=%s",
                (LifecycleState.UNVERIFIED.value, cutoff, LifecycleState.PENDING.value),
            )
            await cur.execute("DELETE FROM pending_challenges WHERE issued_at <= %s", (cutoff,))
            return int(cur.rowcount)

    async def touch_activity(self, member_id: int, guild_id: int, now: datetime) -> bool:
        changed = await self._exec(
            "UPDATE member_verification SET last_activity=%s WHERE member_id=%s AND guild_id=%s AND state=%s",
            (_naive(now), int(member_id), int(guild_id), LifecycleState.VERIFIED.value),
        )
        return changed == 1

    async def stale_verified(self, cutoff: datetime, *, guild_id: int | None = None) -> list[MemberRecord]:
        sql = (
            f"SELECT {RECORD_COLUMNS} FROM member_verification "
            "WHERE state=%s AND (last_activity IS NULL OR last_activity < %s)"
        )
        args: tuple = (LifecycleState.VERIFIED.value, _naive(cutoff))
        if guild_id is not None:
            sql += " AND guild_id=%s"
            args += (int(guild_id),)
        rows = await self._all(sql, args)
        return [_record_from_row(row) for row in rows]

    async def expire_verified(self, member_id: int, guild_id: int, cutoff: datetime, now: datetime) -> bool:
        changed = await self._exec(
            "UPDATE member_verification SET state=%s, verified_at=NULL, last_activity=NULL "
            "WHERE member_id=%s AND guild_id=%s AND state=%s AND (last_activity IS NULL OR last_activity < %s)",
            (
                LifecycleState.UNVERIFIED.value,
                int(member_id),
                int(guild_id),
                LifecycleState.VERIFIED.value,
                _naive(cutoff),
            ),
        )
        return changed == 1

    async def forget_member(self, member_id: int, guild_id: int) -> bool:
        ids = (int(member_id), int(guild_id))
        async with self._transaction() as cur:
            await cur.execute("DELETE FROM pending_challenges WHERE member_id=%s AND guild_id=%s", ids)
            removed = cur.rowcount
            await cur.execute("DELETE FROM member_verification WHERE member_id=%s AND guild_id=%s", ids)
            removed += cur.rowcount
            return removed > 0


def _naive(value: datetime) -> datetime:
    # DATETIME columns hold naive UTC.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _record_from_row(row: dict[str, Any]) -> MemberRecord:
    return MemberRecord(
        member_id=int(row["member_id"]),
        guild_id=int(row["guild_id"]),
        state=LifecycleState(row["state"]),
        joined_at=_aware(row["joined_at"]),
        verified_at=_aware(row.get("verified_at")),
        last_activity=_aware(row.get("last_activity")),
    )


def _pending_from_row(row: dict[str, Any]) -> PendingChallenge:
    return PendingChallenge(
        member_id=int(row["member_id"]),
        guild_id=int(row["guild_id"]),
        expected_answer=int(row["expected_answer"]),
        challenge_id=str(row["challenge_id"]),
        issued_at=_aware(row["issued_at"]),
    )
