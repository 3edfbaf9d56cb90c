from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import aiomysql
import pytest

from fakes import GUILD_ID, FakeClock, make_settings

from verigate.models import ResolveStatus
from verigate.mysql_store import MySQLVerificationStore
from verigate.services.logger_service import LoggerService
from verigate.storage import StoreError, StoreUnavailableError, open_store


class StubCursor:
    def __init__(self, conn: "StubConnection") -> None:
        self.conn = conn
        self.rowcount = 0
        self._result: list[dict] = []

    async def __aenter__(self) -> "StubCursor":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    async def execute(self, sql: str, args: tuple = ()) -> None:
        self.conn.statements.append((" ".join(sql.split()), args))
        if self.conn.fail_on and self.conn.fail_on in sql:
            raise aiomysql.OperationalError(2013, "Lost connection to MySQL server during query")
        self._result = list(self.conn.results.pop(0)) if self.conn.results else []
        self.rowcount = self.conn.rowcounts.pop(0) if self.conn.rowcounts else len(self._result)

    async def fetchone(self):
        return self._result[0] if self._result else None

    async def fetchall(self):
        return self._result


class StubConnection:
    def __init__(self) -> None:
        self.statements: list[tuple[str, tuple]] = []
        self.results: list[list[dict]] = []
        self.rowcounts: list[int] = []
        self.fail_on = ""
        self.began = 0
        self.committed = 0
        self.rolled_back = 0

    async def begin(self) -> None:
        self.began += 1

    async def commit(self) -> None:
        self.committed += 1

    async def rollback(self) -> None:
        self.rolled_back += 1

    def cursor(self, *args) -> StubCursor:
        return StubCursor(self)


class StubAcquire:
    def __init__(self, conn: StubConnection) -> None:
        self.conn = conn

    async def __aenter__(self) -> StubConnection:
        return self.conn

    async def __aexit__(self, *exc) -> None:
        return None


class StubPool:
    def __init__(self) -> None:
        self.conn = StubConnection()
        self.closed = False

    def acquire(self) -> StubAcquire:
        return StubAcquire(self.conn)

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


def _mysql_settings(tmp_path: Path, **overrides):
    return make_settings(
        tmp_path,
        store_backend="mysql",
        mysql_host="db.internal",
        mysql_db="verigate",
        mysql_user="bot",
        **overrides,
    )


def _open_with_stub(tmp_path: Path, monkeypatch) -> tuple[MySQLVerificationStore, StubPool]:
    pool = StubPool()
    captured: dict = {}

    async def fake_create_pool(**kwargs):
        captured.update(kwargs)
        return pool

    monkeypatch.setattr(aiomysql, "create_pool", fake_create_pool)
    store = MySQLVerificationStore(_mysql_settings(tmp_path, mysql_pool_max=4))
    asyncio.run(store.open())
    assert captured["maxsize"] == 4
    assert captured["minsize"] == 1
    assert captured["autocommit"] is True
    assert captured["charset"] == "utf8mb4"
    pool.conn.statements.clear()
    return store, pool


def test_open_bootstraps_both_tables(tmp_path: Path, monkeypatch) -> None:
    pool = StubPool()

    async def fake_create_pool(**kwargs):
        return pool

    monkeypatch.setattr(aiomysql, "create_pool", fake_create_pool)
    store = MySQLVerificationStore(_mysql_settings(tmp_path))
    asyncio.run(store.open())
    sql = " ".join(statement for statement, _ in pool.conn.statements)
    assert "CREATE TABLE IF NOT EXISTS member_verification" in sql
    assert "CREATE TABLE IF NOT EXISTS pending_challenges" in sql
    asyncio.run(store.close())
    assert pool.closed is True


def test_begin_challenge_refuses_verified_member(tmp_path: Path, monkeypatch) -> None:
    store, pool = _open_with_stub(tmp_path, monkeypatch)
    pool.conn.results = [[{"state": "verified"}]]
    started = asyncio.run(store.begin_challenge(1, GUILD_ID, 42, "c1", FakeClock().now))
    assert started is False
    assert pool.conn.committed == 1
    assert len(pool.conn.statements) == 1


def test_resolve_challenge_accepts_matching_answer(tmp_path: Path, monkeypatch) -> None:
    store, pool = _open_with_stub(tmp_path, monkeypatch)
    clock = FakeClock()
    issued = clock.now.replace(tzinfo=None)
    pool.conn.results = [[{"expected_answer": 42, "issued_at": issued}]]
    status = asyncio.run(store.resolve_challenge(1, GUILD_ID, 42, clock.now, clock.now - timedelta(minutes=5)))
    assert status is ResolveStatus.ACCEPTED
    statements = [sql for sql, _ in pool.conn.statements]
    assert statements[1].startswith("DELETE FROM pending_challenges")
    assert "verified_at=VALUES(verified_at)" in statements[2]
    _, args = pool.conn.statements[2]
    assert args[2] == "verified"
    assert args[4] == datetime(2024, 5, 1, 12, 0)


def test_resolve_challenge_treats_expired_row_as_absent(tmp_path: Path, monkeypatch) -> None:
    store, pool = _open_with_stub(tmp_path, monkeypatch)
    clock = FakeClock()
    issued = (clock.now - timedelta(minutes=6)).replace(tzinfo=None)
    pool.conn.results = [[{"expected_answer": 42, "issued_at": issued}]]
    status = asyncio.run(store.resolve_challenge(1, GUILD_ID, 42, clock.now, clock.now - timedelta(minutes=5)))
    assert status is ResolveStatus.NO_PENDING


def test_driver_errors_roll_back_and_surface_as_store_errors(tmp_path: Path, monkeypatch) -> None:
    store, pool = _open_with_stub(tmp_path, monkeypatch)
    pool.conn.results = [[{"expected_answer": 42, "issued_at": datetime(2024, 5, 1, 12, 0)}]]
    pool.conn.fail_on = "DELETE FROM pending_challenges"
    now = datetime(2024, 5, 1, 12, 1, tzinfo=timezone.utc)
    with pytest.raises(StoreError):
        asyncio.run(store.resolve_challenge(1, GUILD_ID, 42, now, now - timedelta(minutes=5)))
    assert pool.conn.rolled_back == 1
    assert pool.conn.committed == 0


def test_unreachable_mysql_exhausts_retries(tmp_path: Path, monkeypatch) -> None:
    settings = _mysql_settings(tmp_path, store_connect_attempts=2, store_connect_backoff_sec=0.25)
    logger = LoggerService(echo=False)
    delays: list[float] = []

    async def refuse(**kwargs):
        raise aiomysql.OperationalError(2003, "Can't connect to MySQL server")

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(aiomysql, "create_pool", refuse)
    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    with pytest.raises(StoreUnavailableError):
        asyncio.run(open_store(settings, logger))
    assert delays == [0.25]
    assert logger.events("store.") == ["store.connect_retry", "store.connect_retry"]


def test_stale_verified_can_be_limited_to_one_guild(tmp_path: Path, monkeypatch) -> None:
    store, pool = _open_with_stub(tmp_path, monkeypatch)
    cutoff = FakeClock().now
    asyncio.run(store.stale_verified(cutoff))
    asyncio.run(store.stale_verified(cutoff, guild_id=GUILD_ID))
    (everywhere, everywhere_args), (scoped, scoped_args) = pool.conn.statements
    assert "guild_id=%s" not in everywhere
    assert everywhere_args == ("verified", datetime(2024, 5, 1, 12, 0))
    assert scoped.endswith("AND guild_id=%s")
    assert scoped_args == ("verified", datetime(2024, 5, 1, 12, 0), GUILD_ID)
