from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from verigate.config import Settings
from verigate.services.role_mirror import MemberRef, RoleMirror, RoleMirrorError
from verigate.storage import MessagePackVerificationStore

GUILD_ID = 900
VERIFIED_ROLES = (100, 101)
MARKER_ROLE = 200


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "discord_token": "token",
        "verified_role_ids": VERIFIED_ROLES,
        "unverified_role_id": MARKER_ROLE,
        "store_path": tmp_path / "state.msgpack",
    }
    values.update(overrides)
    return Settings(**values)


async def open_msgpack_store(settings: Settings) -> MessagePackVerificationStore:
    store = MessagePackVerificationStore(settings.store_path)
    await store.open()
    return store


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class FakeRoleMirror(RoleMirror):
    """In-memory role mirror: guild -> member -> role ids."""

    def __init__(self) -> None:
        self.members: dict[int, dict[int, set[int]]] = {}
        self.bots: set[int] = set()
        self.failing_roles: set[int] = set()
        self.unreadable: set[int] = set()
        self.calls: list[tuple[str, int, int]] = []

    def add_member(self, member_id: int, *roles: int, guild_id: int = GUILD_ID, bot: bool = False) -> None:
        self.members.setdefault(guild_id, {})[member_id] = set(roles)
        if bot:
            self.bots.add(member_id)

    def roles_of(self, member_id: int, guild_id: int = GUILD_ID) -> set[int]:
        return set(self.members.get(guild_id, {}).get(member_id, set()))

    async def list_members(self, guild_id: int) -> list[MemberRef]:
        return [MemberRef(member_id=mid, bot=mid in self.bots) for mid in sorted(self.members.get(guild_id, {}))]

    async def get_granted_roles(self, member_id: int, guild_id: int) -> set[int] | None:
        if member_id in self.unreadable:
            raise RoleMirrorError(f"cannot read {member_id}")
        guild = self.members.get(guild_id, {})
        if member_id not in guild:
            return None
        return set(guild[member_id])

    async def grant_role(self, member_id: int, guild_id: int, role_id: int) -> bool:
        return self._mutate("grant", member_id, guild_id, role_id)

    async def revoke_role(self, member_id: int, guild_id: int, role_id: int) -> bool:
        return self._mutate("revoke", member_id, guild_id, role_id)

    def _mutate(self, action: str, member_id: int, guild_id: int, role_id: int) -> bool:
        guild = self.members.get(guild_id, {})
        if member_id not in guild or role_id in self.failing_roles:
            return False
        self.calls.append((action, member_id, role_id))
        if action == "grant":
            guild[member_id].add(role_id)
        else:
            guild[member_id].discard(role_id)
        return True
