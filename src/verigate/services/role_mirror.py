from __future__ import annotations

from dataclasses import dataclass, field

import discord

from verigate.services.logger_service import LoggerService
from verigate.utils.discord_utils import resolve_member

ROLE_REASON = "verigate verification sync"


class RoleMirrorError(RuntimeError):
    """The role mirror could not be read right now."""


@dataclass(frozen=True)
class MemberRef:
    member_id: int
    bot: bool = False


@dataclass
class RoleChange:
    granted: list[int] = field(default_factory=list)
    revoked: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        return len(self.granted) + len(self.revoked)


async def converge_roles(
    mirror: "RoleMirror",
    member_id: int,
    guild_id: int,
    *,
    wanted: set[int],
    unwanted: set[int],
    held: set[int] | None = None,
) -> RoleChange:
    """
    Move a member's roles toward `wanted` and away from `unwanted`. With
    `held` known only the difference is applied; without it every role is
    pushed, which Discord treats as a no-op when already in place.
    """
    if held is None:
        to_revoke, to_grant = sorted(unwanted), sorted(wanted)
    else:
        to_revoke, to_grant = sorted(unwanted & held), sorted(wanted - held)
    change = RoleChange()
    for role_id in to_revoke:
        if await mirror.revoke_role(member_id, guild_id, role_id):
            change.revoked.append(role_id)
        else:
            change.failed.append(role_id)
    for role_id in to_grant:
        if await mirror.grant_role(member_id, guild_id, role_id):
            change.granted.append(role_id)
        else:
            change.failed.append(role_id)
    return change


class RoleMirror:
    """
    The externally visible role grants for a guild. Reads may be stale and
    writes may fail; callers treat False as "not applied" and move on.
    """

    async def list_members(self, guild_id: int) -> list[MemberRef]:
        raise NotImplementedError

    async def get_granted_roles(self, member_id: int, guild_id: int) -> set[int] | None:
        """Role ids held by the member, or None when the member is not in the guild."""
        raise NotImplementedError

    async def grant_role(self, member_id: int, guild_id: int, role_id: int) -> bool:
        raise NotImplementedError

    async def revoke_role(self, member_id: int, guild_id: int, role_id: int) -> bool:
        raise NotImplementedError


class DiscordRoleMirror(RoleMirror):
    def __init__(self, bot: discord.Client, logger: LoggerService) -> None:
        self.bot = bot
        self.logger = logger

    async def list_members(self, guild_id: int) -> list[MemberRef]:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            return []
        return [MemberRef(member_id=m.id, bot=bool(m.bot)) for m in guild.members]

    async def get_granted_roles(self, member_id: int, guild_id: int) -> set[int] | None:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            raise RoleMirrorError(f"guild {guild_id} is not available")
        try:
            member = await resolve_member(guild, member_id)
        except discord.HTTPException as exc:
            raise RoleMirrorError(f"cannot fetch member {member_id}: {exc}") from exc
        if member is None:
            return None
        return {role.id for role in member.roles}

    async def grant_role(self, member_id: int, guild_id: int, role_id: int) -> bool:
        return await self._mutate(member_id, guild_id, role_id, grant=True)

    async def revoke_role(self, member_id: int, guild_id: int, role_id: int) -> bool:
        return await self._mutate(member_id, guild_id, role_id, grant=False)

    async def _mutate(self, member_id: int, guild_id: int, role_id: int, *, grant: bool) -> bool:
        action = "grant" if grant else "revoke"
        guild = self.bot.get_guild(int(guild_id))
        role = guild.get_role(int(role_id)) if guild is not None else None
        if guild is None or role is None:
            self._log_failure(action, member_id, guild_id, role_id, "guild_unavailable" if guild is None else "role_missing")
            return False
        try:
            member = await resolve_member(guild, member_id)
            if member is None:
                self._log_failure(action, member_id, guild_id, role_id, "member_missing")
                return False
            if grant:
                await member.add_roles(role, reason=ROLE_REASON)
            else:
                await member.remove_roles(role, reason=ROLE_REASON)
        except discord.HTTPException as exc:
            self._log_failure(action, member_id, guild_id, role_id, str(exc)[:240])
            return False
        return True

    def _log_failure(self, action: str, member_id: int, guild_id: int, role_id: int, error: str) -> None:
        self.logger.log(
            "role_mirror.mutation_failed",
            action=action,
            guild_id=guild_id,
            user_id=member_id,
            role_id=role_id,
            error=error,
        )
