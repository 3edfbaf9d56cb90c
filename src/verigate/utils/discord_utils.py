from __future__ import annotations

import discord


async def resolve_member(guild: discord.Guild, user_id: int) -> discord.Member | None:
    """
    Resolve a Member by id.

    The member cache can be cold depending on intents and chunking; this helper
    tries the cache and then falls back to an API fetch. Returns None only when
    Discord reports the member as absent; other HTTP failures propagate.
    """

    cached = guild.get_member(int(user_id))
    if cached is not None:
        return cached
    try:
        return await guild.fetch_member(int(user_id))
    except discord.NotFound:
        return None


def has_manage_guild(user: discord.abc.User | discord.Member | None) -> bool:
    perms = getattr(user, "guild_permissions", None)
    if perms is None:
        return False
    return bool(perms.manage_guild or perms.administrator)
