from __future__ import annotations

import asyncio
import json
from datetime import time as dt_time
from datetime import timezone
from typing import Literal

import discord
from discord import app_commands
from discord.ext import commands, tasks

from verigate.config import Settings
from verigate.services.activity_service import ActivityService
from verigate.services.logger_service import LoggerService
from verigate.services.reconcile_service import ReconcileService
from verigate.services.role_mirror import DiscordRoleMirror
from verigate.services.verification_service import VerificationService
from verigate.storage import MessagePackVerificationStore, StoreError, StoreUnavailableError, VerificationStore, open_store
from verigate.ui.verification_views import VerifyPromptView, build_prompt_embed
from verigate.utils.discord_utils import has_manage_guild

DENIED_TEXT = '❌ You need "Manage Server" permission to use this command.'


class VerigateBot(commands.Bot):
    def __init__(self, settings: Settings, store: VerificationStore, logger: LoggerService) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True
        intents.reactions = True
        intents.voice_states = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents, help_command=None)
        self.settings = settings
        self.store = store
        self.logger = logger
        self.roles = DiscordRoleMirror(self, logger)
        self.verification = VerificationService(settings, store, self.roles, logger)
        self.reconciler = ReconcileService(settings, store, self.roles, logger)
        self.activity_recorder = ActivityService(store, logger)
        self._autosave_task: asyncio.Task | None = None
        self._ready_once = False
        self.expiry_loop.change_interval(time=dt_time(hour=settings.expiry_sweep_hour_utc, tzinfo=timezone.utc))
        self.logger.subscribe(self._on_log_row)

    async def setup_hook(self) -> None:
        if isinstance(self.store, MessagePackVerificationStore):
            self._autosave_task = asyncio.create_task(self.store.autosave_loop(self.logger), name="msgpack-autosave")
        self.add_view(VerifyPromptView(self.verification))
        self._register_commands()
        await self.tree.sync()

    def _register_commands(self) -> None:
        @self.tree.command(name="setup-verification", description="Post the verification prompt in this channel")
        @app_commands.guild_only()
        async def setup_verification(interaction: discord.Interaction) -> None:
            if not await self._require_manage_guild(interaction, "setup-verification"):
                return
            channel = interaction.channel
            if not isinstance(channel, discord.abc.Messageable):
                await interaction.response.send_message("This channel cannot hold the prompt.", ephemeral=True)
                return
            try:
                await channel.send(
                    embed=build_prompt_embed(self.settings.inactivity_threshold_days),
                    view=VerifyPromptView(self.verification),
                )
            except discord.HTTPException as exc:
                await interaction.response.send_message(f"Failed to post prompt: {exc}", ephemeral=True)
                return
            self.logger.log(
                "admin.prompt_posted",
                guild_id=interaction.guild_id,
                channel_id=interaction.channel_id,
                actor_id=interaction.user.id,
            )
            await interaction.response.send_message("✅ Verification system has been set up!", ephemeral=True)

        @self.tree.command(name="verification-sync", description="Run a verification audit or expiry sweep now")
        @app_commands.guild_only()
        @app_commands.describe(mode="audit repairs role drift; expiry demotes inactive members")
        async def verification_sync(interaction: discord.Interaction, mode: Literal["audit", "expiry"] = "audit") -> None:
            if not await self._require_manage_guild(interaction, "verification-sync"):
                return
            await interaction.response.defer(ephemeral=True, thinking=True)
            if mode == "expiry":
                expiry = await self.reconciler.expire_inactive(guild_id=interaction.guild_id)
                summary = (
                    f"Expiry sweep: checked `{expiry.checked}`, expired `{expiry.expired}`, "
                    f"forgotten `{expiry.forgotten}`, failures `{expiry.failures}`."
                )
            else:
                report = await self.reconciler.reconcile(interaction.guild_id or 0)
                summary = (
                    f"Audit: members `{report.members_seen}`, granted `{report.granted}`, revoked `{report.revoked}`, "
                    f"new records `{report.records_created}`, failures `{report.failures}`."
                )
            self.logger.log("admin.sync_run", guild_id=interaction.guild_id, actor_id=interaction.user.id, mode=mode)
            await interaction.followup.send(summary, ephemeral=True)

    async def _require_manage_guild(self, interaction: discord.Interaction, command: str) -> bool:
        if has_manage_guild(interaction.user):
            return True
        self.logger.log("admin.denied", guild_id=interaction.guild_id, actor_id=interaction.user.id, command=command)
        await interaction.response.send_message(DENIED_TEXT, ephemeral=True)
        return False

    async def on_ready(self) -> None:
        if self._ready_once:
            return
        self._ready_once = True
        self.logger.log("bot.ready", user_id=self.user.id if self.user else None, guilds=len(self.guilds))
        try:
            swept = await self.verification.sweep_stale_challenges()
        except StoreError as exc:
            self.logger.log("verification.store_failed", stage="startup_sweep", error=str(exc)[:240])
        else:
            if swept:
                self.logger.log("verification.timeout_cleared", swept=swept)
        await self.reconciler.reconcile_all([guild.id for guild in self.guilds])
        if not self.expiry_loop.is_running():
            self.expiry_loop.start()

    @tasks.loop(time=dt_time(hour=0, tzinfo=timezone.utc))
    async def expiry_loop(self) -> None:
        try:
            await self.reconciler.expire_inactive()
        except Exception as exc:  # noqa: BLE001
            self.logger.log("expiry.member_failed", guild_id=0, user_id=0, stage="loop", error=str(exc)[:240])

    async def on_member_join(self, member: discord.Member) -> None:
        if member.bot:
            return
        await self.verification.member_joined(member.id, member.guild.id)

    async def on_member_remove(self, member: discord.Member) -> None:
        await self.verification.member_left(member.id, member.guild.id)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        await self.activity_recorder.record_activity(message.author.id, message.guild.id)

    async def on_reaction_add(self, reaction: discord.Reaction, user: discord.abc.User) -> None:
        guild = reaction.message.guild
        if user.bot or guild is None:
            return
        await self.activity_recorder.record_activity(user.id, guild.id)

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if member.bot:
            return
        if before.channel is None and after.channel is not None:
            await self.activity_recorder.record_activity(member.id, member.guild.id)

    async def close(self) -> None:
        if self.expiry_loop.is_running():
            self.expiry_loop.cancel()
        self.verification.cancel_timeouts()
        if self._autosave_task is not None:
            self._autosave_task.cancel()
        await self.store.close()
        await super().close()

    def _on_log_row(self, row: dict[str, object]) -> None:
        if not self.settings.log_channel_id or not self._ready_once:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self._dispatch_log_row(row))

    async def _dispatch_log_row(self, row: dict[str, object]) -> None:
        channel = self.get_channel(self.settings.log_channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            return
        try:
            await channel.send(_format_log_payload(row))
        except discord.HTTPException:
            return


def _format_log_payload(row: dict[str, object]) -> str:
    ts = str(row.get("ts", ""))
    event = str(row.get("event", "unknown"))
    data = row.get("data", {})
    if isinstance(data, dict):
        compact = json.dumps(data, ensure_ascii=True, separators=(",", ":"), default=str)
    else:
        compact = str(data)
    message = f"[{ts}] {event} {compact}"
    if len(message) > 1900:
        message = message[:1900]
    return message


async def _run(settings: Settings) -> None:
    logger = LoggerService()
    store = await open_store(settings, logger)
    bot = VerigateBot(settings, store, logger)
    async with bot:
        await bot.start(settings.discord_token)


def main() -> None:
    settings = Settings.load()
    try:
        asyncio.run(_run(settings))
    except StoreUnavailableError as exc:
        raise SystemExit(f"verigate: {exc}") from exc
    except KeyboardInterrupt:
        return
