from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

from fakes import GUILD_ID, MARKER_ROLE, VERIFIED_ROLES, FakeClock, FakeRoleMirror, make_settings

from verigate.bot import DENIED_TEXT, VerigateBot, _format_log_payload
from verigate.models import Challenge, LifecycleState
from verigate.services.activity_service import ActivityService
from verigate.services.logger_service import LoggerService
from verigate.storage import MessagePackVerificationStore
from verigate.ui.verification_views import ALREADY_VERIFIED_TEXT, ERROR_TEXT, NO_PENDING_TEXT, ChallengeView, VerifyPromptView
from verigate.utils.discord_utils import has_manage_guild


class StubResponse:
    def __init__(self) -> None:
        self.sent: list[tuple[str | None, dict]] = []
        self.edited: list[dict] = []

    async def send_message(self, content: str | None = None, **kwargs) -> None:
        self.sent.append((content, kwargs))

    async def edit_message(self, **kwargs) -> None:
        self.edited.append(kwargs)

    async def defer(self, **kwargs) -> None:
        self.deferred = kwargs


class StubFollowup:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, content: str, **kwargs) -> None:
        self.sent.append(content)


def _interaction(user_id: int, *, manage_guild: bool = False, administrator: bool = False) -> SimpleNamespace:
    perms = SimpleNamespace(manage_guild=manage_guild, administrator=administrator)
    return SimpleNamespace(
        user=SimpleNamespace(id=user_id, guild_permissions=perms),
        guild=SimpleNamespace(id=GUILD_ID),
        guild_id=GUILD_ID,
        channel_id=1,
        response=StubResponse(),
        followup=StubFollowup(),
    )


def _make_bot(tmp_path: Path) -> VerigateBot:
    settings = make_settings(tmp_path)
    store = MessagePackVerificationStore(settings.store_path)
    asyncio.run(store.open())
    bot = VerigateBot(settings, store, LoggerService(echo=False))
    roles = FakeRoleMirror()
    bot.roles = roles
    bot.verification.roles = roles
    bot.reconciler.roles = roles
    return bot


def test_has_manage_guild_accepts_manage_server_or_admin() -> None:
    assert has_manage_guild(_interaction(1, manage_guild=True).user) is True
    assert has_manage_guild(_interaction(1, administrator=True).user) is True
    assert has_manage_guild(_interaction(1).user) is False
    assert has_manage_guild(SimpleNamespace(id=1)) is False
    assert has_manage_guild(None) is False


def test_admin_commands_reject_without_manage_server(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    interaction = _interaction(7)

    allowed = asyncio.run(bot._require_manage_guild(interaction, "verification-sync"))  # type: ignore[arg-type]
    assert allowed is False
    assert interaction.response.sent == [(DENIED_TEXT, {"ephemeral": True})]
    assert bot.logger.events("admin.") == ["admin.denied"]

    admin = _interaction(8, manage_guild=True)
    assert asyncio.run(bot._require_manage_guild(admin, "verification-sync")) is True  # type: ignore[arg-type]
    assert admin.response.sent == []


def test_prompt_and_answer_buttons_drive_the_lifecycle(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    bot.verification.generator = lambda: Challenge(question="7 × 6", correct_answer=42, choices=(42, 45, 39, 47, 40))
    bot.roles.add_member(5, MARKER_ROLE)  # type: ignore[attr-defined]

    async def scenario() -> None:
        prompt = VerifyPromptView(bot.verification)
        click = _interaction(5)
        await prompt.verify.callback(click)  # type: ignore[attr-defined]
        _, kwargs = click.response.sent[0]
        assert kwargs["ephemeral"] is True
        view = kwargs["view"]
        assert isinstance(view, ChallengeView)
        labels = sorted(int(item.label) for item in view.children)
        assert labels == [39, 40, 42, 45, 47]
        assert "7 × 6" in kwargs["embed"].description

        answer = next(item for item in view.children if item.label == "42")
        submit = _interaction(5)
        await answer.callback(submit)
        assert submit.response.edited[0]["view"] is None
        assert "Successful" in submit.response.edited[0]["embed"].title

        stale = _interaction(5)
        await answer.callback(stale)
        assert stale.response.sent == [(NO_PENDING_TEXT, {"ephemeral": True})]

        again = _interaction(5)
        await prompt.verify.callback(again)  # type: ignore[attr-defined]
        assert again.response.sent == [(ALREADY_VERIFIED_TEXT, {"ephemeral": True})]
        bot.verification.cancel_timeouts()

    asyncio.run(scenario())
    assert bot.roles.roles_of(5) == set(VERIFIED_ROLES)  # type: ignore[attr-defined]


def test_activity_events_ignore_bots_and_voice_moves(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    touched: list[tuple[int, int]] = []

    async def record(member_id: int, guild_id: int) -> bool:
        touched.append((member_id, guild_id))
        return True

    bot.activity_recorder.record_activity = record  # type: ignore[assignment]
    guild = SimpleNamespace(id=GUILD_ID)
    human = SimpleNamespace(id=1, bot=False, guild=guild)
    robot = SimpleNamespace(id=2, bot=True, guild=guild)
    in_voice = SimpleNamespace(channel=object())
    out_of_voice = SimpleNamespace(channel=None)

    async def scenario() -> None:
        await bot.on_message(SimpleNamespace(author=human, guild=guild))
        await bot.on_message(SimpleNamespace(author=robot, guild=guild))
        await bot.on_message(SimpleNamespace(author=human, guild=None))
        await bot.on_reaction_add(SimpleNamespace(message=SimpleNamespace(guild=guild)), human)
        await bot.on_voice_state_update(human, out_of_voice, in_voice)
        await bot.on_voice_state_update(human, in_voice, in_voice)
        await bot.on_voice_state_update(human, in_voice, out_of_voice)

    asyncio.run(scenario())
    assert touched == [(1, GUILD_ID)] * 3


def test_log_payload_is_compact_and_bounded() -> None:
    row = {"ts": "2024-05-01T12:00:00+00:00", "event": "reconcile.completed", "data": {"guild_id": 1, "granted": 2}}
    assert _format_log_payload(row) == '[2024-05-01T12:00:00+00:00] reconcile.completed {"guild_id":1,"granted":2}'
    huge = {"ts": "t", "event": "e", "data": {"blob": "x" * 5000}}
    assert len(_format_log_payload(huge)) == 1900


def test_bot_constructs_with_services_wired(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    assert isinstance(bot.activity_recorder, ActivityService)
    assert bot.activity is None
    assert bot.activity_recorder.store is bot.store


def test_store_failure_on_answer_replies_with_error(tmp_path: Path, monkeypatch) -> None:
    bot = _make_bot(tmp_path)
    bot.verification.generator = lambda: Challenge(question="7 × 6", correct_answer=42, choices=(42, 45, 39, 47, 40))
    bot.roles.add_member(5, MARKER_ROLE)  # type: ignore[attr-defined]

    def fail_save() -> None:
        raise OSError("disk full")

    async def scenario() -> None:
        click = _interaction(5)
        await VerifyPromptView(bot.verification).verify.callback(click)  # type: ignore[attr-defined]
        view = click.response.sent[0][1]["view"]
        answer = next(item for item in view.children if item.label == "42")

        monkeypatch.setattr(bot.store, "_save_unlocked", fail_save)
        submit = _interaction(5)
        await answer.callback(submit)
        monkeypatch.undo()

        assert submit.response.sent == [(ERROR_TEXT, {"ephemeral": True})]
        assert submit.response.edited == []
        assert await bot.store.get_pending(5, GUILD_ID) is not None
        bot.verification.cancel_timeouts()

    asyncio.run(scenario())
    assert bot.roles.calls == []  # type: ignore[attr-defined]


def test_sync_expiry_only_touches_the_invoking_guild(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    other_guild = GUILD_ID + 1
    bot.roles.add_member(5, *VERIFIED_ROLES)  # type: ignore[attr-defined]
    bot.roles.add_member(5, *VERIFIED_ROLES, guild_id=other_guild)  # type: ignore[attr-defined]
    long_ago = FakeClock().now
    bot._register_commands()
    command = bot.tree.get_command("verification-sync")
    assert command is not None

    async def scenario() -> None:
        for guild_id in (GUILD_ID, other_guild):
            await bot.store.begin_challenge(5, guild_id, 42, f"c-{guild_id}", long_ago)
            await bot.store.resolve_challenge(5, guild_id, 42, long_ago, long_ago - timedelta(minutes=5))

        interaction = _interaction(8, manage_guild=True)
        await command.callback(interaction, mode="expiry")  # type: ignore[union-attr]
        assert "expired `1`" in interaction.followup.sent[0]

        here = await bot.store.get_record(5, GUILD_ID)
        there = await bot.store.get_record(5, other_guild)
        assert here is not None and here.state is LifecycleState.UNVERIFIED
        assert there is not None and there.state is LifecycleState.VERIFIED

    asyncio.run(scenario())
    assert bot.roles.roles_of(5) == {MARKER_ROLE}  # type: ignore[attr-defined]
    assert bot.roles.roles_of(5, other_guild) == set(VERIFIED_ROLES)  # type: ignore[attr-defined]
