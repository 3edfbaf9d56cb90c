from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from verigate.config import Settings
from verigate.models import Challenge, LifecycleState, ResolveStatus
from verigate.services.challenge_service import generate_challenge, parse_answer
from verigate.services.logger_service import LoggerService
from verigate.services.role_mirror import RoleChange, RoleMirror, RoleMirrorError, converge_roles
from verigate.storage import StoreError, VerificationStore


class IssueStatus(str, Enum):
    ISSUED = "issued"
    ALREADY_VERIFIED = "already_verified"
    FAILED = "failed"


class AnswerStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NO_PENDING = "no_pending"
    FAILED = "failed"


@dataclass(frozen=True)
class ChallengeIssue:
    status: IssueStatus
    challenge: Challenge | None = None
    challenge_id: str = ""


@dataclass(frozen=True)
class AnswerOutcome:
    status: AnswerStatus
    failed_role_ids: tuple[int, ...] = ()

    @property
    def roles_applied(self) -> bool:
        return self.status is AnswerStatus.ACCEPTED and not self.failed_role_ids


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class VerificationService:
    """
    The per-member lifecycle: Unverified -> PendingChallenge -> Verified.

    Store transitions commit before any role mutation is attempted. Role
    failures after a committed accept are reported back to the caller and
    left for the reconciliation pass to repair.
    """

    def __init__(
        self,
        settings: Settings,
        store: VerificationStore,
        roles: RoleMirror,
        logger: LoggerService,
        *,
        generator: Callable[[], Challenge] = generate_challenge,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.roles = roles
        self.logger = logger
        self.generator = generator
        self.clock = clock
        self._timeout_tasks: set[asyncio.Task] = set()

    @property
    def challenge_timeout(self) -> timedelta:
        return timedelta(seconds=self.settings.challenge_timeout_seconds)

    async def current_state(self, member_id: int, guild_id: int) -> LifecycleState:
        """Stored state, with a timed-out challenge read back as Unverified."""
        record = await self.store.get_record(member_id, guild_id)
        if record is None:
            return LifecycleState.UNVERIFIED
        if record.state is LifecycleState.PENDING:
            pending = await self.store.get_pending(member_id, guild_id)
            if pending is None or pending.issued_at <= self.clock() - self.challenge_timeout:
                return LifecycleState.UNVERIFIED
        return record.state

    async def request_challenge(self, member_id: int, guild_id: int) -> ChallengeIssue:
        try:
            record = await self.store.get_record(member_id, guild_id)
            if record is not None and record.is_verified:
                self.logger.log("verification.already_verified", guild_id=guild_id, user_id=member_id)
                return ChallengeIssue(IssueStatus.ALREADY_VERIFIED)
            challenge = self.generator()
            challenge_id = uuid.uuid4().hex
            started = await self.store.begin_challenge(
                member_id,
                guild_id,
                challenge.correct_answer,
                challenge_id,
                self.clock(),
            )
        except StoreError as exc:
            self.logger.log("verification.store_failed", stage="issue", guild_id=guild_id, user_id=member_id, error=str(exc)[:240])
            return ChallengeIssue(IssueStatus.FAILED)
        if not started:
            self.logger.log("verification.already_verified", guild_id=guild_id, user_id=member_id)
            return ChallengeIssue(IssueStatus.ALREADY_VERIFIED)
        self._schedule_timeout(member_id, guild_id, challenge_id)
        self.logger.log("verification.challenge_issued", guild_id=guild_id, user_id=member_id, challenge_id=challenge_id)
        return ChallengeIssue(IssueStatus.ISSUED, challenge=challenge, challenge_id=challenge_id)

    async def submit_answer(self, member_id: int, guild_id: int, raw_answer: str | int | None) -> AnswerOutcome:
        now = self.clock()
        try:
            status = await self.store.resolve_challenge(
                member_id,
                guild_id,
                parse_answer(raw_answer),
                now,
                now - self.challenge_timeout,
            )
        except StoreError as exc:
            self.logger.log("verification.store_failed", stage="resolve", guild_id=guild_id, user_id=member_id, error=str(exc)[:240])
            return AnswerOutcome(AnswerStatus.FAILED)

        if status is ResolveStatus.NO_PENDING:
            self.logger.log("verification.no_pending", guild_id=guild_id, user_id=member_id)
            return AnswerOutcome(AnswerStatus.NO_PENDING)
        if status is ResolveStatus.REJECTED:
            self.logger.log("verification.rejected", guild_id=guild_id, user_id=member_id)
            return AnswerOutcome(AnswerStatus.REJECTED)

        change = await self.apply_roles(member_id, guild_id, verified=True)
        if change.failed:
            self.logger.log(
                "verification.role_grant_failed",
                guild_id=guild_id,
                user_id=member_id,
                role_ids=list(change.failed),
            )
        self.logger.log("verification.accepted", guild_id=guild_id, user_id=member_id, granted=change.granted)
        return AnswerOutcome(AnswerStatus.ACCEPTED, failed_role_ids=tuple(change.failed))

    async def expire_challenge(self, member_id: int, guild_id: int, challenge_id: str) -> bool:
        try:
            cleared = await self.store.clear_challenge(member_id, guild_id, challenge_id)
        except StoreError as exc:
            self.logger.log("verification.store_failed", stage="timeout", guild_id=guild_id, user_id=member_id, error=str(exc)[:240])
            return False
        if cleared:
            self.logger.log("verification.timeout_cleared", guild_id=guild_id, user_id=member_id, challenge_id=challenge_id)
        return cleared

    async def sweep_stale_challenges(self) -> int:
        """Clear challenges whose timeout task was lost, e.g. across a restart."""
        return await self.store.sweep_stale_challenges(self.clock() - self.challenge_timeout)

    async def member_joined(self, member_id: int, guild_id: int) -> RoleChange:
        try:
            record = await self.store.get_record(member_id, guild_id)
            if record is None:
                await self.store.ensure_tracked(member_id, guild_id, self.clock())
        except StoreError as exc:
            # Unverified roles are the safe default; reconciliation tracks the member later.
            self.logger.log("verification.store_failed", stage="join", guild_id=guild_id, user_id=member_id, error=str(exc)[:240])
            record = None
        verified = record is not None and record.is_verified
        change = await self.apply_roles(member_id, guild_id, verified=verified)
        self.logger.log("member.joined", guild_id=guild_id, user_id=member_id, verified=verified, failed=change.failed)
        return change

    async def member_left(self, member_id: int, guild_id: int) -> bool:
        try:
            removed = await self.store.forget_member(member_id, guild_id)
        except StoreError as exc:
            self.logger.log("verification.store_failed", stage="leave", guild_id=guild_id, user_id=member_id, error=str(exc)[:240])
            return False
        self.logger.log("member.left", guild_id=guild_id, user_id=member_id, removed=removed)
        return removed

    async def apply_roles(self, member_id: int, guild_id: int, *, verified: bool) -> RoleChange:
        wanted, unwanted = self.settings.target_roles(verified)
        try:
            held = await self.roles.get_granted_roles(member_id, guild_id)
        except RoleMirrorError:
            held = None
        else:
            if held is None:
                return RoleChange()
        return await converge_roles(self.roles, member_id, guild_id, wanted=wanted, unwanted=unwanted, held=held)

    def cancel_timeouts(self) -> None:
        for task in list(self._timeout_tasks):
            task.cancel()
        self._timeout_tasks.clear()

    def _schedule_timeout(self, member_id: int, guild_id: int, challenge_id: str) -> None:
        task = asyncio.create_task(
            self._expire_after(member_id, guild_id, challenge_id),
            name=f"challenge-timeout-{guild_id}-{member_id}",
        )
        self._timeout_tasks.add(task)
        task.add_done_callback(self._timeout_tasks.discard)

    async def _expire_after(self, member_id: int, guild_id: int, challenge_id: str) -> None:
        await asyncio.sleep(self.settings.challenge_timeout_seconds)
        await self.expire_challenge(member_id, guild_id, challenge_id)
