from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from verigate.config import Settings
from verigate.models import MemberRecord
from verigate.services.logger_service import LoggerService
from verigate.services.role_mirror import RoleMirror, RoleMirrorError, converge_roles
from verigate.services.verification_service import utcnow
from verigate.storage import StoreError, VerificationStore


@dataclass
class ReconcileReport:
    guild_id: int
    members_seen: int = 0
    bots_skipped: int = 0
    granted: int = 0
    revoked: int = 0
    records_created: int = 0
    failures: int = 0

    @property
    def mutations(self) -> int:
        return self.granted + self.revoked


@dataclass
class ExpiryReport:
    checked: int = 0
    expired: int = 0
    forgotten: int = 0
    skipped: int = 0
    failures: int = 0


class ReconcileService:
    """
    Repairs drift between stored verification state and the role mirror.

    Stored state is the authority. Each member is handled on its own: a
    failure is logged and counted, and the pass moves on to the next member.
    """

    def __init__(
        self,
        settings: Settings,
        store: VerificationStore,
        roles: RoleMirror,
        logger: LoggerService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.roles = roles
        self.logger = logger
        self.clock = clock

    @property
    def inactivity_threshold(self) -> timedelta:
        return timedelta(days=self.settings.inactivity_threshold_days)

    async def reconcile(self, guild_id: int) -> ReconcileReport:
        report = ReconcileReport(guild_id=int(guild_id))
        try:
            tracked = await self.store.records_for_guild(guild_id)
        except StoreError as exc:
            report.failures += 1
            self.logger.log("reconcile.member_failed", guild_id=guild_id, user_id=0, stage="snapshot", error=str(exc)[:240])
            self.logger.log("reconcile.completed", **_report_fields(report))
            return report
        self.logger.log("reconcile.started", guild_id=guild_id, tracked=len(tracked))

        for ref in await self.roles.list_members(guild_id):
            if ref.bot:
                report.bots_skipped += 1
                continue
            report.members_seen += 1
            try:
                await self._reconcile_member(report, ref.member_id)
            except (StoreError, RoleMirrorError) as exc:
                report.failures += 1
                self.logger.log(
                    "reconcile.member_failed",
                    guild_id=guild_id,
                    user_id=ref.member_id,
                    stage="member",
                    error=str(exc)[:240],
                )

        self.logger.log("reconcile.completed", **_report_fields(report))
        return report

    async def _reconcile_member(self, report: ReconcileReport, member_id: int) -> None:
        # Stored state is read per member, after the role read: a challenge can
        # resolve while role calls are in flight. A transition that lands during
        # this member's own role calls gets one more round.
        guild_id = report.guild_id
        for _ in range(2):
            held = await self.roles.get_granted_roles(member_id, guild_id)
            if held is None:
                # Listed a moment ago but gone now; on_member_remove handles the record.
                return
            record = await self.store.get_record(member_id, guild_id)
            verified = _is_verified(record)
            wanted, unwanted = self.settings.target_roles(verified)
            change = await converge_roles(self.roles, member_id, guild_id, wanted=wanted, unwanted=unwanted, held=held)
            report.granted += len(change.granted)
            report.revoked += len(change.revoked)
            if change.failed:
                report.failures += 1
                self.logger.log(
                    "reconcile.member_failed",
                    guild_id=guild_id,
                    user_id=member_id,
                    stage="roles",
                    role_ids=list(change.failed),
                )
            if record is None and await self.store.ensure_tracked(member_id, guild_id, self.clock()):
                report.records_created += 1
            if not change.granted and not change.revoked:
                return
            if _is_verified(await self.store.get_record(member_id, guild_id)) == verified:
                return

    async def reconcile_all(self, guild_ids: Iterable[int]) -> list[ReconcileReport]:
        return [await self.reconcile(guild_id) for guild_id in guild_ids]

    async def expire_inactive(self, now: datetime | None = None, *, guild_id: int | None = None) -> ExpiryReport:
        """
        Demote Verified members idle past the inactivity threshold, in one
        guild or in all of them. The store transition commits first and
        re-checks the guard, so a member who became active since the snapshot
        keeps their grant.
        """
        now = now or self.clock()
        cutoff = now - self.inactivity_threshold
        report = ExpiryReport()
        try:
            stale = await self.store.stale_verified(cutoff, guild_id=guild_id)
        except StoreError as exc:
            report.failures += 1
            self.logger.log("expiry.member_failed", guild_id=guild_id or 0, user_id=0, stage="snapshot", error=str(exc)[:240])
            self.logger.log("expiry.completed", scope=guild_id, **vars(report))
            return report

        for record in stale:
            report.checked += 1
            member_id, member_guild = record.member_id, record.guild_id
            held: set[int] | None = None
            held_known = True
            try:
                try:
                    held = await self.roles.get_granted_roles(member_id, member_guild)
                except RoleMirrorError:
                    held_known = False
                if held_known and held is None:
                    await self.store.forget_member(member_id, member_guild)
                    report.forgotten += 1
                    continue
                if not await self.store.expire_verified(member_id, member_guild, cutoff, now):
                    report.skipped += 1
                    continue
            except StoreError as exc:
                report.failures += 1
                self.logger.log("expiry.member_failed", guild_id=member_guild, user_id=member_id, stage="store", error=str(exc)[:240])
                continue

            report.expired += 1
            wanted, unwanted = self.settings.target_roles(False)
            change = await converge_roles(
                self.roles,
                member_id,
                member_guild,
                wanted=wanted,
                unwanted=unwanted,
                held=held if held_known else None,
            )
            if change.failed:
                report.failures += 1
                self.logger.log(
                    "expiry.member_failed",
                    guild_id=member_guild,
                    user_id=member_id,
                    stage="roles",
                    role_ids=list(change.failed),
                )
            self.logger.log(
                "expiry.member_expired",
                guild_id=member_guild,
                user_id=member_id,
                last_activity=record.last_activity.isoformat() if record.last_activity else None,
            )

        self.logger.log("expiry.completed", scope=guild_id, **vars(report))
        return report


def _is_verified(record: MemberRecord | None) -> bool:
    return record is not None and record.is_verified


def _report_fields(report: ReconcileReport) -> dict[str, int]:
    fields = dict(vars(report))
    fields["mutations"] = report.mutations
    return fields
