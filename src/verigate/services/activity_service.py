from __future__ import annotations

from datetime import datetime
from typing import Callable

from verigate.services.logger_service import LoggerService
from verigate.services.verification_service import utcnow
from verigate.storage import StoreError, VerificationStore


class ActivityService:
    def __init__(
        self,
        store: VerificationStore,
        logger: LoggerService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.logger = logger
        self.clock = clock

    async def record_activity(self, member_id: int, guild_id: int) -> bool:
        """Refresh last_activity for a Verified member; anyone else is a no-op."""
        try:
            return await self.store.touch_activity(member_id, guild_id, self.clock())
        except StoreError as exc:
            self.logger.log("activity.record_failed", guild_id=guild_id, user_id=member_id, error=str(exc)[:240])
            return False
