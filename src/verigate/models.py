from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class LifecycleState(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"


class ResolveStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NO_PENDING = "no_pending"


@dataclass(frozen=True)
class MemberRecord:
    member_id: int
    guild_id: int
    state: LifecycleState
    joined_at: datetime
    verified_at: datetime | None = None
    last_activity: datetime | None = None

    @property
    def is_verified(self) -> bool:
        return self.state is LifecycleState.VERIFIED


@dataclass(frozen=True)
class PendingChallenge:
    member_id: int
    guild_id: int
    expected_answer: int
    challenge_id: str
    issued_at: datetime


@dataclass(frozen=True)
class Challenge:
    question: str
    correct_answer: int
    choices: tuple[int, ...]
