from __future__ import annotations
from enum import Enum
from typing import Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field


class PlayerIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    player_id: str = Field(min_length=1)
    display_name: str = ""

    @property
    def label(self) -> str:
        return f"{self.display_name}:{self.player_id}"


class RedemptionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = Field(min_length=1)
    scope: str
    roster: Tuple[PlayerIdentity, ...] = ()


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class RetryReason(str, Enum):
    SERVER_BUSY = "server_busy"
    LOGIN_TIMEOUT = "login_timeout"
    UNCLASSIFIED = "unclassified"  # uncaught automation exception


class TerminalReason(str, Enum):
    CODE_EXPIRED = "code_expired"
    CODE_NOT_FOUND = "code_not_found"
    UNCLASSIFIED = "unclassified"


class AttemptOutcome(BaseModel):
    """Result of one physical redemption attempt."""

    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    reason: Optional[Union[RetryReason, TerminalReason]] = None
    # Page status text for success/terminal, error text for retryable.
    detail: str = ""

    @classmethod
    def success(cls, message: str) -> "AttemptOutcome":
        return cls(kind=OutcomeKind.SUCCESS, detail=message)

    @classmethod
    def retryable(cls, reason: RetryReason, detail: str = "") -> "AttemptOutcome":
        return cls(kind=OutcomeKind.RETRYABLE, reason=reason, detail=detail)

    @classmethod
    def terminal(cls, reason: TerminalReason, detail: str = "") -> "AttemptOutcome":
        return cls(kind=OutcomeKind.TERMINAL, reason=reason, detail=detail)

    @property
    def is_retryable(self) -> bool:
        return self.kind is OutcomeKind.RETRYABLE

    @property
    def is_final(self) -> bool:
        return self.kind is not OutcomeKind.RETRYABLE


class RunStatus(str, Enum):
    SUCCESS = "success"
    TERMINAL = "terminal"
    EXHAUSTED = "exhausted"  # still retryable after max attempts
    SKIPPED = "skipped"  # never attempted, run halted on a dead code
    CANCELLED = "cancelled"


class RunResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    player: PlayerIdentity
    status: RunStatus
    outcome: Optional[AttemptOutcome] = None
    attempts: int = Field(default=0, ge=0)
