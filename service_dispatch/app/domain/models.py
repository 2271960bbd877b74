"""
Domain models for the dispatch pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class WorkItem(BaseModel):
    """One document to deliver to the external processing endpoint."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique document identifier")
    group_key: str = Field(..., description="Partitioning key, e.g. region")
    enqueued_at: datetime = Field(default_factory=utcnow, description="When the item was derived")

    def channel_key(self) -> str:
        """Message key used on every channel."""
        return str(self.id)


@dataclass(frozen=True)
class Credential:
    """Access token together with its absolute expiry (epoch seconds)."""

    token: str
    expires_at: float

    def is_valid(self, now: float, skew: float = 0.0) -> bool:
        return bool(self.token) and now + skew < self.expires_at


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


class ErrorKind(str, Enum):
    """Failure taxonomy carried into dead-letter records."""

    TRANSIENT_INFRA = "TransientInfra"
    AUTH_REJECTED = "AuthRejected"
    REMOTE_RETRYABLE = "RemoteRetryable"
    REMOTE_PERMANENT = "RemotePermanent"
    CIRCUIT_OPEN = "CircuitOpen"
    RATE_LIMITED = "RateLimited"


@dataclass(frozen=True)
class CallOutcome:
    """Tagged result of one resilient outbound call."""

    kind: OutcomeKind
    reason: str = ""
    error_kind: Optional[ErrorKind] = None
    attempts: int = 1

    @classmethod
    def success(cls) -> "CallOutcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def retryable(cls, reason: str, error_kind: ErrorKind = ErrorKind.REMOTE_RETRYABLE) -> "CallOutcome":
        return cls(OutcomeKind.RETRYABLE_FAILURE, reason, error_kind)

    @classmethod
    def permanent(cls, reason: str, error_kind: ErrorKind = ErrorKind.REMOTE_PERMANENT) -> "CallOutcome":
        return cls(OutcomeKind.PERMANENT_FAILURE, reason, error_kind)

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_retryable(self) -> bool:
        return self.kind == OutcomeKind.RETRYABLE_FAILURE

    def with_attempts(self, attempts: int) -> "CallOutcome":
        return CallOutcome(self.kind, self.reason, self.error_kind, attempts)


@dataclass(frozen=True)
class MessageSource:
    """Where a consumed message came from."""

    topic: str
    partition: int
    offset: int


class DeadLetterRecord(BaseModel):
    """Terminal record of a work item whose processing failed."""

    model_config = ConfigDict(frozen=True)

    original_item: WorkItem
    failure_reason: str
    failure_type: str
    attempts: int = 1
    timestamp: datetime = Field(default_factory=utcnow)
    original_topic: Optional[str] = None
    original_partition: Optional[int] = None
    original_channel_offset: Optional[int] = None

    @classmethod
    def from_outcome(cls, item: WorkItem, outcome: CallOutcome, source: Optional[MessageSource] = None) -> "DeadLetterRecord":
        failure_type = outcome.error_kind.value if outcome.error_kind else outcome.kind.value
        return cls(
            original_item=item,
            failure_reason=outcome.reason,
            failure_type=failure_type,
            attempts=outcome.attempts,
            original_topic=source.topic if source else None,
            original_partition=source.partition if source else None,
            original_channel_offset=source.offset if source else None,
        )


@dataclass(frozen=True)
class PendingWork:
    """One row of the pending-work query."""

    item_id: str
    status: str
    group_key: str

    def to_work_item(self, enqueued_at: Optional[datetime] = None) -> WorkItem:
        return WorkItem(
            id=str(self.item_id),
            group_key=self.group_key,
            enqueued_at=enqueued_at or utcnow()
        )


@dataclass
class RunOutcome:
    """Aggregate result of one orchestration run."""

    pending: int = 0
    groups: int = 0
    dispatched: int = 0
    failed_items: Dict[str, str] = field(default_factory=dict)
    group_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed_items and not self.group_errors

    def to_dict(self) -> Dict[str, object]:
        return {
            "pending": self.pending,
            "groups": self.groups,
            "dispatched": self.dispatched,
            "failed_items": dict(self.failed_items),
            "group_errors": dict(self.group_errors),
            "ok": self.ok
        }
