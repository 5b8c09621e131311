"""Message record model for outpost."""

import time
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

# Default ceiling on failed attempts before a message is declared dead
DEFAULT_MAX_RETRY = 3


class MessageStatus(Enum):
    """Lifecycle state of a message record.

    PENDING: waiting for (another) delivery attempt
    SENT: delivered, terminal
    FAILED: legacy "this attempt failed" marker, never assigned by the engine
    DEAD: retries exhausted, terminal
    """

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    DEAD = "DEAD"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.SENT, MessageStatus.DEAD)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def generate_message_id() -> str:
    """Generate a caller-visible message id, unique for the store's lifetime."""
    return f"MSG_{int(time.time() * 1000)}_{uuid4().hex}"


class MessageRecord(BaseModel):
    """Immutable snapshot of one outbound message and its delivery state.

    Records are never mutated in place. Stores hand out fresh snapshots and
    apply transitions as single atomic updates, so a record read from a store
    always shows status, retry_count and next_retry_time from the same
    transition.

    Attributes:
        id: Surrogate key assigned by the store on insert.
        message_id: Caller-visible unique identifier.
        message_type: Key used to look up the delivery handler.
        destination: Opaque target passed to the handler (e.g. a webhook URL).
        content: Opaque payload passed to the handler verbatim.
        status: Current lifecycle state.
        retry_count: Failed attempts so far.
        max_retry: Ceiling on retry_count; reaching it means DEAD.
        next_retry_time: Earliest time the record is due for an attempt.
        create_time: Creation timestamp (UTC).
        update_time: Timestamp of the last transition (UTC).
        error_message: Last failure reason, cleared only on SENT.
    """

    id: int | None = None
    message_id: str = Field(default_factory=generate_message_id)
    message_type: str
    destination: str
    content: str
    status: MessageStatus = MessageStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    max_retry: int = Field(default=DEFAULT_MAX_RETRY, ge=1)
    next_retry_time: datetime = Field(default_factory=utc_now)
    create_time: datetime = Field(default_factory=utc_now)
    update_time: datetime = Field(default_factory=utc_now)
    error_message: str | None = None

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("message_id", "message_type")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Ensure identifiers are non-empty after whitespace stripping."""
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("next_retry_time", "create_time", "update_time")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        """Treat naive datetimes as UTC and normalize aware ones to UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @model_validator(mode="after")
    def validate_retry_ceiling(self) -> "MessageRecord":
        if self.retry_count > self.max_retry:
            raise ValueError(
                f"retry_count ({self.retry_count}) must not exceed max_retry ({self.max_retry})"
            )
        return self

    def is_due(self, now: datetime) -> bool:
        """Return True if the record is PENDING and its retry time has elapsed."""
        return self.status is MessageStatus.PENDING and self.next_retry_time <= now
