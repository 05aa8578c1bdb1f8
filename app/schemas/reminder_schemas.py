from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


# ============= Rate Limiting =============
class RateLimitResult(BaseModel):
    """Outcome of a sliding-window rate limit check"""

    allowed: bool
    remaining: int
    reset_time: datetime
    total_requests: int


# ============= Transport =============
class SendResult(BaseModel):
    """Outcome of a single outbound WhatsApp message"""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


# ============= Dispatch =============
class DispatchResult(BaseModel):
    """Outcome of dispatching one reminder or followup"""

    item_id: str
    success: bool
    skipped: bool = False
    message_id: Optional[str] = None
    error: Optional[str] = None
    status: Optional[str] = None  # status recorded by this attempt, if any


class BatchResult(BaseModel):
    """Aggregated outcome of one reminder batch"""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    results: List[DispatchResult] = Field(default_factory=list, exclude=True)


class FollowupResult(BaseModel):
    """Outcome of processing one followup"""

    followup_id: str
    processed: bool
    status: str
    sent_message_id: Optional[str] = None
    error: Optional[str] = None


# ============= Cron Responses =============
class ReminderSummary(BaseModel):
    found: int
    processed: int
    successful: int
    failed: int
    skipped: int


class FollowupSummary(BaseModel):
    processed: int
    sent: int
    failed: int


class CronRunResponse(BaseModel):
    """Body returned by a successful cron invocation"""

    success: bool = True
    timestamp: datetime
    instance_id: str
    duration_ms: int
    reminders: ReminderSummary
    errors: List[str] = Field(default_factory=list)
    followups: FollowupSummary


class CronStatusResponse(BaseModel):
    locked: bool
    lock_ttl_seconds: float
    rate_limit: RateLimitResult
