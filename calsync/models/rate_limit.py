"""Rate limit bucket model."""

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from calsync.core.timeutil import utcnow


class RateLimitWindow(SQLModel, table=True):
    """Request count for one (integration, endpoint class, second) bucket.

    The limiter sums the buckets inside a sliding window to decide whether
    a call may proceed. Rows older than a couple of hours are garbage
    collected by the housekeeping job.

    Attributes:
        id: Integer primary key.
        integration_id: Integration the calls were made for.
        endpoint: Endpoint class (``default``, ``sync``, ``create``, ``delete``).
        window_start: Start of the bucket, truncated to the second.
        requests_count: Calls recorded in the bucket.
        created: Row creation time.
    """
    __tablename__ = "rate_limit_window"
    __table_args__ = (
        UniqueConstraint("integration_id", "endpoint", "window_start", name="uq_rate_limit_bucket"),
    )

    id: int | None = Field(default=None, primary_key=True)
    integration_id: int = Field(index=True)
    endpoint: str
    window_start: datetime = Field(index=True)
    requests_count: int = 0
    created: datetime = Field(default_factory=utcnow)
