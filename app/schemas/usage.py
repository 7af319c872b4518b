from pydantic import BaseModel, Field
from typing import Dict, Optional, Literal
from datetime import datetime

LimitType = Literal["posts", "credits", "video_minutes", "brands"]


class UsageBucket(BaseModel):
    """Per-user, per-billing-period usage snapshot. A limit of -1 is unlimited."""
    id: str = Field(alias="_id")
    user_id: str
    subscription_id: Optional[str] = None
    plan_code: Optional[str] = None
    period_start: datetime
    period_end: datetime
    posts_used: int = 0
    posts_limit: int = 0
    credits_used: int = 0
    credits_limit: int = 0
    video_minutes_used: int = 0
    video_minutes_limit: int = 0
    brands_limit: int = 0
    seats_limit: int = 0
    addon_boosts: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class UsageInfo(BaseModel):
    """What the limit check hands to the metered route for the bookkeeping phase."""
    bucket: UsageBucket
    limit_type: LimitType
    credit_cost: int = 1
    reserved: bool = False


class ReservationResult(BaseModel):
    """Outcome of an atomic conditional increment."""
    allowed: bool
    bucket: Optional[UsageBucket] = None
    current_usage: int = 0
    limit: int = 0

