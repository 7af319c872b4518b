from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

PlanCode = Literal["STARTER", "PRO_50", "PRO_200", "PRO_500", "AGENCY"]
AddonType = Literal["CREDITS_500", "VIDEO_60", "POSTS_1000", "BRAND", "SEAT"]


class Subscription(BaseModel):
    """A user's relationship to a paid plan, keyed by its Stripe subscription id."""
    id: str = Field(alias="_id")
    user_id: str
    plan_code: str
    status: str
    stripe_subscription_id: str
    stripe_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    welcome_email_sent: Optional[datetime] = None
    trial_reminder_sent: Optional[datetime] = None
    final_reminder_sent: Optional[datetime] = None
    conversion_email_sent: Optional[datetime] = None
    last_event_at: Optional[int] = None
    status_event_at: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class AddonPurchase(BaseModel):
    """Immutable record of a fulfilled add-on checkout."""
    user_id: str
    type: str
    amount: int
    price_paid: Optional[int] = None
    stripe_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None


class CheckoutRequest(BaseModel):
    planCode: Optional[PlanCode] = None
    addonType: Optional[AddonType] = None
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None
