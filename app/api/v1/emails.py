from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from typing import Literal
from bson import ObjectId
from app.api.v1.auth import get_current_user_id
from app.api.v1.deps import get_lifecycle_job
from app.core.config import settings
from app.core.exceptions import AuthorizationError, NotFoundError
from app.db.mongo import get_database
from app.services.lifecycle_emails import LifecycleEmailJob
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emails", tags=["Emails"])


class TriggerWelcomeRequest(BaseModel):
    subscriptionId: str


class TestEmailRequest(BaseModel):
    type: Literal["welcome", "reminder", "final", "conversion"]
    email: EmailStr


@router.post("/lifecycle/run")
async def run_lifecycle_emails(
    user_id: str = Depends(get_current_user_id),
    job: LifecycleEmailJob = Depends(get_lifecycle_job),
):
    """Run one lifecycle pass now instead of waiting for the hourly schedule."""
    logger.info(f"Manual lifecycle email run requested by {user_id}")
    results = await job.process_lifecycle_emails()
    if results is None:
        return JSONResponse(
            status_code=409,
            content={"success": False, "error": "Lifecycle email job already running"},
        )
    return {"success": True, "sent": results}


@router.post("/trigger-welcome")
async def trigger_welcome(
    request: TriggerWelcomeRequest,
    user_id: str = Depends(get_current_user_id),
    job: LifecycleEmailJob = Depends(get_lifecycle_job),
):
    db = await get_database()
    key = ObjectId(request.subscriptionId) if ObjectId.is_valid(request.subscriptionId) else request.subscriptionId
    subscription = await db.subscriptions.find_one({"_id": key})
    if not subscription:
        raise NotFoundError("Subscription", request.subscriptionId)
    if subscription["user_id"] != user_id:
        raise AuthorizationError("Subscription belongs to another user")

    sent = await job.trigger_welcome_email(user_id, request.subscriptionId)
    return {"success": sent}


@router.post("/test")
async def send_test_email(
    request: TestEmailRequest,
    user_id: str = Depends(get_current_user_id),
    job: LifecycleEmailJob = Depends(get_lifecycle_job),
):
    """Send one lifecycle template, ignoring the once-only flags."""
    if not settings.TEST_MODE:
        db = await get_database()
        profile = await db.user_profiles.find_one({"user_id": user_id})
        if not profile or profile.get("email") != request.email:
            raise AuthorizationError("Test emails can only be sent to your own address")

    sent = await job.test_lifecycle_email(request.type, request.email)
    return {"success": sent}
