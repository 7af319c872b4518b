from fastapi import APIRouter, Depends, Request
from app.api.v1.auth import get_current_user_id
from app.api.v1.limits import UsageMeteredRoute, check_limits, check_watermark, enforce_limits
from app.core.plans import CREDIT_COSTS
from app.schemas.content import LogoGenerationRequest, VideoGenerationRequest
from app.schemas.usage import UsageInfo
from app.services.content_service import content_service

router = APIRouter(prefix="/media", tags=["Media"], route_class=UsageMeteredRoute)


@router.post("/video")
async def generate_video(
    request: Request,
    payload: VideoGenerationRequest,
    user_id: str = Depends(get_current_user_id),
    watermark: bool = Depends(check_watermark),
):
    """Queue a video job metered by the requested minutes."""
    # cost depends on the body, so the check runs here instead of as a dependency
    request.state.usage_info = await enforce_limits(user_id, "video_minutes", payload.minutes)
    job = await content_service.create_media_job(user_id, "video", payload.prompt, payload.minutes, watermark)
    return {"success": True, "job": job.model_dump()}


@router.post("/logo")
async def generate_logo(
    payload: LogoGenerationRequest,
    usage: UsageInfo = Depends(check_limits("credits", CREDIT_COSTS["LOGO_CONCEPT"])),
    watermark: bool = Depends(check_watermark),
):
    prompt = f"{payload.brand_name} ({payload.style})" if payload.style else payload.brand_name
    job = await content_service.create_media_job(
        usage.bucket.user_id, "logo", prompt, usage.credit_cost, watermark
    )
    return {"success": True, "job": job.model_dump()}
