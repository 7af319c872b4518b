from fastapi import APIRouter, Depends, Request
from app.api.v1.auth import get_current_user_id
from app.api.v1.limits import UsageMeteredRoute, brand_slot, enforce_limits
from app.core.exceptions import NotFoundError
from app.schemas.content import CreateBrand
from app.services.content_service import content_service

router = APIRouter(prefix="/brands", tags=["Brands"], route_class=UsageMeteredRoute)


@router.post("")
async def create_brand(
    brand_data: CreateBrand,
    request: Request,
    user_id: str = Depends(get_current_user_id),
):
    """Create a brand if the plan still has a free brand slot."""
    async with brand_slot(user_id):
        request.state.usage_info = await enforce_limits(user_id, "brands")
        brand = await content_service.create_brand(user_id, brand_data)
    return {"success": True, "brand": brand.model_dump()}


@router.get("")
async def list_brands(user_id: str = Depends(get_current_user_id)):
    brands = await content_service.list_brands(user_id)
    return {"success": True, "brands": [brand.model_dump() for brand in brands]}


@router.delete("/{brand_id}")
async def delete_brand(brand_id: str, user_id: str = Depends(get_current_user_id)):
    """Deactivate a brand, freeing its slot."""
    if not await content_service.deactivate_brand(brand_id, user_id):
        raise NotFoundError("Brand", brand_id)
    return {"success": True}
