from fastapi import APIRouter
from app.api.v1 import analytics, auth, billing, brands, emails, media, posts, webhooks

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(auth.router)
api_router.include_router(billing.router)
api_router.include_router(webhooks.router)
api_router.include_router(posts.router)
api_router.include_router(brands.router)
api_router.include_router(media.router)
api_router.include_router(analytics.router)
api_router.include_router(emails.router)
