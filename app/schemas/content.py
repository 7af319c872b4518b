from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field
from app.utils.dates import utcnow


class ContentPost(BaseModel):
    id: str = Field(alias="_id")
    user_id: str
    platform: str
    content: str
    brand_id: Optional[str] = None
    status: str = "draft"  # draft, scheduled, published
    scheduled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


class CreatePost(BaseModel):
    platform: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    brand_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class Brand(BaseModel):
    id: str = Field(alias="_id")
    user_id: str
    name: str
    industry: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


class CreateBrand(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    industry: Optional[str] = None
    description: Optional[str] = None


class MediaJob(BaseModel):
    """A queued generation request. Only the job record is kept here."""
    id: str = Field(alias="_id")
    user_id: str
    kind: str  # video, logo
    prompt: str
    units: int
    watermark: bool = True
    status: str = "queued"
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


class VideoGenerationRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    minutes: int = Field(default=1, ge=1, le=600)


class LogoGenerationRequest(BaseModel):
    brand_name: str = Field(..., min_length=1)
    style: Optional[str] = None
