from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class VideoCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None


class VideoRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    title: str
    description: str | None = None
    thumbnail_url: str | None = None
    video_url: str | None = None
    created_at: datetime
    updated_at: datetime
