from tubely.schemas.user import Token, UserCreate, UserRead
from tubely.schemas.video import VideoCreate, VideoRead

__all__ = [
    "UserCreate",
    "UserRead",
    "Token",
    "VideoCreate",
    "VideoRead",
]
