import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


load_dotenv()


class Settings(BaseModel):

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "marketchat"
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    cloudinary_url: Optional[str] = None
    voice_folder: str = "marketchat/voice-messages"
    max_audio_bytes: int = 10 * 1024 * 1024
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(name.upper())
            if raw:
                values[name] = raw
        return cls(**values)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
