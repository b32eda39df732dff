"""Configuration settings for the Comrade Circle sync client."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings loaded from environment."""

    # Backend service
    backend_url: str = "http://localhost:54321"
    backend_anon_key: str = ""
    http_timeout: float = 10.0

    # Auth session persistence (survives restarts)
    session_path: Optional[Path] = Path.home() / ".comrade-circle" / "session.json"

    # Realtime transport
    realtime_heartbeat_seconds: float = 30.0
    realtime_reconnect_base: float = 1.0
    realtime_reconnect_max: float = 30.0

    # Content limits
    max_message_length: int = 1000
    max_confession_length: int = 2000
    max_comment_length: int = 500
    min_password_length: int = 6

    # Stories
    story_ttl_hours: int = 24
    stories_bucket: str = "stories"
    media_bucket: str = "user-content"
    media_cache_control: str = "3600"

    class Config:
        env_prefix = "COMRADE_"
        env_file = ".env"


settings = Settings()
