import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Southern Mozambique Channel, the area the service was first deployed for.
DEFAULT_BOUNDING_BOXES: list[list[list[float]]] = [[[-38.88, 31.03], [-20.88, 42.74]]]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    DATABASE_URL: str = "sqlite:///shipfeed.db"
    LOG_LEVEL: str = "INFO"
    # Connection pool (ignored for sqlite)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    # CORS origins (comma-separated string for env var support)
    CORS_ORIGINS: str = "*"
    PORT: int = 3015
    # aisstream.io real-time AIS WebSocket
    AISSTREAM_API_KEY: str | None = None
    AISSTREAM_WS_URL: str = "wss://stream.aisstream.io/v0/stream"
    # JSON list of [[lat, lon], [lat, lon]] boxes
    AISSTREAM_BOUNDING_BOXES: list[list[list[float]]] = DEFAULT_BOUNDING_BOXES
    # Reconnect backoff (seconds). Equal values give a fixed delay.
    AISSTREAM_RECONNECT_DELAY: float = 1.0
    AISSTREAM_MAX_RECONNECT_DELAY: float = 60.0
    STREAM_ENABLED: bool = True
    # Persistence and retention
    FLUSH_INTERVAL_SECONDS: float = 300.0
    RETENTION_INTERVAL_SECONDS: float = 3600.0
    RETENTION_HOURS: float = 24.0
    RETENTION_PRUNE_MEMORY: bool = True
    HYDRATE_ON_STARTUP: bool = True
    # Query limits
    DEFAULT_QUERY_LIMIT: int = 100
    MAX_QUERY_LIMIT: int = 1000

    @field_validator("AISSTREAM_BOUNDING_BOXES", mode="before")
    @classmethod
    def _parse_boxes(cls, v):
        if isinstance(v, str):
            return json.loads(v)
        return v


settings = Settings()
