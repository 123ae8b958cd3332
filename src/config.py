from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "0.4.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8085
    LOG_LEVEL: str = "info"
    APP_DEBUG: bool = False
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    OPENAPI_URL: str = "/openapi.json"

    # Route Configuration
    # Prefix used when building relay/transcode URLs handed to the player.
    # Leave empty when the service is mounted at the site root.
    ROOT_PATH: str = ""

    # Default upstream request properties
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
    DEFAULT_CONNECTION_TIMEOUT: float = 10.0
    DEFAULT_READ_TIMEOUT: float = 30.0
    # Relayed VOD can sit paused in the browser for a long time
    RELAY_WRITE_TIMEOUT: float = 3600.0
    RELAY_CHUNK_SIZE: int = 32768

    # Stream resolution policy
    # Origins that reject browser fetches (CORS/referrer). Matched against the
    # URL host, subdomains included.
    CORS_HOSTILE_DOMAINS: List[str] = ["pluto.tv"]
    # Substrings that make a URL look like an HLS manifest
    HLS_URL_MARKERS: List[str] = [".m3u8", "m3u8"]
    # Substrings that make a URL look like a single progressive file
    FILE_URL_MARKERS: List[str] = [".mp4", ".mkv", ".avi"]

    # Transcoding configuration
    FFMPEG_PATH: str = "ffmpeg"
    TRANSCODE_CHUNK_SIZE: int = 32768
    # How long (seconds) to wait for the first bytes from ffmpeg before the
    # transcode is considered failed to start.
    TRANSCODE_START_TIMEOUT: float = 30.0
    # Stderr retention for diagnostics (lines kept, max chars per line)
    TRANSCODE_STDERR_LINES: int = 50
    TRANSCODE_STDERR_LINE_LENGTH: int = 1024
    # 0 disables admission control (unbounded concurrent transcodes)
    MAX_CONCURRENT_TRANSCODES: int = 0

    # API Authentication
    API_TOKEN: Optional[str] = None

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
