from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.3.2"


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
    ROOT_PATH: str = ""
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # Producer secret. When unset, producer endpoints are open.
    API_TOKEN: Optional[str] = None

    # Dashboard engine
    ENGINE_ENABLED: bool = True
    # Base URL of the config, stream-status and break-mode endpoints.
    # Defaults to this service's own /api routes.
    DASHBOARD_API_URL: str = "http://127.0.0.1:8085/api"
    # Serve the engine's own API calls in-process instead of over a socket.
    # Turn off when DASHBOARD_API_URL points at another deployment.
    ENGINE_IN_PROCESS: bool = True
    OFFLINE_POLL_INTERVAL: float = 10.0
    LIVENESS_POLL_INTERVAL: float = 5.0
    BREAK_POLL_INTERVAL: float = 5.0
    DURATION_TICK_INTERVAL: float = 1.0
    BREAK_POLL_START_DELAY: float = 2.0
    # Delay before an in-place reload after a recoverable network error
    NETWORK_RECOVERY_DELAY: float = 1.0
    MAX_MEDIA_RECOVERIES: int = 3
    STATUS_REQUEST_TIMEOUT: float = 10.0
    PLAYLIST_REQUEST_TIMEOUT: float = 10.0
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (X11; Linux x86_64) crew-dashboard"

    # Hosting provider
    MUX_API_URL: str = "https://api.mux.com/video/v1"
    MUX_TOKEN_ID: Optional[str] = None
    MUX_TOKEN_SECRET: Optional[str] = None
    STREAM_BASE_URL: str = "https://stream.mux.com/"
    FALLBACK_PLAYBACK_ID: str = "mbX0201BRcVnkh802Fb00UHWbRUpNgV64lM029iBmuHLqe1g"
    LIVE_STREAM_ID_PLACEHOLDER: str = "ENTER_LIVE_STREAM_ID"
    # Number of break-mode entries kept server side ("0".."3")
    BREAK_FEED_COUNT: int = 4

    # Server-side blob store (Redis when enabled, in-memory otherwise)
    REDIS_ENABLED: bool = False
    REDIS_HOST: str = "localhost"
    REDIS_SERVER_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_KEY_PREFIX: str = "crew-dashboard"

    # Client-side persistence
    CONFIG_FALLBACK_FILE: str = "config.json"
    PREFERENCES_FILE: str = "dashboard-preferences.json"

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
