from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine and server settings with environment variable support"""

    # Time server the engine measures against
    SERVER_URL: str = "http://localhost:8123"

    # Persistent datagram transport; disabled unless a port is set
    TRANSPORT_PORT: Optional[int] = None
    TRANSPORT_CERT_HASH: Optional[str] = None

    # Measurement loop
    NUM_SAMPLES: int = 5
    SHORT_DELAY_MS: float = 1000.0
    LONG_DELAY_MS: float = 60000.0
    SOCKET_TIMEOUT_MS: float = 10000.0  # idle time after which HTTP sends a preflight
    REQUEST_TIMEOUT: float = 5.0  # seconds
    DATAGRAM_TIMEOUT: float = 5.0  # seconds

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_PATH: Optional[str] = None

    # Time server
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8123

    class Config:
        env_file = ".env"
        env_prefix = "FOXTIME_"
        case_sensitive = True


# Global settings instance
settings = Settings()
