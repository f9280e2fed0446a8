from pydantic_settings import BaseSettings
from typing import Optional


class ClientSettings(BaseSettings):
    """Client-side sync settings, read from EQUIPMENT_* environment variables."""

    BASE_URL: str = "http://localhost:8000"
    API_PREFIX: str = "/api/v1"
    SOCKETIO_PATH: str = "ws/socket.io"
    NAMESPACE: str = "/equipment"
    TEAM_ID: Optional[str] = None            # defaults to the logged-in user's team

    REQUEST_TIMEOUT: float = 15.0
    CONNECT_TIMEOUT: float = 10.0

    # Reconnect backoff (seconds), exponential with jitter
    RECONNECT_DELAY: float = 1.0
    RECONNECT_DELAY_MAX: float = 5.0
    RECONNECT_JITTER: float = 0.5

    # Polling cadence (seconds): healthy channel / degraded channel
    POLL_EQUIPMENT_HEALTHY: float = 15
    POLL_EQUIPMENT_DEGRADED: float = 5
    POLL_STATS_HEALTHY: float = 20
    POLL_STATS_DEGRADED: float = 10
    POLL_DELETED_HEALTHY: float = 30
    POLL_DELETED_DEGRADED: float = 15

    ACTIVITY_FEED_SIZE: int = 20

    # Consecutive connect failures before the outage is shown to the user
    CHANNEL_ERROR_THRESHOLD: int = 5

    class Config:
        env_prefix = "EQUIPMENT_"
        case_sensitive = False


client_settings = ClientSettings()
