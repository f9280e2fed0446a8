from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # CORS – keep env parsing simple: store raw string, parse in app.py
    ALLOW_ORIGINS: Optional[str] = None
    ALLOW_ORIGIN_REGEX: Optional[str] = None

    # Auth/JWT (phone-number login, no passwords)
    AUTH_SECRET_KEY: str = "change-me"       # set via ENV in production
    AUTH_ALGORITHM: str = "HS256"
    AUTH_ACCESS_TTL_DAYS: int = 7

    # DB: SQLite locally, PostgreSQL (psycopg2) in production
    DATABASE_URL: str = "sqlite:///./equipment.db"
    DB_CONNECT_TIMEOUT: int = 5

    # Scope every record and subscriber belongs to unless the user says otherwise
    DEFAULT_TEAM_ID: str = "global"

    # Socket.IO
    SOCKETIO_PATH: str = "ws/socket.io"      # ASGIApp prepends '/'
    SOCKETIO_NAMESPACE: str = "/equipment"
    SOCKETIO_PING_INTERVAL: int = 25
    SOCKETIO_PING_TIMEOUT: int = 60
    # e.g. redis://localhost:6379/0 when running more than one worker
    SOCKETIO_MESSAGE_QUEUE: Optional[str] = None

    # Background jobs
    STATS_BROADCAST_SECONDS: int = 60
    SESSION_TIMEOUT_MINUTES: int = 60

    LOG_LEVEL: str = "INFO"

    class Config:
        case_sensitive = False


settings = Settings()
