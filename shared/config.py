"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every timing the hub depends on lives here: how long a single delivery may take
before the recipient counts as unreachable, how often we ping, and how long a
silent client survives before the heartbeat monitor drops it. Override any of
them through environment variables or a `.env` file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Fan-out
    DELIVERY_TIMEOUT_S: float = 2.0
    ECHO_OWN_MESSAGES: bool = False

    # Heartbeat
    HEARTBEAT_INTERVAL_S: float = 15.0
    HEARTBEAT_TIMEOUT_S: float = 45.0

    # History
    HISTORY_SIZE: int = 200
    HISTORY_REPLAY_LIMIT: int = 20

    MAX_MESSAGE_LENGTH: int = 4000

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'ignore'

settings = Settings()
