"""
Configuration for docrepo.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class StoreSettings(BaseSettings):
    """Storage engine configuration loaded from environment."""

    # SQLite files
    data_dir: str = Field(default="./data", description="Directory for database files")
    busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")
    wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")

    # Change feed
    change_poll_interval: float = Field(
        default=0.5,
        description="Seconds between polls for changes written by other connections",
    )
    change_log_limit: int = Field(
        default=10000, description="Change records kept for other connections to read"
    )

    # Logging
    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    log_format: str = Field(default="text", description="text or json")

    model_config = {"env_prefix": "DOCREPO_"}
