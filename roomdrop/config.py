"""
Configuration Management

Loads server settings from a .env file and ROOMDROP_* environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

MIB = 1024 * 1024


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    """
    Roomdrop server configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (ROOMDROP_*)
    2. .env file
    3. Default values
    """
    # Network
    host: str = "0.0.0.0"
    port: int = 8000

    # Size limits (bytes)
    max_direct_size: int = 50 * MIB
    max_file_size: int = 1024 * MIB
    max_message_size: int = 100 * MIB

    # Transfers
    default_chunk_size: int = 16 * 1024
    archive_size: int = 256

    # HTTP
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration from environment variables."""
        load_dotenv()

        settings = cls()
        settings.host = os.getenv("ROOMDROP_HOST", settings.host)
        settings.port = _int_env("ROOMDROP_PORT", settings.port)
        settings.max_direct_size = _int_env("ROOMDROP_MAX_DIRECT_SIZE", settings.max_direct_size)
        settings.max_file_size = _int_env("ROOMDROP_MAX_FILE_SIZE", settings.max_file_size)
        settings.max_message_size = _int_env("ROOMDROP_MAX_MESSAGE_SIZE", settings.max_message_size)
        settings.default_chunk_size = _int_env("ROOMDROP_CHUNK_SIZE", settings.default_chunk_size)
        settings.archive_size = _int_env("ROOMDROP_ARCHIVE_SIZE", settings.archive_size)
        settings.log_level = os.getenv("ROOMDROP_LOG_LEVEL", settings.log_level).upper()

        origins = os.getenv("ROOMDROP_CORS_ORIGINS")
        if origins:
            settings.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]

        settings.validate()
        return settings

    def __post_init__(self):
        self.validate()

    def validate(self):
        for name in ("max_direct_size", "max_file_size", "max_message_size",
                     "default_chunk_size", "archive_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        # base64 inflates the payload by 4/3 before it hits the relay
        if self.max_direct_size * 4 // 3 > self.max_message_size:
            raise ValueError("max_direct_size does not fit in max_message_size once base64-encoded")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {self.log_level!r}")
