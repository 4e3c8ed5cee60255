from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_TOKEN_TTL_MINUTES = 24 * 60


@dataclass(frozen=True)
class AppConfig:
    data_dir: Path
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    token_ttl_minutes: int = DEFAULT_TOKEN_TTL_MINUTES
    host: str = "127.0.0.1"
    port: int = 8080

    def __post_init__(self) -> None:
        if not self.jwt_secret:
            raise ConfigError("JWT_SECRET is not set")
        if self.token_ttl_minutes <= 0:
            raise ConfigError("TOKEN_TTL_MINUTES must be greater than zero")


def load_config(env_file: str | Path | None = None) -> AppConfig:
    """Build the process configuration once from the environment (and an optional .env file)."""
    load_dotenv(env_file)

    try:
        token_ttl = int(os.getenv("TOKEN_TTL_MINUTES", DEFAULT_TOKEN_TTL_MINUTES))
        port = int(os.getenv("PORT", 8080))
    except ValueError as error:
        raise ConfigError(f"Invalid numeric setting: {error}") from error

    return AppConfig(
        data_dir=Path(os.getenv("ROOM_BOOKING_DATA_DIR", "data")),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        token_ttl_minutes=token_ttl,
        host=os.getenv("HOST", "127.0.0.1"),
        port=port,
    )
