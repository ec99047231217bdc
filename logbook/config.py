"""Runtime configuration resolved from the environment."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

APP_NAME = "DentalLogbook"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Resolved application settings."""

    jwt_secret: str
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    ai_model: str = "gpt-4o-mini"
    ai_transcribe_model: str = "whisper-1"
    transcribe_timeout_secs: float = 30.0
    use_offline_model: bool = False
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=list)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    jwt_secret: Optional[str] = os.getenv("JWT_SECRET")
    if not jwt_secret:
        # Tokens issued with a random secret do not survive a restart.
        jwt_secret = secrets.token_urlsafe(48)
    origins = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "").split(",")
        if origin.strip()
    ]
    return Settings(
        jwt_secret=jwt_secret,
        access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60),
        ai_model=os.getenv("AI_MODEL", "gpt-4o-mini"),
        ai_transcribe_model=os.getenv("AI_TRANSCRIBE_MODEL", "whisper-1"),
        transcribe_timeout_secs=max(1.0, _env_float("TRANSCRIBE_TIMEOUT_SECS", 30.0)),
        use_offline_model=_env_flag("USE_OFFLINE_MODEL"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=origins,
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
