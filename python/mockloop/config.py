"""Service configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from fractions import Fraction
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from . import ledger
from .execution import DEFAULT_MIN_INTERVAL_SECONDS, DEFAULT_PISTON_URL
from .models import MAX_RECENT_QUESTIONS
from .questions import DEFAULT_POOL_PATH


@dataclass(frozen=True)
class ServiceConfig:
    """Runtime config for the interview service."""

    host: str = "0.0.0.0"
    port: int = 8000
    data_dir: Optional[Path] = None
    question_pool_path: Path = DEFAULT_POOL_PATH
    min_tokens_required: int = ledger.MIN_TOKENS_REQUIRED
    tokens_per_minute: int = ledger.TOKENS_PER_MINUTE
    abandon_after_minutes: int = 60
    recent_question_window: int = MAX_RECENT_QUESTIONS
    piston_url: str = DEFAULT_PISTON_URL
    piston_min_interval_ms: int = int(DEFAULT_MIN_INTERVAL_SECONDS * 1000)
    admin_token: Optional[str] = None
    cors_origins: tuple[str, ...] = ("http://localhost:5173", "http://localhost:3000")

    @property
    def tokens_per_second(self) -> Fraction:
        return Fraction(self.tokens_per_minute, 60)

    @property
    def abandon_after(self) -> timedelta:
        return timedelta(minutes=self.abandon_after_minutes)


def _int_env(name: str, default: int, minimum: int = 0, maximum: Optional[int] = None) -> int:
    raw = (os.environ.get(name, str(default)) or "").strip()
    if not raw:
        raise RuntimeError(f"{name} resolved to empty value.")
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer. Got: {raw}") from exc
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"{minimum}-{maximum}" if maximum is not None else f">= {minimum}"
        raise RuntimeError(f"{name} must be in range {bound}. Got: {value}.")
    return value


def load_service_config() -> ServiceConfig:
    """Load service config from environment with strict validation."""
    load_dotenv()

    host = (os.environ.get("SERVICE_HOST", "0.0.0.0") or "").strip()
    if not host:
        raise RuntimeError("SERVICE_HOST resolved to empty value.")

    data_dir_raw = (os.environ.get("DATA_DIR") or "").strip()
    data_dir = Path(data_dir_raw).expanduser() if data_dir_raw else None

    pool_raw = (os.environ.get("QUESTION_POOL_PATH") or "").strip()
    pool_path = Path(pool_raw).expanduser() if pool_raw else DEFAULT_POOL_PATH
    if not pool_path.is_file():
        raise RuntimeError(f"QUESTION_POOL_PATH does not point to a file: {pool_path}")

    piston_url = (os.environ.get("PISTON_URL", DEFAULT_PISTON_URL) or "").strip()
    if not piston_url.startswith(("http://", "https://")):
        raise RuntimeError(f"PISTON_URL must be an http(s) URL. Got: {piston_url!r}")

    cors_raw = (os.environ.get("CORS_ORIGINS") or "").strip()
    cors_origins = (
        tuple(origin.strip() for origin in cors_raw.split(",") if origin.strip())
        if cors_raw
        else ServiceConfig.cors_origins
    )

    return ServiceConfig(
        host=host,
        port=_int_env("SERVICE_PORT", 8000, minimum=1, maximum=65535),
        data_dir=data_dir,
        question_pool_path=pool_path,
        min_tokens_required=_int_env("MIN_TOKENS_REQUIRED", ledger.MIN_TOKENS_REQUIRED, minimum=1),
        tokens_per_minute=_int_env("TOKENS_PER_MINUTE", ledger.TOKENS_PER_MINUTE, minimum=1),
        abandon_after_minutes=_int_env("ABANDON_AFTER_MINUTES", 60, minimum=1),
        recent_question_window=_int_env(
            "RECENT_QUESTION_WINDOW", MAX_RECENT_QUESTIONS, minimum=0, maximum=MAX_RECENT_QUESTIONS
        ),
        piston_url=piston_url,
        piston_min_interval_ms=_int_env("PISTON_MIN_INTERVAL_MS", 250, minimum=0),
        admin_token=(os.environ.get("ADMIN_TOKEN") or "").strip() or None,
        cors_origins=cors_origins,
    )
