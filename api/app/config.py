import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[2]
API_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(REPO_ROOT / ".env")

logger = logging.getLogger("mediasort.config")


@dataclass(frozen=True)
class Settings:
    database_url: str
    cors_origins: str
    log_level: str
    queue_poll_interval: float
    queue_max_concurrent: int
    queue_autostart: bool
    task_default_max_attempts: int
    ai_provider: str
    ai_api_key: str
    ai_model: str
    ai_base_url: str
    ai_temperature: float
    ai_max_tokens: int
    ai_timeout: int
    ai_health_timeout: float
    tmdb_api_key: str
    tmdb_base_url: str
    tmdb_timeout: int
    router_timeout: int
    route_min_confidence: int


def get_settings() -> Settings:
    def pick(key: str, default: str) -> str:
        return os.getenv(key, default)

    def pick_int(key: str, default: int, minimum: int | None = None) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid %s=%r, fallback to %s", key, raw, default)
            return default
        if minimum is not None and value < minimum:
            logger.warning("Out-of-range %s=%r, fallback to %s", key, raw, default)
            return default
        return value

    def pick_float(key: str, default: float, minimum: float | None = None) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            value = float(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid %s=%r, fallback to %.2f", key, raw, default)
            return default
        if minimum is not None and value < minimum:
            logger.warning("Out-of-range %s=%r, fallback to %.2f", key, raw, default)
            return default
        return value

    def pick_bool(key: str, default: bool) -> bool:
        return os.getenv(key, str(default)).lower() in ("1", "true", "yes", "on")

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:////data/mediasort.db"),
        cors_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        queue_poll_interval=pick_float("QUEUE_POLL_INTERVAL", 5.0, minimum=0.01),
        queue_max_concurrent=pick_int("QUEUE_MAX_CONCURRENT", 1, minimum=1),
        queue_autostart=pick_bool("QUEUE_AUTOSTART", True),
        task_default_max_attempts=pick_int("TASK_MAX_ATTEMPTS", 5, minimum=1),
        ai_provider=pick("AI_PROVIDER", "ollama"),
        ai_api_key=os.getenv("AI_API_KEY", ""),
        ai_model=pick("AI_MODEL", "qwen3:14b"),
        ai_base_url=pick("AI_BASE_URL", "http://localhost:11434"),
        ai_temperature=pick_float("AI_TEMPERATURE", 0.3),
        ai_max_tokens=pick_int("AI_MAX_TOKENS", 300, minimum=1),
        ai_timeout=pick_int("AI_TIMEOUT", 60, minimum=1),
        ai_health_timeout=pick_float("AI_HEALTH_TIMEOUT", 3.0, minimum=0.1),
        tmdb_api_key=os.getenv("TMDB_API_KEY", ""),
        tmdb_base_url=pick("TMDB_BASE_URL", "https://api.themoviedb.org/3"),
        tmdb_timeout=pick_int("TMDB_TIMEOUT", 15, minimum=1),
        router_timeout=pick_int("ROUTER_TIMEOUT", 30, minimum=1),
        route_min_confidence=pick_int("ROUTE_MIN_CONFIDENCE", 0, minimum=0),
    )
