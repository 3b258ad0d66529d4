import os
from dataclasses import dataclass, field

from .rate_limit import RateLimitConfig


def _get(name: str, default: str) -> str:
    return os.getenv(name, default)


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _get_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env(getter, name: str, default):
    return field(default_factory=lambda: getter(name, default))


def _gemini_keys() -> list[str]:
    keys = _get_list("GEMINI_API_KEYS")
    single = _get("GEMINI_API_KEY", "").strip()
    if single and single not in keys:
        keys.insert(0, single)
    return keys


@dataclass
class Settings:
    port: int = _env(_get_int, "PORT", 3000)
    service_name: str = _env(_get, "SERVICE_NAME", "notes-api")
    version: str = _env(_get, "VERSION", "0.1.0")
    git_sha: str = _env(_get, "GIT_SHA", "dev")
    log_level: str = _env(_get, "LOG_LEVEL", "INFO")
    max_message_chars: int = _env(_get_int, "MAX_MESSAGE_CHARS", 4000)
    max_notes_chars: int = _env(_get_int, "MAX_NOTES_CHARS", 100000)
    max_body_bytes: int = _env(_get_int, "MAX_BODY_BYTES", 200000)
    rate_limit_per_minute: int = _env(_get_int, "RATE_LIMIT_PER_MINUTE", 5)
    rate_limit_per_day: int = _env(_get_int, "RATE_LIMIT_PER_DAY", 20)
    rate_limit_sweep_seconds: float = _env(_get_float, "RATE_LIMIT_SWEEP_SECONDS", 60.0)
    model_backend: str = _env(_get, "MODEL_BACKEND", "mock")
    gemini_model: str = _env(_get, "GEMINI_MODEL", "gemini-2.0-flash")
    gemini_api_keys: list[str] = field(default_factory=_gemini_keys)

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            requests_per_minute=self.rate_limit_per_minute,
            requests_per_day=self.rate_limit_per_day,
            sweep_interval_s=self.rate_limit_sweep_seconds,
        )


def get_settings() -> Settings:
    return Settings()
