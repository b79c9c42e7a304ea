from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    # Step size of the score update, 0 < α <= 1.
    learning_rate: float = 0.1

    # Alternatives returned with a conflict, and slots returned by the suggestion endpoint.
    conflict_suggestions: int = 3
    suggestion_top_n: int = 5

    # Upper bound on any single booking-store call.
    persistence_timeout_seconds: float = 5.0

    # Reward status changes at load 0 instead of the load captured at booking time.
    legacy_status_load: bool = False

    # Score table snapshot; None keeps scores in memory only (reset on restart).
    score_snapshot_path: str | None = None
    # Drop learned states for dates older than this many days at startup; None keeps everything.
    score_retention_days: int | None = None

    # Seed for the in-memory doctor directory.
    doctor_ids: tuple[str, ...] = ()

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000


def _parse_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _parse_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}") from e


def _parse_doctor_ids(raw: str) -> tuple[str, ...]:
    # DOCTOR_IDS is a comma-separated list; duplicates and blanks are dropped.
    seen: set[str] = set()
    result: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part and part not in seen:
            seen.add(part)
            result.append(part)
    return tuple(result)


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    learning_rate = _parse_number("LEARNING_RATE", 0.1, float)
    if not 0 < learning_rate <= 1:
        raise RuntimeError(f"Invalid LEARNING_RATE value: {learning_rate!r}. Expected 0 < rate <= 1.")

    conflict_suggestions = _parse_number("CONFLICT_SUGGESTIONS", 3, int)
    suggestion_top_n = _parse_number("SUGGESTION_TOP_N", 5, int)
    if conflict_suggestions < 0 or suggestion_top_n < 0:
        raise RuntimeError("CONFLICT_SUGGESTIONS and SUGGESTION_TOP_N must not be negative")

    timeout = _parse_number("PERSISTENCE_TIMEOUT_SECONDS", 5.0, float)
    if timeout <= 0:
        raise RuntimeError(f"Invalid PERSISTENCE_TIMEOUT_SECONDS value: {timeout!r}")

    retention_days = _parse_number("SCORE_RETENTION_DAYS", None, int)
    if retention_days is not None and retention_days < 0:
        raise RuntimeError(f"Invalid SCORE_RETENTION_DAYS value: {retention_days!r}")

    return Settings(
        learning_rate=learning_rate,
        conflict_suggestions=conflict_suggestions,
        suggestion_top_n=suggestion_top_n,
        persistence_timeout_seconds=timeout,
        legacy_status_load=_parse_bool("LEGACY_STATUS_LOAD", False),
        score_snapshot_path=os.getenv("SCORE_SNAPSHOT_PATH") or None,
        score_retention_days=retention_days,
        doctor_ids=_parse_doctor_ids(os.getenv("DOCTOR_IDS", "")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        host=os.getenv("HOST", "0.0.0.0"),
        port=_parse_number("PORT", 8000, int),
    )
