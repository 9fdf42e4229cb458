from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

import yaml

T = TypeVar("T")


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_path(v: str) -> Path:
    return Path(v).expanduser().resolve()


def _coerce(name: str, raw: Any, cast: Callable[[Any], T], default: T) -> T:
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e


@dataclass(frozen=True)
class AppSettings:
    api_base_url: str
    api_token: Optional[str]
    reviewer: str
    poll_interval_s: float
    queue_per_page: int
    files_per_page: int
    request_timeout_s: float
    storage_root: Path


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) REVIEW_CONFIG_PATH env var
      3) config/app.yaml
    Individual fields can be overridden via env vars:
      - REVIEW_API_URL
      - REVIEW_API_TOKEN
      - REVIEW_REVIEWER
      - REVIEW_POLL_INTERVAL_S
      - REVIEW_QUEUE_PER_PAGE
      - REVIEW_FILES_PER_PAGE
      - REVIEW_REQUEST_TIMEOUT_S
      - REVIEW_STORAGE_ROOT
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("REVIEW_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)

    def pick(key: str, env_key: str) -> Any:
        return _env(env_key) or cfg.get(key)

    api_base_url = pick("api_base_url", "REVIEW_API_URL")

    missing = []
    if not api_base_url:
        missing.append("api_base_url / REVIEW_API_URL")

    if missing:
        raise ValueError(
            "Missing required configuration: " + ", ".join(missing) +
            f". Config file used: {cfg_path}"
        )

    token = pick("api_token", "REVIEW_API_TOKEN")

    return AppSettings(
        api_base_url=str(api_base_url).rstrip("/"),
        api_token=str(token) if token else None,
        reviewer=str(pick("reviewer", "REVIEW_REVIEWER") or "reviewer"),
        poll_interval_s=_coerce("poll_interval_s", pick("poll_interval_s", "REVIEW_POLL_INTERVAL_S"), float, 2.0),
        queue_per_page=_coerce("queue_per_page", pick("queue_per_page", "REVIEW_QUEUE_PER_PAGE"), int, 10),
        files_per_page=_coerce("files_per_page", pick("files_per_page", "REVIEW_FILES_PER_PAGE"), int, 20),
        request_timeout_s=_coerce(
            "request_timeout_s", pick("request_timeout_s", "REVIEW_REQUEST_TIMEOUT_S"), float, 30.0
        ),
        storage_root=_as_path(str(pick("storage_root", "REVIEW_STORAGE_ROOT") or "data/review_store")),
    )
