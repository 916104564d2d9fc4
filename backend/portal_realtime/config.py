from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUTHY = {"1", "true", "yes"}


def load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            load_local_env_file(candidate)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _env_float(name: str, default: float, minimum: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class PortalSettings:
    db_path: str
    poll_interval_seconds: float = 5.0
    feed_connect_timeout_seconds: float = 10.0
    realtime_disabled: bool = False
    storage_url: str | None = None
    storage_bucket: str = "chat-attachments"
    storage_key: str | None = None
    allowed_origins: tuple[str, ...] = ("http://localhost:5173",)
    allow_anon: bool = False

    @classmethod
    def from_env(cls) -> "PortalSettings":
        default_db = str(Path(__file__).resolve().parents[1] / "medilink.sqlite")
        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
        return cls(
            db_path=os.getenv("PORTAL_DB_PATH", default_db),
            poll_interval_seconds=_env_float("PORTAL_POLL_INTERVAL_SECONDS", 5.0, 0.05),
            feed_connect_timeout_seconds=_env_float("PORTAL_FEED_CONNECT_TIMEOUT_SECONDS", 10.0, 0.1),
            realtime_disabled=_env_flag("PORTAL_REALTIME_DISABLED"),
            storage_url=(os.getenv("PORTAL_STORAGE_URL") or "").strip() or None,
            storage_bucket=(os.getenv("PORTAL_STORAGE_BUCKET") or "chat-attachments").strip(),
            storage_key=(os.getenv("PORTAL_STORAGE_KEY") or "").strip() or None,
            allowed_origins=tuple(origin.strip() for origin in origins if origin.strip()),
            allow_anon=_env_flag("ALLOW_ANON"),
        )
