from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv

DEFAULT_AUTH_DOMAINS: Tuple[str, ...] = (
    "login.microsoftonline.com",
    "login.windows.net",
    "login.live.com",
    "accounts.google.com",
    "okta.com",
    "auth0.com",
)

DEFAULT_ROUTING_PARAM = "mi"
DEFAULT_CONTROL_ATTRIBUTE = "data-dyn-controlname"
DEFAULT_LOCATOR_TIMEOUT_MS = 3000


def _split_csv(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    bundle_root: Path = field(default_factory=lambda: Path("bundles").resolve())
    auth_domains: Tuple[str, ...] = DEFAULT_AUTH_DOMAINS
    routing_param: str = DEFAULT_ROUTING_PARAM
    control_attribute: str = DEFAULT_CONTROL_ATTRIBUTE
    locator_timeout_ms: int = DEFAULT_LOCATOR_TIMEOUT_MS
    allow_origins: Tuple[str, ...] = ("http://localhost:5178",)

    @classmethod
    def from_env(cls) -> "Settings":
        domains = _split_csv(os.getenv("QASTUDIO_AUTH_DOMAINS")) or list(DEFAULT_AUTH_DOMAINS)
        origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "http://localhost:5178").split(",") if o.strip()]
        return cls(
            bundle_root=Path(os.getenv("QASTUDIO_BUNDLE_ROOT", "bundles")).resolve(),
            auth_domains=tuple(domains),
            routing_param=os.getenv("QASTUDIO_ROUTING_PARAM", DEFAULT_ROUTING_PARAM).strip() or DEFAULT_ROUTING_PARAM,
            control_attribute=os.getenv("QASTUDIO_CONTROL_ATTRIBUTE", DEFAULT_CONTROL_ATTRIBUTE).strip()
            or DEFAULT_CONTROL_ATTRIBUTE,
            locator_timeout_ms=max(100, _int_env("QASTUDIO_LOCATOR_TIMEOUT_MS", DEFAULT_LOCATOR_TIMEOUT_MS)),
            allow_origins=tuple(origins),
        )


def load_env_files(repo_root: Path | None = None) -> None:
    """Load environment variables from .env files.

    The working directory is checked first, then the repository root, so that
    uvicorn and the CLI behave the same regardless of where they are launched.
    """
    load_dotenv()
    root = repo_root or Path(__file__).resolve().parents[2]
    root_env = root / ".env"
    if root_env.exists():
        load_dotenv(dotenv_path=root_env, override=False)
