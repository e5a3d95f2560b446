"""config.py — Settings from the environment.

Every knob has a default so the gateway starts with no configuration at
all. CLI flags (see __main__) override whatever the environment says.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Mapping


DEFAULT_PORT = 3000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_WEBHOOK_URL = "https://sasinodev.cloud/demo/mod/api/whatsapp_ai_webhook.php"
DEFAULT_BASE_PATH = "/wa-api"
DEFAULT_BRIDGE_URL = "ws://127.0.0.1:3100/bridge"

# Gap between logout and re-initialize during recovery, so the old and new
# browser don't both claim the session storage directory.
DEFAULT_RECOVERY_DELAY = 1.0
DEFAULT_WEBHOOK_TIMEOUT = 30.0


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None


@dataclass(frozen=True)
class Settings:
    """Runtime settings for one gateway process."""

    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    webhook_url: str = DEFAULT_WEBHOOK_URL
    base_path: str = DEFAULT_BASE_PATH
    bridge_url: str = DEFAULT_BRIDGE_URL
    recovery_delay: float = DEFAULT_RECOVERY_DELAY
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT
    debug: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Args:
            env: Mapping to read from. Defaults to os.environ.

        Raises:
            ValueError: if a numeric variable doesn't parse.
        """
        env = os.environ if env is None else env
        return cls(
            port=_number(env, "PORT", DEFAULT_PORT, cast=int),
            host=env.get("HOST") or DEFAULT_HOST,
            webhook_url=env.get("WEBHOOK_URL") or DEFAULT_WEBHOOK_URL,
            base_path=_normalize_base_path(env.get("BASE_PATH", DEFAULT_BASE_PATH)),
            bridge_url=env.get("BRIDGE_URL") or DEFAULT_BRIDGE_URL,
            recovery_delay=_number(env, "RECOVERY_DELAY", DEFAULT_RECOVERY_DELAY),
            webhook_timeout=_number(env, "WEBHOOK_TIMEOUT", DEFAULT_WEBHOOK_TIMEOUT),
            debug=_truthy(env.get("WA_GATEWAY_DEBUG", "")),
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "base_path" in changes:
            changes["base_path"] = _normalize_base_path(changes["base_path"])
        return replace(self, **changes)


def _normalize_base_path(path: str) -> str:
    """'/wa-api/' -> '/wa-api', 'wa-api' -> '/wa-api', '' or '/' -> ''."""
    path = path.strip().strip("/")
    return f"/{path}" if path else ""
