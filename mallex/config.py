"""Runtime configuration for Mallex.

Settings are layered, later sources overriding earlier ones:

1. ``~/.mallex/config.json``
2. ``~/.mallex/credentials.json``
3. Environment variables (``MALLEX_*``)

Unreadable or malformed files are skipped with a debug log entry.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from mallex.core.validation import validate_backend_url
from mallex.protocols import ModeratorCheck
from mallex.storage.retry import DEFAULT_BACKOFF_BASE, DEFAULT_MAX_RETRIES, RetryPolicy
from mallex.utils import get_mallex_home

logger = logging.getLogger(__name__)


@dataclass
class MallexConfig:
    backend_url: Optional[str] = None
    auth_token: Optional[str] = None
    identity: Optional[str] = None
    moderators: Tuple[str, ...] = field(default_factory=tuple)
    db_path: Optional[Path] = None
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    request_timeout: float = 10.0
    poll_interval: float = 5.0

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, backoff_base=self.backoff_base)


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError, ValueError) as e:
        logger.debug(f"Failed to load {path.name}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.debug(f"Ignoring {path.name}: expected a JSON object")
        return {}
    return data


def _parse_moderators(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(m.strip() for m in value if isinstance(m, str) and m.strip())


def _apply(config: MallexConfig, data: Dict[str, Any]) -> None:
    if data.get("backend_url"):
        config.backend_url = data["backend_url"]
    # Support multiple auth token field names
    token = data.get("auth_token") or data.get("token") or data.get("api_key")
    if token:
        config.auth_token = token
    if data.get("identity"):
        config.identity = data["identity"]
    if "moderators" in data:
        config.moderators = _parse_moderators(data["moderators"])
    if data.get("db_path"):
        config.db_path = Path(data["db_path"]).expanduser()
    for key, cast in (
        ("max_retries", int),
        ("backoff_base", float),
        ("request_timeout", float),
        ("poll_interval", float),
    ):
        if key in data:
            try:
                setattr(config, key, cast(data[key]))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid {key}: {data[key]!r}")


def load_config(home: Optional[Path] = None) -> MallexConfig:
    """Build the effective configuration from files and environment."""
    home = home or get_mallex_home()
    config = MallexConfig()

    _apply(config, _read_json(home / "config.json"))
    _apply(config, _read_json(home / "credentials.json"))

    env = {
        "backend_url": os.environ.get("MALLEX_BACKEND_URL"),
        "auth_token": os.environ.get("MALLEX_AUTH_TOKEN"),
        "identity": os.environ.get("MALLEX_IDENTITY"),
        "db_path": os.environ.get("MALLEX_DB_PATH"),
    }
    if os.environ.get("MALLEX_MODERATORS") is not None:
        env["moderators"] = os.environ["MALLEX_MODERATORS"]
    if os.environ.get("MALLEX_MAX_RETRIES"):
        env["max_retries"] = os.environ["MALLEX_MAX_RETRIES"]
    _apply(config, {k: v for k, v in env.items() if v is not None})

    if config.max_retries < 0:
        logger.warning(f"Ignoring negative max_retries ({config.max_retries})")
        config.max_retries = DEFAULT_MAX_RETRIES

    # Validate backend URL security
    if config.backend_url:
        config.backend_url = validate_backend_url(config.backend_url)

    return config


def moderator_check(config: MallexConfig) -> ModeratorCheck:
    """Return an ``is_moderator`` callable over the configured moderator ids."""
    moderators = frozenset(config.moderators)

    def is_moderator(identity: Optional[str]) -> bool:
        return identity is not None and identity in moderators

    return is_moderator
