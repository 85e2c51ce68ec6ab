"""Filesystem and identity helpers shared by the CLI and the stores."""

import logging
import os
from pathlib import Path
from typing import Optional

from mallex.types import GUEST_IDENTITY

logger = logging.getLogger(__name__)


def get_mallex_home() -> Path:
    """Directory holding the local database and config files.

    ``MALLEX_HOME`` overrides the default of ``~/.mallex``.
    """
    override = os.environ.get("MALLEX_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mallex"


def resolve_identity(identity: Optional[str]) -> str:
    """Normalise a submitter identity, falling back to the guest sentinel."""
    if identity is None:
        return GUEST_IDENTITY
    identity = identity.strip()
    return identity or GUEST_IDENTITY
