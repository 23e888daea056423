"""
Identity and content id helpers.
"""

from typing import Any, Optional

from shared.errors import AuthenticationError
from shared.logging import get_logger


logger = get_logger("sync.ids")

# Shortest stored id accepted by the legacy prefix match.
LEGACY_MIN_PREFIX = 8


def normalize_content_id(value: Any) -> str:
    """Canonical form of a content id (ids may arrive as ints or padded strings)."""
    if value is None:
        return ""
    return str(value).strip()


def require_identity(identity_id: Optional[str]) -> str:
    """Return the identity or fail fast when there is none."""
    identity = normalize_content_id(identity_id)
    if not identity:
        raise AuthenticationError()
    return identity


def is_legacy_id_match(stored_id: Any, requested_id: Any) -> bool:
    """True when ``stored_id`` is a truncated prefix of ``requested_id``.

    Older clients persisted shortened ids. Exact matches are not legacy
    matches and must be compared with ``==`` by the caller.
    """
    stored = normalize_content_id(stored_id)
    requested = normalize_content_id(requested_id)

    if len(stored) < LEGACY_MIN_PREFIX or len(stored) >= len(requested):
        return False
    if not requested.startswith(stored):
        return False

    logger.warning("Legacy content id prefix match", stored_id=stored, requested_id=requested)
    return True
