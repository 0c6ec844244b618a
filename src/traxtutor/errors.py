"""Terminal failure conditions for a tutoring turn.

Each error carries a stable ``code`` so callers (an HTTP layer, the console app)
can map it to a response without string matching. A malformed model response is
deliberately absent from this taxonomy: the response normalizer absorbs it.
"""

from __future__ import annotations


class TurnError(Exception):
    """Base class for failures that abort a turn without persisting it."""

    code = "turn_failed"


class Unauthorized(TurnError):
    code = "unauthorized"


class InvalidInput(TurnError):
    code = "invalid_input"


class ProviderUnavailable(TurnError):
    code = "provider_unavailable"


class StorageUnavailable(TurnError):
    code = "storage_unavailable"


class SessionNotFound(TurnError):
    """Raised by owner-scoped session reads when the id is unknown or foreign."""

    code = "session_not_found"
