"""Exception hierarchy for the turn engine.

Every error carries a stable ``code`` string that the HTTP layers
send back to callers as ``{"ok": false, "error": code}``.
"""
from __future__ import annotations


class DeckError(Exception):
    """Base exception for all turn engine errors."""

    code = "internal_error"
    http_status = 500


class ChatBusyError(DeckError):
    """A turn is already running for this conversation."""

    code = "chat_busy"
    http_status = 409

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Conversation {key} already has a running turn")


class NotFoundError(DeckError):
    """Unknown conversation, chat, message or approval id."""

    code = "not_found"
    http_status = 404

    def __init__(self, what: str, ident: str):
        self.what = what
        self.ident = ident
        super().__init__(f"{what} not found: {ident}")


class NotRunningError(DeckError):
    """Abort requested for a conversation with no turn in flight."""

    code = "not_running"
    http_status = 409

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Conversation {key} has no running turn")


class TurnAbortedError(DeckError):
    """The turn was cancelled cooperatively."""

    code = "aborted"
    http_status = 409

    def __init__(self, key: str = ""):
        self.key = key
        super().__init__("aborted")


class AgentError(DeckError):
    """Agent subprocess or protocol failure.

    The message is taken from the subprocess's stderr tail or the
    protocol's explicit error field.
    """

    code = "agent_error"
    http_status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class GatewayUnavailableError(DeckError):
    """The gateway daemon could not be reached or started."""

    code = "gateway_unavailable"
    http_status = 503

    def __init__(self, base_url: str, reason: str = ""):
        self.base_url = base_url
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Gateway at {base_url} unavailable{detail}")


class GatewayRequestError(DeckError):
    """The gateway answered with a non-success HTTP status."""

    def __init__(self, status: int, error: str):
        self.http_status = status
        self.code = error
        super().__init__(f"Gateway request failed ({status}): {error}")
