"""Turn engine: providers, turn runners and turn services."""
from .config import EngineConfig
from .errors import (
    AgentError,
    ChatBusyError,
    DeckError,
    GatewayRequestError,
    GatewayUnavailableError,
    NotFoundError,
    NotRunningError,
    TurnAbortedError,
)
from .models import (
    ApprovalDecision,
    ApprovalPolicy,
    ApprovalRequest,
    ConversationKey,
    InstanceBinding,
    ReasoningEffort,
    Sandbox,
    SessionBinding,
    StreamStatus,
    TurnConfig,
    TurnResult,
)

__all__ = [
    "EngineConfig",
    # Errors
    "AgentError",
    "ChatBusyError",
    "DeckError",
    "GatewayRequestError",
    "GatewayUnavailableError",
    "NotFoundError",
    "NotRunningError",
    "TurnAbortedError",
    # Models
    "ApprovalDecision",
    "ApprovalPolicy",
    "ApprovalRequest",
    "ConversationKey",
    "InstanceBinding",
    "ReasoningEffort",
    "Sandbox",
    "SessionBinding",
    "StreamStatus",
    "TurnConfig",
    "TurnResult",
]
