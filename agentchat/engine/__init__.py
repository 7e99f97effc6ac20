"""Agent orchestration engine: registry, subprocess adapters, permissions,
output queueing and crash recovery."""
from .models import (
    AgentKind,
    AgentRecord,
    AgentStatus,
    ConversationState,
    ConversationStep,
    ExitDecision,
    OutputChunk,
    PendingPermission,
    PermissionResult,
    QueuedOutputMessage,
    RecoveryResult,
)
from .config import ServiceConfig
from .errors import (
    AgentChatError,
    AgentNotFoundError,
    AgentProcessError,
    AgentSpawnError,
    DuplicateAgentError,
    IdGenerationError,
    PermissionIdExhaustedError,
    ProvisioningError,
    TransportError,
)

__all__ = [
    # Models
    "AgentKind",
    "AgentRecord",
    "AgentStatus",
    "ConversationState",
    "ConversationStep",
    "ExitDecision",
    "OutputChunk",
    "PendingPermission",
    "PermissionResult",
    "QueuedOutputMessage",
    "RecoveryResult",
    "ServiceConfig",
    # Components (lazy import)
    "AgentRegistry",
    "PermissionEngine",
    "OutputQueue",
    "RecoveryManager",
    "ManagerConversation",
    "load_config",
    # Errors
    "AgentChatError",
    "AgentNotFoundError",
    "AgentProcessError",
    "AgentSpawnError",
    "DuplicateAgentError",
    "IdGenerationError",
    "PermissionIdExhaustedError",
    "ProvisioningError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "AgentRegistry":
        from .registry import AgentRegistry
        return AgentRegistry
    if name == "PermissionEngine":
        from .permissions import PermissionEngine
        return PermissionEngine
    if name == "OutputQueue":
        from .output_queue import OutputQueue
        return OutputQueue
    if name == "RecoveryManager":
        from .recovery import RecoveryManager
        return RecoveryManager
    if name == "ManagerConversation":
        from .conversation import ManagerConversation
        return ManagerConversation
    if name == "load_config":
        from .yaml_config import load_config
        return load_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
