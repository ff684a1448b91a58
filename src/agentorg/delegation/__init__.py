"""
Hierarchical Delegation: authorization, attenuation and the task lifecycle.

Core Components:
- models: AgentDefinition, DelegatedTask and the runtime result records
- attenuation: capability intersection for delegated tasks
- validator: authorization, depth and cycle checks
- engine: task creation, completion/failure transitions and audit queries
"""

from .models import (
    USER_PRINCIPAL,
    ActionRecord,
    AgentDefinition,
    AgentRole,
    ChatResult,
    ConversationRecord,
    ConversationRole,
    DelegatedTask,
    DelegationContext,
    DelegationRecord,
    DelegationRequest,
    DelegationResult,
    TaskStatus,
)
from .attenuation import attenuate
from .validator import RejectionCode, ValidationResult, validate_delegation
from .engine import DelegationEngine

__all__ = [
    # Models
    "USER_PRINCIPAL",
    "ActionRecord",
    "AgentDefinition",
    "AgentRole",
    "ChatResult",
    "ConversationRecord",
    "ConversationRole",
    "DelegatedTask",
    "DelegationContext",
    "DelegationRecord",
    "DelegationRequest",
    "DelegationResult",
    "TaskStatus",
    # Attenuation
    "attenuate",
    # Validator
    "RejectionCode",
    "ValidationResult",
    "validate_delegation",
    # Engine
    "DelegationEngine",
]
