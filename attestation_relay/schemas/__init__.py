# Data shapes flowing through the relay

from .actions import ActionType, Comparison, PredicateRule, action_type_id
from .records import (
    FactFailureKind,
    FactQuery,
    FactResult,
    AttestationRequest,
    EncodedAttestation,
    Receipt,
    OrchestrationState,
    FailureReason,
    Outcome,
    VerificationMode,
    SubmissionRecord,
)

__all__ = [
    "ActionType",
    "Comparison",
    "PredicateRule",
    "action_type_id",
    "FactFailureKind",
    "FactQuery",
    "FactResult",
    "AttestationRequest",
    "EncodedAttestation",
    "Receipt",
    "OrchestrationState",
    "FailureReason",
    "Outcome",
    "VerificationMode",
    "SubmissionRecord",
]
