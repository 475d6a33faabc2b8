"""
Orchestration Records

The in-memory data that flows through one orchestration:

    FactQuery -> FactResult -> AttestationRequest -> EncodedAttestation
                                                   -> SubmissionRecord

Only the SubmissionRecord leaves the orchestrator. Everything else is
ephemeral and scoped to a single attempt.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from urllib.parse import quote_plus, urlencode
from uuid import UUID, uuid4

from ..observability import redact_url
from .actions import ActionType, FactValue


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# ENUMERATIONS
# ============================================================

class FactFailureKind(str, Enum):
    """Why a fact fetch did not produce a value."""
    NETWORK = "network"             # Connection refused, DNS, TLS...
    TIMEOUT = "timeout"             # No answer within the configured timeout
    HTTP_STATUS = "http_status"     # Non-2xx response
    BAD_SHAPE = "bad_shape"         # Body is not the expected JSON shape
    MISSING_FIELD = "missing_field" # Extraction path did not resolve to a scalar


class OrchestrationState(str, Enum):
    """
    Orchestration states.
    Terminal states: CONDITION_NOT_MET, DONE, FAILED.
    """
    IDLE = "Idle"
    FETCHING_FACT = "FetchingFact"
    EVALUATING_PREDICATE = "EvaluatingPredicate"
    CONDITION_NOT_MET = "ConditionNotMet"
    PREPARING_ATTESTATION = "PreparingAttestation"
    SUBMITTING_TO_HUB = "SubmittingToHub"
    RECORDING_ACTION = "RecordingAction"
    DONE = "Done"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OrchestrationState.CONDITION_NOT_MET,
            OrchestrationState.DONE,
            OrchestrationState.FAILED,
        )


class FailureReason(str, Enum):
    """Reason tag carried by a Failed state."""
    CONFIGURATION_ERROR = "ConfigurationError"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    VERIFIER_REJECTED = "VerifierRejected"
    VERIFIER_UNREACHABLE = "VerifierUnreachable"
    HUB_SUBMISSION_FAILED = "HubSubmissionFailed"
    RECORDING_FAILED = "RecordingFailed"
    INTERNAL_ERROR = "InternalError"


class Outcome(str, Enum):
    """Outcome tag reported to the caller."""
    SUCCEEDED = "succeeded"
    CONDITION_NOT_MET = "condition-not-met"
    SOURCE_FAILED = "source-failed"
    VERIFIER_FAILED = "verifier-failed"
    CHAIN_FAILED = "chain-failed"
    CONFIGURATION_FAILED = "configuration-failed"


class VerificationMode(str, Enum):
    """How a recorded outcome was backed."""
    FDC = "verified-via-fdc"                 # Hub accepted the attestation request
    UNVERIFIED_DIRECT = "unverified-direct"  # Recorded by the trusted relayer only


_OUTCOME_BY_REASON = {
    FailureReason.CONFIGURATION_ERROR: Outcome.CONFIGURATION_FAILED,
    FailureReason.INTERNAL_ERROR: Outcome.CONFIGURATION_FAILED,
    FailureReason.SOURCE_UNAVAILABLE: Outcome.SOURCE_FAILED,
    FailureReason.VERIFIER_REJECTED: Outcome.VERIFIER_FAILED,
    FailureReason.VERIFIER_UNREACHABLE: Outcome.VERIFIER_FAILED,
    FailureReason.HUB_SUBMISSION_FAILED: Outcome.CHAIN_FAILED,
    FailureReason.RECORDING_FAILED: Outcome.CHAIN_FAILED,
}


# ============================================================
# FACTS
# ============================================================

@dataclass(frozen=True)
class FactQuery:
    """
    What to fetch for one action type.

    secret_params names the query parameters that carry credentials;
    they are sent on the wire but masked in safe_url.
    """
    action_type: ActionType
    source_id: str
    url: str
    unit: str
    extraction_path: tuple[str, ...]
    method: str = "GET"
    params: tuple[tuple[str, str], ...] = ()
    response_format: str = "json"
    secret_params: frozenset[str] = frozenset()

    @property
    def full_url(self) -> str:
        """The URL with query parameters, credentials included."""
        if not self.params:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode(self.params)}"

    @property
    def secrets(self) -> tuple[str, ...]:
        """Credential values carried in the query, raw and as sent on the wire."""
        values = []
        for name, value in self.params:
            if name in self.secret_params and value:
                values.append(value)
                if quote_plus(value) != value:
                    values.append(quote_plus(value))
        return tuple(values)

    @property
    def safe_url(self) -> str:
        """The URL with credential parameters masked. Safe to log."""
        return redact_url(self.full_url, self.secrets)

    @property
    def jq_filter(self) -> str:
        return "." + ".".join(self.extraction_path)

    def to_request_body(self) -> dict:
        """The verifier requestBody for this query."""
        return {
            "url": self.full_url,
            "method": self.method,
            "responseFormat": self.response_format,
            "jqFilter": self.jq_filter,
        }


@dataclass
class FactResult:
    """
    Outcome of executing a FactQuery.

    detail is internal diagnostic text for logs; it is never returned
    to callers.
    """
    source_id: str
    success: bool
    value: Optional[FactValue] = None
    reason: Optional[FactFailureKind] = None
    detail: Optional[str] = None
    fetched_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def ok(cls, source_id: str, value: FactValue) -> "FactResult":
        return cls(source_id=source_id, success=True, value=value)

    @classmethod
    def failed(
        cls,
        source_id: str,
        reason: FactFailureKind,
        detail: Optional[str] = None,
    ) -> "FactResult":
        return cls(source_id=source_id, success=False, reason=reason, detail=detail)


# ============================================================
# ATTESTATION
# ============================================================

@dataclass(frozen=True)
class AttestationRequest:
    """
    A verifier-ready request.

    Built fresh for every preparation attempt; request_id is never reused.
    """
    attestation_type: str
    source_id: str
    query: FactQuery
    request_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class EncodedAttestation:
    """
    Opaque bytes returned by the verifier for one AttestationRequest.

    The relay never interprets the payload; only the hub contract
    validates it. Submission is allowed at most once.
    """
    request_id: UUID
    status: str
    payload: bytes
    submitted: bool = False

    def mark_submitted(self) -> None:
        """
        Claim the single submission slot for this payload.

        Raises:
            RuntimeError: If the payload has already been submitted
        """
        if self.submitted:
            raise RuntimeError(
                f"Encoded attestation for request {self.request_id} was already submitted"
            )
        self.submitted = True

    @property
    def payload_hex(self) -> str:
        return "0x" + self.payload.hex()


@dataclass(frozen=True)
class Receipt:
    """Mined transaction receipt."""
    tx_hash: str
    succeeded: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


# ============================================================
# SUBMISSION RECORD
# ============================================================

@dataclass
class SubmissionRecord:
    """
    Per-attempt record. The unit the caller ultimately receives.

    Drives the orchestrator state machine for the lifetime of one request.
    """
    user_address: str
    action_type: ActionType
    record_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utcnow)
    state: OrchestrationState = OrchestrationState.IDLE
    failure_reason: Optional[FailureReason] = None
    value: Optional[FactValue] = None
    source_id: Optional[str] = None
    hub_tx_hash: Optional[str] = None
    failed_hub_tx_hash: Optional[str] = None
    record_tx_hash: Optional[str] = None
    fee_wei: Optional[int] = None
    verification: Optional[VerificationMode] = None
    attestation_request_hex: Optional[str] = None
    voting_round_id: Optional[int] = None
    attestation_request_ids: list[UUID] = field(default_factory=list)
    history: list[tuple[OrchestrationState, datetime]] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.history:
            self.history.append((self.state, self.created_at))

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_address.lower(), self.action_type.value)

    @property
    def outcome(self) -> Optional[Outcome]:
        if self.state == OrchestrationState.DONE:
            return Outcome.SUCCEEDED
        if self.state == OrchestrationState.CONDITION_NOT_MET:
            return Outcome.CONDITION_NOT_MET
        if self.state == OrchestrationState.FAILED and self.failure_reason:
            return _OUTCOME_BY_REASON[self.failure_reason]
        return None

    @property
    def timestamp(self) -> int:
        """Unix timestamp recorded on-chain for this attempt."""
        return int(self.created_at.timestamp())

    def transition(self, state: OrchestrationState) -> None:
        """
        Move to a new state.

        Raises:
            RuntimeError: If the record is already terminal
        """
        if self.state.is_terminal:
            raise RuntimeError(
                f"Record {self.record_id} is terminal ({self.state.value}); "
                f"cannot move to {state.value}"
            )
        now = _utcnow()
        self.state = state
        self.history.append((state, now))
        if state.is_terminal:
            self.completed_at = now

    def fail(self, reason: FailureReason) -> None:
        self.failure_reason = reason
        self.transition(OrchestrationState.FAILED)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/serialization."""
        return {
            "record_id": str(self.record_id),
            "user_address": self.user_address,
            "action_type": self.action_type.value,
            "action_type_id": self.action_type.b32_hex,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "value": self.value,
            "source_id": self.source_id,
            "hub_tx_hash": self.hub_tx_hash,
            "failed_hub_tx_hash": self.failed_hub_tx_hash,
            "record_tx_hash": self.record_tx_hash,
            "fee_wei": str(self.fee_wei) if self.fee_wei is not None else None,
            "verification": self.verification.value if self.verification else None,
            "attestation_request_ids": [str(rid) for rid in self.attestation_request_ids],
            "attestation_request_hex": self.attestation_request_hex,
            "voting_round_id": self.voting_round_id,
            "history": [
                {"state": state.value, "at": at.isoformat()} for state, at in self.history
            ],
        }
