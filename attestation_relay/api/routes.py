"""
Gateway Routes

- POST /request-attestation                               - Run one orchestration
- GET  /action-types                                      - Supported action catalogue
- GET  /attestations?userAddress=                         - A user's recent attempts
- GET  /attestations/{record_id}                          - One attempt
- GET  /attestations/{record_id}/proof                    - Finalised proof from the DA layer
- GET  /users/{address}/actions/{action_type}/verified    - Ask the ledger contract

The gateway only translates. Every decision about the request is made
by the orchestrator; this module maps its terminal record onto a
status code and a payload.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from web3 import Web3

from ..core.errors import (
    ChainSubmissionError,
    ProofRejectedError,
    ProofUnavailableError,
    RequestInFlightError,
    UnsupportedActionError,
)
from ..core.orchestrator import AttestationOrchestrator
from ..core.proofs import ProofClient
from ..db.store import RecordStore
from ..observability import get_logger, user_address_var
from ..schemas.actions import ActionType
from ..schemas.api import (
    AttestationRequestBody,
    AttestationSucceeded,
    ConditionNotMetResponse,
    ErrorResponse,
    ProofResponse,
    VerifiedResponse,
)
from ..schemas.records import FailureReason, OrchestrationState, SubmissionRecord

logger = get_logger(__name__)

router = APIRouter()


# ============================================================
# Status mapping
# ============================================================

STATUS_BY_REASON = {
    FailureReason.CONFIGURATION_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    FailureReason.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    FailureReason.SOURCE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureReason.VERIFIER_REJECTED: status.HTTP_502_BAD_GATEWAY,
    FailureReason.VERIFIER_UNREACHABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureReason.HUB_SUBMISSION_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureReason.RECORDING_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}

MESSAGE_BY_REASON = {
    FailureReason.CONFIGURATION_ERROR: "The relay is not configured for this request",
    FailureReason.INTERNAL_ERROR: "Internal error while processing the request",
    FailureReason.SOURCE_UNAVAILABLE: "The external data source is unavailable",
    FailureReason.VERIFIER_REJECTED: "The verifier rejected the attestation request",
    FailureReason.VERIFIER_UNREACHABLE: "The verifier service is unreachable",
    FailureReason.HUB_SUBMISSION_FAILED: "Submitting the attestation request on-chain failed",
    FailureReason.RECORDING_FAILED: "Recording the action on-chain failed",
}


def render_record(record: SubmissionRecord) -> JSONResponse:
    """Map a terminal SubmissionRecord onto the gateway's response."""
    if record.state == OrchestrationState.DONE:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=AttestationSucceeded.from_record(record).to_wire(),
        )

    if record.state == OrchestrationState.CONDITION_NOT_MET:
        body = ConditionNotMetResponse(
            message="Verification did not meet the action's criteria",
            outcome=record.outcome.value,
            value=record.value,
            record_id=str(record.record_id),
        )
        return JSONResponse(status_code=422, content=body.to_wire())

    reason = record.failure_reason or FailureReason.INTERNAL_ERROR
    body = ErrorResponse(
        error=MESSAGE_BY_REASON[reason],
        reason=reason.value,
        record_id=str(record.record_id),
    )
    return JSONResponse(status_code=STATUS_BY_REASON[reason], content=body.to_wire())


def _error(status_code: int, message: str, reason: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, reason=reason).to_wire(),
    )


# ============================================================
# Dependency Injection
# ============================================================

def get_orchestrator(request: Request) -> AttestationOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> RecordStore:
    return request.app.state.record_store


def get_proof_client(request: Request) -> Optional[ProofClient]:
    return getattr(request.app.state, "proof_client", None)


# ============================================================
# Endpoints
# ============================================================

@router.post("/request-attestation", tags=["Attestation"])
async def request_attestation(
    body: AttestationRequestBody,
    orchestrator: AttestationOrchestrator = Depends(get_orchestrator),
):
    """
    Verify a user's action and relay the attestation on-chain.

    Responds once the orchestration is terminal:
    - 200: recorded (hub tx hash present unless recorded directly)
    - 422: fact fetched but the action's condition is not met
    - 400: unsupported action type or malformed body
    - 409: the same user/action is already being processed
    - 500/502/503: technical failure, tagged with its reason
    """
    user_address_var.set(body.user_address)
    try:
        record = await orchestrator.run(body.user_address, body.action_type)
    except UnsupportedActionError:
        return _error(status.HTTP_400_BAD_REQUEST, f"Unsupported actionType: {body.action_type}")
    except RequestInFlightError:
        return _error(
            status.HTTP_409_CONFLICT,
            "A request for this user and action is already in flight",
            reason="RequestInFlight",
        )
    return render_record(record)


@router.get("/action-types", tags=["Attestation"])
async def list_action_types(orchestrator: AttestationOrchestrator = Depends(get_orchestrator)):
    """Supported action types with their on-chain ids and rules."""
    return {"actionTypes": [d.to_dict() for d in orchestrator.registry.definitions()]}


@router.get("/attestations", tags=["History"])
async def list_attestations(
    user_address: str = Query(..., alias="userAddress"),
    limit: int = Query(50, ge=1, le=500),
    store: RecordStore = Depends(get_store),
):
    """A user's recent attempts, newest first."""
    records = store.list_for_user(user_address, limit=limit)
    return {
        "userAddress": user_address,
        "count": len(records),
        "records": [r.to_dict() for r in records],
    }


@router.get("/attestations/{record_id}", tags=["History"])
async def get_attestation(record_id: UUID, store: RecordStore = Depends(get_store)):
    """One attempt by record id."""
    record = store.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return record.to_dict()


@router.get("/attestations/{record_id}/proof", tags=["History"])
async def get_attestation_proof(
    record_id: UUID,
    store: RecordStore = Depends(get_store),
    proofs: Optional[ProofClient] = Depends(get_proof_client),
):
    """
    The finalised Merkle proof for an attempt's hub request.

    - 404: unknown record
    - 409: no voting round was captured for this attempt
    - 503: proof not finalised yet; ask again later
    """
    record = store.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    if record.voting_round_id is None or record.attestation_request_hex is None:
        return _error(
            status.HTTP_409_CONFLICT,
            "No voting round was captured for this attempt",
            reason="NoVotingRound",
        )
    if proofs is None:
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "The relay is not configured for proof lookups",
            reason=FailureReason.CONFIGURATION_ERROR.value,
        )

    try:
        proof = await proofs.fetch_proof(record.voting_round_id, record.attestation_request_hex)
    except ProofRejectedError:
        return _error(status.HTTP_502_BAD_GATEWAY, "The DA layer refused the proof lookup")
    except ProofUnavailableError as e:
        logger.info("Proof not available", record_id=str(record_id), error=str(e))
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "The proof is not available yet")

    return ProofResponse(
        record_id=str(record.record_id),
        hub_tx_hash=record.hub_tx_hash,
        voting_round=proof.voting_round_id,
        merkle_proof=list(proof.merkle_proof),
        response_hex=proof.response_hex,
        attestation_type=proof.attestation_type,
        source_id=proof.source_id,
        lowest_used_timestamp=proof.lowest_used_timestamp,
    ).to_wire()


@router.get("/users/{user_address}/actions/{action_type}/verified", tags=["Ledger"])
async def is_action_verified(
    user_address: str,
    action_type: str,
    since: int = Query(0, ge=0),
    orchestrator: AttestationOrchestrator = Depends(get_orchestrator),
):
    """Ask the ledger contract whether the user has this action recorded since a timestamp."""
    if not Web3.is_address(user_address):
        return _error(status.HTTP_400_BAD_REQUEST, "userAddress is not a valid address")
    try:
        action = ActionType.parse(action_type)
    except ValueError:
        return _error(status.HTTP_400_BAD_REQUEST, f"Unsupported actionType: {action_type}")

    submitter = orchestrator.submitter
    if submitter is None:
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "The relay is not configured for ledger queries",
            reason=FailureReason.CONFIGURATION_ERROR.value,
        )
    try:
        verified = await submitter.is_action_verified(user_address, action, since)
    except ChainSubmissionError as e:
        logger.warning("Ledger query failed", error=str(e))
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "The ledger contract could not be queried",
        )

    return VerifiedResponse(
        user_address=Web3.to_checksum_address(user_address),
        action_type=action.value,
        since=since,
        verified=verified,
    ).to_wire()
