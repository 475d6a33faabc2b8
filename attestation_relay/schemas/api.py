"""
HTTP request/response models for the gateway.

Field names on the wire are camelCase; Python attributes are snake_case.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from web3 import Web3

from .records import SubmissionRecord


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class AttestationRequestBody(_WireModel):
    """Body of POST /request-attestation."""
    user_address: str = Field(..., alias="userAddress", min_length=1)
    action_type: str = Field(..., alias="actionType", min_length=1)

    @field_validator("user_address")
    @classmethod
    def _check_address(cls, v: str) -> str:
        v = v.strip()
        if not Web3.is_address(v):
            raise ValueError("userAddress is not a valid address")
        return Web3.to_checksum_address(v)


class AttestationSucceeded(_WireModel):
    message: str
    outcome: str
    tx_hash: Optional[str] = Field(None, alias="txHash")
    record_tx_hash: str = Field(..., alias="recordTxHash")
    value: Union[float, int, str]
    verification: str
    record_id: str = Field(..., alias="recordId")
    voting_round: Optional[int] = Field(None, alias="votingRound")

    @classmethod
    def from_record(cls, record: SubmissionRecord) -> "AttestationSucceeded":
        direct = record.hub_tx_hash is None
        return cls(
            message=(
                "Action recorded directly by the relayer (not verified via FDC)"
                if direct else "Action verified and recorded"
            ),
            outcome=record.outcome.value,
            tx_hash=record.hub_tx_hash,
            record_tx_hash=record.record_tx_hash,
            value=record.value,
            verification=record.verification.value,
            record_id=str(record.record_id),
            voting_round=record.voting_round_id,
        )


class ConditionNotMetResponse(_WireModel):
    message: str
    outcome: str
    value: Union[float, int, str]
    record_id: str = Field(..., alias="recordId")


class ErrorResponse(_WireModel):
    error: str
    reason: Optional[str] = None
    record_id: Optional[str] = Field(None, alias="recordId")


class VerifiedResponse(_WireModel):
    user_address: str = Field(..., alias="userAddress")
    action_type: str = Field(..., alias="actionType")
    since: int
    verified: bool


class ProofResponse(_WireModel):
    record_id: str = Field(..., alias="recordId")
    hub_tx_hash: str = Field(..., alias="txHash")
    voting_round: int = Field(..., alias="votingRound")
    merkle_proof: list[str] = Field(..., alias="merkleProof")
    response_hex: str = Field(..., alias="responseHex")
    attestation_type: Optional[str] = Field(None, alias="attestationType")
    source_id: Optional[str] = Field(None, alias="sourceId")
    lowest_used_timestamp: Optional[int] = Field(None, alias="lowestUsedTimestamp")
