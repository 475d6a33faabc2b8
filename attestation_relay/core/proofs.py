"""
Proof Client

Looks up the finalised Merkle proof for a hub request on the
data-availability (DA) layer, once its voting round has closed.

One lookup is one HTTP call. Nothing here polls or sleeps; a caller
that gets ProofUnavailableError simply asks again later.

- 400 from the DA layer: ProofRejectedError (the lookup itself is wrong)
- any other non-2xx, a transport failure, or an answer without
  proof/response_hex: ProofUnavailableError
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from ..observability import get_logger, redact
from .errors import ConfigurationError, ProofRejectedError, ProofUnavailableError

logger = get_logger(__name__)

PROOF_PATH = "/api/v1/fdc/proof-by-request-round-raw"


@dataclass(frozen=True)
class FinalizedProof:
    """A Merkle proof and the attested response it covers."""
    voting_round_id: int
    merkle_proof: tuple[str, ...]
    response_hex: str
    attestation_type: Optional[str] = None
    source_id: Optional[str] = None
    lowest_used_timestamp: Optional[int] = None


class ProofClient:
    """Client for the DA layer's proof-by-request-round endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self._endpoint = base_url.rstrip("/") + PROOF_PATH
        self._api_key = api_key
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_config(cls, config, client: Optional[httpx.AsyncClient] = None) -> "ProofClient":
        """
        Build a client from RelayConfig. The verifier key is used when no
        DA-layer key is set.

        Raises:
            ConfigurationError: If the DA layer is not configured
        """
        api_key = config.da_layer_api_key or config.verifier_api_key
        missing = []
        if not config.da_layer_base_url:
            missing.append("DA_LAYER_BASE_URL")
        if not api_key:
            missing.append("DA_LAYER_API_KEY")
        if missing:
            raise ConfigurationError(
                "Proof client is not configured: " + ", ".join(missing),
                problems=[f"{name} is not set" for name in missing],
            )
        return cls(config.da_layer_base_url, api_key, client=client, timeout=config.verifier_timeout)

    async def fetch_proof(self, voting_round_id: int, request_hex: str) -> FinalizedProof:
        """
        Fetch the proof for one submitted request.

        Raises:
            ProofUnavailableError: Not finalised yet, or the DA layer is unreachable
            ProofRejectedError: The DA layer refused the lookup
        """
        body = {"votingRoundId": str(voting_round_id), "requestBytes": request_hex}
        headers = {"X-API-KEY": self._api_key, "Content-Type": "application/json"}

        try:
            if self._client is not None:
                response = await self._client.post(
                    self._endpoint, json=body, headers=headers,
                    timeout=httpx.Timeout(self._timeout),
                )
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                    response = await client.post(self._endpoint, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ProofUnavailableError(f"DA layer unreachable ({type(e).__name__})") from e

        if response.status_code == 400:
            logger.warning(
                "DA layer refused proof lookup",
                voting_round_id=voting_round_id,
                body=redact(response.text, [self._api_key])[:200],
            )
            raise ProofRejectedError("DA layer refused the proof lookup")
        if not response.is_success:
            raise ProofUnavailableError(f"DA layer returned status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProofUnavailableError("DA layer response is not JSON") from e

        if not isinstance(data, dict):
            raise ProofUnavailableError("DA layer response is not a JSON object")
        proof = data.get("proof")
        response_hex = data.get("response_hex")
        if not proof or not isinstance(proof, list) or not response_hex:
            logger.info("Proof not finalised yet", voting_round_id=voting_round_id)
            raise ProofUnavailableError(f"No proof yet for voting round {voting_round_id}")

        logger.info("Proof retrieved", voting_round_id=voting_round_id, proof_nodes=len(proof))
        return FinalizedProof(
            voting_round_id=int(data.get("voting_round") or voting_round_id),
            merkle_proof=tuple(str(node) for node in proof),
            response_hex=str(response_hex),
            attestation_type=data.get("attestation_type"),
            source_id=data.get("source_id"),
            lowest_used_timestamp=data.get("lowest_used_timestamp"),
        )
