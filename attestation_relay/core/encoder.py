"""
Attestation Request Encoder

Asks the verifier service to turn a FactQuery into the opaque byte
payload the hub contract expects.

Two failure kinds, kept apart so the orchestrator can choose:
- EncodingTransportError: verifier not reached, timed out, or non-2xx.
  Worth retrying.
- EncodingRejectedError: verifier answered but did not say VALID, or
  the payload is malformed. Never retried with the same inputs.

Only the exact status token "VALID" is accepted. Nothing else is
coerced or partially used.
"""

import re
from typing import Optional

import httpx

from ..observability import get_logger, redact
from ..schemas.records import AttestationRequest, EncodedAttestation, FactQuery
from .errors import EncodingRejectedError, EncodingTransportError

logger = get_logger(__name__)

VALID_STATUS = "VALID"
PREPARE_PATH = "/JsonApi/prepareRequest"

_HEX_RE = re.compile(r"^(0x)?([0-9a-fA-F]{2})+$")


def to_padded_hex(text: str) -> str:
    """UTF-8 bytes of a name, right-padded with zeros to 32 bytes."""
    raw = text.encode("utf-8")
    if len(raw) > 32:
        raise ValueError(f"{text!r} does not fit in 32 bytes")
    return "0x" + raw.hex().ljust(64, "0")


def _excerpt(text: str, limit: int = 200) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "..."


class AttestationRequestEncoder:
    """Client for the verifier's prepareRequest endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self._endpoint = base_url.rstrip("/") + PREPARE_PATH
        self._api_key = api_key
        self._client = client
        self._timeout = timeout

    def build_request(
        self,
        attestation_type: str,
        source_id: str,
        query: FactQuery,
    ) -> AttestationRequest:
        """A fresh AttestationRequest; every call yields a new request_id."""
        return AttestationRequest(
            attestation_type=attestation_type,
            source_id=source_id,
            query=query,
        )

    def to_body(self, request: AttestationRequest) -> dict:
        return {
            "attestationType": to_padded_hex(request.attestation_type),
            "sourceId": to_padded_hex(request.source_id),
            "requestBody": request.query.to_request_body(),
        }

    async def prepare(
        self,
        attestation_type: str,
        source_id: str,
        query: FactQuery,
    ) -> EncodedAttestation:
        """
        Prepare one attestation request with the verifier.

        Raises:
            EncodingTransportError: Verifier unreachable or non-2xx
            EncodingRejectedError: Verifier refused or payload malformed
        """
        return await self.prepare_request(self.build_request(attestation_type, source_id, query))

    async def prepare_request(self, request: AttestationRequest) -> EncodedAttestation:
        """Send an already-built AttestationRequest. Same errors as prepare()."""
        body = self.to_body(request)
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
        except httpx.TimeoutException as e:
            raise EncodingTransportError(f"Verifier timed out ({type(e).__name__})") from e
        except httpx.HTTPError as e:
            raise EncodingTransportError(f"Verifier unreachable ({type(e).__name__})") from e

        if not response.is_success:
            logger.warning(
                "Verifier returned error status",
                request_id=str(request.request_id),
                status_code=response.status_code,
                body=_excerpt(redact(response.text, [self._api_key, *request.query.secrets])),
            )
            raise EncodingTransportError(f"Verifier returned status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise EncodingRejectedError("Verifier response is not JSON") from e

        if not isinstance(data, dict):
            raise EncodingRejectedError("Verifier response is not a JSON object")

        status = data.get("status")
        if status != VALID_STATUS:
            logger.warning(
                "Verifier rejected request",
                request_id=str(request.request_id),
                verifier_status=str(status),
            )
            raise EncodingRejectedError(f"Verifier status is {status!r}, not {VALID_STATUS}")

        encoded = data.get("abiEncodedRequest")
        if not isinstance(encoded, str) or not _HEX_RE.match(encoded):
            raise EncodingRejectedError("Verifier returned a missing or malformed abiEncodedRequest")

        payload = bytes.fromhex(encoded[2:] if encoded.startswith("0x") else encoded)
        logger.info(
            "Attestation request prepared",
            request_id=str(request.request_id),
            payload_bytes=len(payload),
        )
        return EncodedAttestation(
            request_id=request.request_id,
            status=status,
            payload=payload,
        )
