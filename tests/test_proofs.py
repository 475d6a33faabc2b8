"""
Tests for the DA-layer proof client.
"""

import asyncio
import json

import httpx
import pytest

from attestation_relay.core.errors import ConfigurationError, ProofRejectedError, ProofUnavailableError
from attestation_relay.core.proofs import ProofClient

from fakes import VERIFIER_KEY, make_config


BASE_URL = "https://da.test/"


def fetch_with(handler, voting_round=912345, request_hex="0xdeadbeef"):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            proofs = ProofClient(BASE_URL, VERIFIER_KEY, client=client, timeout=1.0)
            return await proofs.fetch_proof(voting_round, request_hex)
    return asyncio.run(go())


def finalised(request):
    return httpx.Response(200, json={
        "proof": ["0x" + "aa" * 32],
        "response_hex": "0x" + "cc" * 8,
        "attestation_type": "0x" + "00" * 32,
        "source_id": "0x" + "11" * 32,
        "voting_round": 912345,
        "lowest_used_timestamp": 1714560000,
    })


class TestFetchProof:

    def test_request_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return finalised(request)

        fetch_with(handler)

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://da.test/api/v1/fdc/proof-by-request-round-raw"
        assert request.headers["X-API-KEY"] == VERIFIER_KEY
        assert json.loads(request.content) == {"votingRoundId": "912345", "requestBytes": "0xdeadbeef"}

    def test_finalised_proof(self):
        proof = fetch_with(finalised)

        assert proof.voting_round_id == 912345
        assert proof.merkle_proof == ("0x" + "aa" * 32,)
        assert proof.response_hex == "0x" + "cc" * 8
        assert proof.lowest_used_timestamp == 1714560000

    @pytest.mark.parametrize("body", [
        {},
        {"proof": [], "response_hex": "0xcc"},
        {"proof": ["0xaa"]},
        {"proof": "0xaa", "response_hex": "0xcc"},
    ])
    def test_incomplete_answer_is_unavailable(self, body):
        with pytest.raises(ProofUnavailableError):
            fetch_with(lambda request: httpx.Response(200, json=body))

    def test_bad_request_is_rejected(self):
        with pytest.raises(ProofRejectedError):
            fetch_with(lambda request: httpx.Response(400, text="invalid requestBytes"))

    @pytest.mark.parametrize("status_code", [404, 500, 503])
    def test_other_error_status_is_unavailable(self, status_code):
        with pytest.raises(ProofUnavailableError):
            fetch_with(lambda request: httpx.Response(status_code))

    def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProofUnavailableError):
            fetch_with(handler)


class TestFromConfig:

    def test_falls_back_to_verifier_key(self):
        proofs = ProofClient.from_config(make_config(da_layer_base_url=BASE_URL))
        assert proofs._api_key == VERIFIER_KEY

    def test_own_key_wins(self):
        config = make_config(da_layer_base_url=BASE_URL, da_layer_api_key="da-key")
        assert ProofClient.from_config(config)._api_key == "da-key"

    def test_requires_base_url(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ProofClient.from_config(make_config())
        assert exc_info.value.problems == ["DA_LAYER_BASE_URL is not set"]
