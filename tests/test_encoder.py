"""
Tests for the verifier client (AttestationRequestEncoder).
"""

import asyncio
import logging
import json

import httpx
import pytest

from attestation_relay.core.encoder import AttestationRequestEncoder, to_padded_hex
from attestation_relay.core.errors import EncodingRejectedError, EncodingTransportError

from fakes import TEMP_QUERY, VERIFIER_KEY, WEATHER_KEY


BASE_URL = "https://verifier.test/verifier/"


def prepare_with(handler):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            encoder = AttestationRequestEncoder(BASE_URL, VERIFIER_KEY, client=client, timeout=1.0)
            return await encoder.prepare("IJsonApi", "WEB2", TEMP_QUERY)
    return asyncio.run(go())


def valid(request):
    return httpx.Response(200, json={"status": "VALID", "abiEncodedRequest": "0xdeadbeef"})


class TestPaddedHex:

    def test_pads_to_32_bytes(self):
        assert to_padded_hex("WEB2") == "0x57454232" + "0" * 56
        assert len(to_padded_hex("IJsonApi")) == 2 + 64

    def test_too_long(self):
        with pytest.raises(ValueError):
            to_padded_hex("x" * 33)


class TestPrepareRequest:

    def test_request_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return valid(request)

        prepare_with(handler)

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://verifier.test/verifier/JsonApi/prepareRequest"
        assert request.headers["X-API-KEY"] == VERIFIER_KEY

        body = json.loads(request.content)
        assert body["attestationType"] == to_padded_hex("IJsonApi")
        assert body["sourceId"] == to_padded_hex("WEB2")
        assert body["requestBody"] == {
            "url": TEMP_QUERY.full_url,
            "method": "GET",
            "responseFormat": "json",
            "jqFilter": ".main.temp",
        }
        assert WEATHER_KEY in body["requestBody"]["url"]

    def test_valid_response(self):
        encoded = prepare_with(valid)

        assert encoded.status == "VALID"
        assert encoded.payload == bytes.fromhex("deadbeef")
        assert encoded.payload_hex == "0xdeadbeef"
        assert not encoded.submitted

    def test_every_call_is_a_fresh_request(self):
        first = prepare_with(valid)
        second = prepare_with(valid)
        assert first.request_id != second.request_id

    @pytest.mark.parametrize("status", ["INVALID", "valid", "", None, "VALID "])
    def test_anything_but_valid_is_rejected(self, status):
        def handler(request):
            return httpx.Response(200, json={"status": status, "abiEncodedRequest": "0xdeadbeef"})

        with pytest.raises(EncodingRejectedError):
            prepare_with(handler)

    def test_missing_payload_is_rejected(self):
        with pytest.raises(EncodingRejectedError):
            prepare_with(lambda request: httpx.Response(200, json={"status": "VALID"}))

    @pytest.mark.parametrize("payload", ["0x", "0xzz", "0xabc", 42])
    def test_malformed_payload_is_rejected(self, payload):
        def handler(request):
            return httpx.Response(200, json={"status": "VALID", "abiEncodedRequest": payload})

        with pytest.raises(EncodingRejectedError):
            prepare_with(handler)

    def test_non_json_is_rejected(self):
        with pytest.raises(EncodingRejectedError):
            prepare_with(lambda request: httpx.Response(200, text="not json"))

    @pytest.mark.parametrize("status_code", [400, 401, 500, 503])
    def test_error_status_is_transport(self, status_code):
        with pytest.raises(EncodingTransportError):
            prepare_with(lambda request: httpx.Response(status_code, text="upstream trouble"))

    def test_connection_error_is_transport(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(EncodingTransportError):
            prepare_with(handler)

    def test_timeout_is_transport(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(EncodingTransportError):
            prepare_with(handler)

    def test_does_not_retry_internally(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        with pytest.raises(EncodingTransportError):
            prepare_with(handler)
        assert len(calls) == 1

    def test_error_body_echoing_the_source_url_is_redacted(self, caplog):
        caplog.set_level(logging.DEBUG, logger="attestation_relay")

        def handler(request):
            echoed = json.loads(request.content)["requestBody"]["url"]
            return httpx.Response(500, text=f"fetch failed: {echoed} (key {VERIFIER_KEY})")

        with pytest.raises(EncodingTransportError):
            prepare_with(handler)

        logged = [r for r in caplog.records if r.name.startswith("attestation_relay")]
        assert any(r.getMessage() == "Verifier returned error status" for r in logged)
        for record in logged:
            for value in vars(record).values():
                assert WEATHER_KEY not in str(value)
                assert VERIFIER_KEY not in str(value)
