"""
Tests for the external fact sources and predicate evaluation.
"""

import asyncio
import logging

import httpx
import pytest

from attestation_relay.core.errors import PredicateError
from attestation_relay.core.fact_source import (
    _MISSING,
    DeterministicFactSource,
    HttpFactSource,
    extract_value,
)
from attestation_relay.core.predicate import PredicateEvaluator
from attestation_relay.schemas.actions import ActionType, Comparison, PredicateRule
from attestation_relay.schemas.records import FactFailureKind

from fakes import TEMP_QUERY, TRANSPORT_QUERY, WEATHER_KEY


def fetch_with(handler, query=TEMP_QUERY):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await HttpFactSource(client, timeout=1.0).fetch(query)
    return asyncio.run(go())


class TestHttpFactSource:

    def test_extracts_nested_temperature(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"main": {"temp": 16.2, "humidity": 40}, "name": "Seoul"})

        result = fetch_with(handler)

        assert result.success
        assert result.value == 16.2
        assert result.source_id == "openweathermap"
        assert result.reason is None
        assert len(seen) == 1
        assert seen[0].method == "GET"
        assert seen[0].url.params["appid"] == WEATHER_KEY
        assert seen[0].url.params["units"] == "metric"

    def test_non_2xx_is_http_status(self):
        result = fetch_with(lambda request: httpx.Response(401, json={"cod": 401}))

        assert not result.success
        assert result.reason == FactFailureKind.HTTP_STATUS
        assert result.value is None

    def test_non_json_is_bad_shape(self):
        result = fetch_with(lambda request: httpx.Response(200, text="<html>oops</html>"))
        assert result.reason == FactFailureKind.BAD_SHAPE

    def test_json_array_is_bad_shape(self):
        result = fetch_with(lambda request: httpx.Response(200, json=[1, 2, 3]))
        assert result.reason == FactFailureKind.BAD_SHAPE

    def test_missing_field(self):
        result = fetch_with(lambda request: httpx.Response(200, json={"main": {"humidity": 40}}))
        assert result.reason == FactFailureKind.MISSING_FIELD

    def test_non_scalar_field_is_missing(self):
        result = fetch_with(lambda request: httpx.Response(200, json={"main": {"temp": {"c": 16}}}))
        assert result.reason == FactFailureKind.MISSING_FIELD

    def test_boolean_field_is_missing(self):
        result = fetch_with(lambda request: httpx.Response(200, json={"main": {"temp": True}}))
        assert result.reason == FactFailureKind.MISSING_FIELD

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = fetch_with(handler)
        assert result.reason == FactFailureKind.NETWORK

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = fetch_with(handler)
        assert result.reason == FactFailureKind.TIMEOUT

    def test_makes_exactly_one_call_on_failure(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        fetch_with(handler)
        assert len(calls) == 1

    def test_api_key_never_logged(self, caplog):
        caplog.set_level(logging.DEBUG)

        fetch_with(lambda request: httpx.Response(500))
        fetch_with(lambda request: httpx.Response(200, json={"main": {"temp": 3}}))

        ours = [r for r in caplog.records if r.name.startswith("attestation_relay")]
        assert ours
        for record in ours:
            for value in record.__dict__.values():
                assert WEATHER_KEY not in str(value)


class TestExtractValue:

    def test_walks_lists_by_index(self):
        body = {"weather": [{"id": 800}, {"id": 801}]}
        assert extract_value(body, ("weather", "1", "id")) == 801

    def test_index_out_of_range(self):
        assert extract_value({"a": [1]}, ("a", "3")) is _MISSING


class TestDeterministicFactSource:

    def test_returns_fixed_value(self):
        source = DeterministicFactSource(7.5)
        result = asyncio.run(source.fetch(TRANSPORT_QUERY))

        assert result.success
        assert result.value == 7.5
        assert result.source_id == "transport-log"
        assert source.calls == 1

    def test_configured_failure(self):
        source = DeterministicFactSource(failure=FactFailureKind.TIMEOUT)
        result = asyncio.run(source.fetch(TRANSPORT_QUERY))

        assert not result.success
        assert result.reason == FactFailureKind.TIMEOUT

    def test_requires_value_or_failure(self):
        with pytest.raises(ValueError):
            DeterministicFactSource()


class TestPredicateEvaluator:

    @pytest.fixture
    def evaluator(self):
        return PredicateEvaluator({
            ActionType.TEMP_SEOUL_GT_15: PredicateRule(Comparison.GT, 15.0, "celsius"),
            ActionType.SUSTAINABLE_TRANSPORT_KM: PredicateRule(Comparison.GTE, 5.0, "km"),
        })

    @pytest.mark.parametrize("value,expected", [
        (16.2, True),
        (15.0001, True),
        (15.0, False),
        (10.0, False),
        (-3, False),
        ("16.2", True),
    ])
    def test_temperature_rule(self, evaluator, value, expected):
        assert evaluator.evaluate(ActionType.TEMP_SEOUL_GT_15, value) is expected

    @pytest.mark.parametrize("value,expected", [(5, True), (5.0, True), (4.99, False), (12, True)])
    def test_transport_rule_is_inclusive(self, evaluator, value, expected):
        assert evaluator.evaluate(ActionType.SUSTAINABLE_TRANSPORT_KM, value) is expected

    def test_deterministic(self, evaluator):
        results = {evaluator.evaluate(ActionType.TEMP_SEOUL_GT_15, 10.0) for _ in range(10)}
        assert results == {False}

    def test_unknown_action_fails_fast(self):
        evaluator = PredicateEvaluator({})
        with pytest.raises(PredicateError):
            evaluator.evaluate(ActionType.TEMP_SEOUL_GT_15, 20.0)

    @pytest.mark.parametrize("value", ["cloudy", True, float("nan"), float("inf")])
    def test_non_numeric_values_raise(self, evaluator, value):
        with pytest.raises(PredicateError):
            evaluator.evaluate(ActionType.TEMP_SEOUL_GT_15, value)

    def test_rule_description(self, evaluator):
        rule = evaluator.rule_for(ActionType.TEMP_SEOUL_GT_15)
        assert rule.describe() == "value > 15 celsius"
