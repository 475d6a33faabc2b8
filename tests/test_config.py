"""
Tests for configuration loading, validation and redaction.
"""

import pytest

from attestation_relay.config import InFlightPolicy, RelayConfig
from attestation_relay.core.errors import ConfigurationError
from attestation_relay.observability import REDACTED, redact, redact_url

from fakes import PRIVATE_KEY, VERIFIER_KEY, WEATHER_KEY, make_config


ENV_VARS = [
    "OPENWEATHERMAP_API_KEY", "WEATHER_API_URL", "WEATHER_LAT", "WEATHER_LON",
    "FDC_VERIFIER_BASE_URL", "JQ_VERIFIER_API_KEY", "FDC_ATTESTATION_TYPE", "FDC_SOURCE_ID",
    "COSTON2_RPC_URL", "CHAIN_ID", "FDC_HUB_ADDRESS", "USER_ACTIONS_ADDRESS",
    "PROVIDER_PRIVATE_KEY", "FDC_REQUEST_FEE", "TEMP_THRESHOLD_CELSIUS",
    "TRANSPORT_MIN_DISTANCE_KM", "TRANSPORT_FIXED_DISTANCE_KM", "TRANSPORT_SOURCE_URL",
    "VERIFIER_RETRY_ATTEMPTS", "HUB_RETRY_ATTEMPTS", "IN_FLIGHT_POLICY",
    "IN_FLIGHT_WAIT_SECONDS", "DIRECT_RECORD_FALLBACK", "AWAIT_HUB_CONFIRMATION",
    "FACT_TIMEOUT_SECONDS", "VERIFIER_TIMEOUT_SECONDS", "CHAIN_SUBMIT_TIMEOUT_SECONDS",
    "CHAIN_CONFIRM_TIMEOUT_SECONDS", "RECORD_HISTORY_LIMIT", "FLARE_SYSTEMS_MANAGER_ADDRESS",
    "DA_LAYER_BASE_URL", "DA_LAYER_API_KEY",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestFromEnv:

    def test_defaults(self, clean_env):
        config = RelayConfig.from_env()

        assert config.weather_api_key is None
        assert config.attestation_type == "IJsonApi"
        assert config.source_id == "WEB2"
        assert config.chain_id == 114
        assert config.temp_threshold_celsius == 15.0
        assert config.transport_fixed_distance_km == 7.5
        assert config.verifier_retry_attempts == 2
        assert config.hub_retry_attempts == 0
        assert config.in_flight_policy == InFlightPolicy.REJECT
        assert config.direct_record_fallback is False
        assert config.transport_source_url is None
        assert config.systems_manager_address is None
        assert config.da_layer_base_url is None
        assert config.await_hub_confirmation is False

    def test_reads_values(self, clean_env):
        clean_env.setenv("OPENWEATHERMAP_API_KEY", WEATHER_KEY)
        clean_env.setenv("FDC_REQUEST_FEE", "0.5")
        clean_env.setenv("IN_FLIGHT_POLICY", " WAIT ")
        clean_env.setenv("DIRECT_RECORD_FALLBACK", "yes")
        clean_env.setenv("AWAIT_HUB_CONFIRMATION", "0")
        clean_env.setenv("TEMP_THRESHOLD_CELSIUS", "20")

        config = RelayConfig.from_env()

        assert config.weather_api_key == WEATHER_KEY
        assert config.request_fee == "0.5"
        assert config.in_flight_policy == InFlightPolicy.WAIT
        assert config.direct_record_fallback is True
        assert config.await_hub_confirmation is False
        assert config.temp_threshold_celsius == 20.0

    def test_blank_values_count_as_unset(self, clean_env):
        clean_env.setenv("JQ_VERIFIER_API_KEY", "   ")
        assert RelayConfig.from_env().verifier_api_key is None

    @pytest.mark.parametrize("name,value", [
        ("IN_FLIGHT_POLICY", "queue"),
        ("CHAIN_ID", "coston"),
        ("FACT_TIMEOUT_SECONDS", "ten"),
    ])
    def test_unparseable_values(self, clean_env, name, value):
        clean_env.setenv(name, value)

        with pytest.raises(ConfigurationError):
            RelayConfig.from_env()


class TestFee:

    @pytest.mark.parametrize("fee,wei", [
        ("0.01", 10**16),
        ("1", 10**18),
        ("0", 0),
        ("0.000000000000000001", 1),
    ])
    def test_converted_to_wei(self, fee, wei):
        assert make_config(request_fee=fee).fee_wei == wei

    @pytest.mark.parametrize("fee", [None, "lots", "-1", "NaN"])
    def test_invalid_fee(self, fee):
        with pytest.raises(ConfigurationError):
            make_config(request_fee=fee).fee_wei


class TestValidation:

    def test_complete_config_has_no_problems(self):
        config = make_config()

        assert config.problems() == []
        config.validate()

    def test_weather_key_is_not_a_global_requirement(self):
        assert make_config(weather_api_key=None).problems() == []

    def test_lists_every_problem(self):
        config = make_config(
            verifier_base_url=None,
            hub_address="0x1234",
            private_key="not-a-key",
            verifier_retry_attempts=-1,
            fact_timeout=0,
        )

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()

        problems = exc_info.value.problems
        assert "FDC_VERIFIER_BASE_URL is not set" in problems
        assert "FDC_HUB_ADDRESS is not a valid address" in problems
        assert "PROVIDER_PRIVATE_KEY is not a 32-byte hex key" in problems
        assert "VERIFIER_RETRY_ATTEMPTS must be >= 0" in problems
        assert "FACT_TIMEOUT_SECONDS must be positive" in problems

    def test_transport_source_url_is_required(self):
        assert make_config(transport_source_url=None).problems() == ["TRANSPORT_SOURCE_URL is not set"]

    def test_systems_manager_address_is_optional_but_checked(self):
        assert make_config(systems_manager_address="0x" + "33" * 20).problems() == []
        assert make_config(systems_manager_address="0x33").problems() == [
            "FLARE_SYSTEMS_MANAGER_ADDRESS is not a valid address"
        ]

    def test_problems_never_contain_secrets(self):
        config = make_config(private_key="0x" + "zz" * 32)

        for problem in config.problems():
            assert "zz" * 32 not in problem


class TestRedaction:

    def test_redacted_config_masks_secrets(self):
        redacted = make_config(da_layer_api_key="da-secret").redacted()

        assert redacted["weather_api_key"] == REDACTED
        assert redacted["verifier_api_key"] == REDACTED
        assert redacted["private_key"] == REDACTED
        assert redacted["da_layer_api_key"] == REDACTED
        assert redacted["in_flight_policy"] == "reject"
        assert redacted["request_fee"] == "0.01"
        for secret in (WEATHER_KEY, VERIFIER_KEY, PRIVATE_KEY):
            assert secret not in str(redacted)

    def test_unset_secret_stays_none(self):
        assert make_config(weather_api_key=None).redacted()["weather_api_key"] is None

    def test_redact_ignores_empty_secrets(self):
        assert redact("key=abc", [None, "", "abc"]) == f"key={REDACTED}"

    def test_redact_url_masks_credential_params(self):
        url = f"https://weather.test/data?lat=1&appid={WEATHER_KEY}&units=metric"

        safe = redact_url(url)

        assert WEATHER_KEY not in safe
        assert "appid=***" in safe
        assert "units=metric" in safe

    def test_redact_url_masks_explicit_secrets(self):
        url = f"https://verifier.test/{VERIFIER_KEY}/prepare"

        assert VERIFIER_KEY not in redact_url(url, [VERIFIER_KEY])


class TestPackageImports:

    def test_core_exports_resolve_after_config(self):
        import attestation_relay.config  # noqa: F401
        import attestation_relay.core as core

        for name in core.__all__:
            assert getattr(core, name) is not None
