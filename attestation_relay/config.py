"""
Relay Configuration

Environment-based configuration for the attestation relay.

Environment Variables:
    OPENWEATHERMAP_API_KEY: Data-source API key (temperature action only)
    WEATHER_API_URL: Current-weather endpoint (default OpenWeatherMap)
    WEATHER_LAT / WEATHER_LON: Location queried (default Seoul)

    FDC_VERIFIER_BASE_URL: Verifier service base URL
    JQ_VERIFIER_API_KEY: Verifier API key
    FDC_ATTESTATION_TYPE: Attestation type name (default IJsonApi)
    FDC_SOURCE_ID: Source id name (default WEB2)
    DA_LAYER_BASE_URL: Data-availability layer serving finalised proofs (optional)
    DA_LAYER_API_KEY: DA-layer API key (defaults to the verifier key)

    COSTON2_RPC_URL: Chain JSON-RPC endpoint
    CHAIN_ID: Chain id (default 114, Coston2)
    FDC_HUB_ADDRESS: Attestation hub contract
    USER_ACTIONS_ADDRESS: User-action ledger contract
    FLARE_SYSTEMS_MANAGER_ADDRESS: Systems manager, read for the voting round (optional)
    PROVIDER_PRIVATE_KEY: Submitter signing key
    FDC_REQUEST_FEE: Hub fee in native units, e.g. "0.01"

    TEMP_THRESHOLD_CELSIUS: Temperature rule threshold (default 15.0)
    TRANSPORT_MIN_DISTANCE_KM: Transport rule threshold (default 5.0)
    TRANSPORT_FIXED_DISTANCE_KM: Distance reported by the deterministic source
    TRANSPORT_SOURCE_URL: URL the verifier is asked to read for transport (required for that action)

    VERIFIER_RETRY_ATTEMPTS: Extra attempts after a verifier transport failure
    HUB_RETRY_ATTEMPTS: Re-preparations after a hub failure that never broadcast
    IN_FLIGHT_POLICY: "reject" (default) or "wait"
    IN_FLIGHT_WAIT_SECONDS: How long a waiting duplicate may wait
    DIRECT_RECORD_FALLBACK: Record directly when the hub step fails
    AWAIT_HUB_CONFIRMATION: Wait for the hub receipt before recording

    FACT_TIMEOUT_SECONDS, VERIFIER_TIMEOUT_SECONDS,
    CHAIN_SUBMIT_TIMEOUT_SECONDS, CHAIN_CONFIRM_TIMEOUT_SECONDS

    RECORD_HISTORY_LIMIT: Attestation history kept in memory
"""

import os
import re
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from web3 import Web3

from .core.errors import ConfigurationError
from .observability import REDACTED


DEFAULT_WEATHER_API_URL = "https://api.openweathermap.org/data/2.5/weather"

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")

_TRUE = ("1", "true", "yes", "on")


class InFlightPolicy(str, Enum):
    """What happens to a duplicate request for a key already in flight."""
    REJECT = "reject"  # Fail fast with 409
    WAIT = "wait"      # Join the first request and share its result


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


@dataclass
class RelayConfig:
    """Relay configuration. Secrets are kept as plain strings; never log this directly."""

    # Data source
    weather_api_key: Optional[str] = None
    weather_api_url: str = DEFAULT_WEATHER_API_URL
    weather_lat: float = 37.5665
    weather_lon: float = 126.9780

    # Verifier
    verifier_base_url: Optional[str] = None
    verifier_api_key: Optional[str] = None
    attestation_type: str = "IJsonApi"
    source_id: str = "WEB2"
    da_layer_base_url: Optional[str] = None
    da_layer_api_key: Optional[str] = None

    # Chain
    rpc_url: Optional[str] = None
    chain_id: int = 114
    hub_address: Optional[str] = None
    ledger_address: Optional[str] = None
    systems_manager_address: Optional[str] = None
    private_key: Optional[str] = None
    request_fee: Optional[str] = None

    # Predicate thresholds
    temp_threshold_celsius: float = 15.0
    transport_min_distance_km: float = 5.0
    transport_fixed_distance_km: float = 7.5
    transport_source_url: Optional[str] = None

    # Orchestration policy
    verifier_retry_attempts: int = 2
    hub_retry_attempts: int = 0
    in_flight_policy: InFlightPolicy = InFlightPolicy.REJECT
    in_flight_wait_seconds: float = 60.0
    direct_record_fallback: bool = False
    await_hub_confirmation: bool = False

    # Timeouts (seconds)
    fact_timeout: float = 10.0
    verifier_timeout: float = 15.0
    chain_submit_timeout: float = 30.0
    chain_confirm_timeout: float = 120.0

    record_history_limit: int = 1000

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        Raises:
            ConfigurationError: If a numeric or enumerated variable cannot be parsed
        """
        try:
            return cls(
                weather_api_key=_env_str("OPENWEATHERMAP_API_KEY"),
                weather_api_url=os.getenv("WEATHER_API_URL", DEFAULT_WEATHER_API_URL),
                weather_lat=float(os.getenv("WEATHER_LAT", "37.5665")),
                weather_lon=float(os.getenv("WEATHER_LON", "126.9780")),
                verifier_base_url=_env_str("FDC_VERIFIER_BASE_URL"),
                verifier_api_key=_env_str("JQ_VERIFIER_API_KEY"),
                attestation_type=os.getenv("FDC_ATTESTATION_TYPE", "IJsonApi"),
                source_id=os.getenv("FDC_SOURCE_ID", "WEB2"),
                da_layer_base_url=_env_str("DA_LAYER_BASE_URL"),
                da_layer_api_key=_env_str("DA_LAYER_API_KEY"),
                rpc_url=_env_str("COSTON2_RPC_URL"),
                chain_id=int(os.getenv("CHAIN_ID", "114")),
                hub_address=_env_str("FDC_HUB_ADDRESS"),
                ledger_address=_env_str("USER_ACTIONS_ADDRESS"),
                systems_manager_address=_env_str("FLARE_SYSTEMS_MANAGER_ADDRESS"),
                private_key=_env_str("PROVIDER_PRIVATE_KEY"),
                request_fee=_env_str("FDC_REQUEST_FEE"),
                temp_threshold_celsius=float(os.getenv("TEMP_THRESHOLD_CELSIUS", "15.0")),
                transport_min_distance_km=float(os.getenv("TRANSPORT_MIN_DISTANCE_KM", "5.0")),
                transport_fixed_distance_km=float(os.getenv("TRANSPORT_FIXED_DISTANCE_KM", "7.5")),
                transport_source_url=_env_str("TRANSPORT_SOURCE_URL"),
                verifier_retry_attempts=int(os.getenv("VERIFIER_RETRY_ATTEMPTS", "2")),
                hub_retry_attempts=int(os.getenv("HUB_RETRY_ATTEMPTS", "0")),
                in_flight_policy=InFlightPolicy(os.getenv("IN_FLIGHT_POLICY", "reject").strip().lower()),
                in_flight_wait_seconds=float(os.getenv("IN_FLIGHT_WAIT_SECONDS", "60")),
                direct_record_fallback=_env_bool("DIRECT_RECORD_FALLBACK"),
                await_hub_confirmation=_env_bool("AWAIT_HUB_CONFIRMATION"),
                fact_timeout=float(os.getenv("FACT_TIMEOUT_SECONDS", "10")),
                verifier_timeout=float(os.getenv("VERIFIER_TIMEOUT_SECONDS", "15")),
                chain_submit_timeout=float(os.getenv("CHAIN_SUBMIT_TIMEOUT_SECONDS", "30")),
                chain_confirm_timeout=float(os.getenv("CHAIN_CONFIRM_TIMEOUT_SECONDS", "120")),
                record_history_limit=int(os.getenv("RECORD_HISTORY_LIMIT", "1000")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid relay configuration: {e}") from e

    @property
    def fee_wei(self) -> int:
        """
        The hub fee converted once to wei.

        Raises:
            ConfigurationError: If the fee is missing or not a non-negative decimal
        """
        if self.request_fee is None:
            raise ConfigurationError("FDC_REQUEST_FEE is not set")
        try:
            amount = Decimal(self.request_fee)
        except InvalidOperation as e:
            raise ConfigurationError(f"FDC_REQUEST_FEE is not a decimal: {self.request_fee!r}") from e
        if not amount.is_finite() or amount < 0:
            raise ConfigurationError("FDC_REQUEST_FEE must be a non-negative amount")
        return int(Web3.to_wei(amount, "ether"))

    def problems(self) -> list[str]:
        """Every missing or malformed global option, as human-readable lines."""
        found = []

        if not self.verifier_base_url:
            found.append("FDC_VERIFIER_BASE_URL is not set")
        if not self.verifier_api_key:
            found.append("JQ_VERIFIER_API_KEY is not set")
        if not self.rpc_url:
            found.append("COSTON2_RPC_URL is not set")
        if not self.transport_source_url:
            found.append("TRANSPORT_SOURCE_URL is not set")

        for name, value in (
            ("FDC_HUB_ADDRESS", self.hub_address),
            ("USER_ACTIONS_ADDRESS", self.ledger_address),
        ):
            if not value:
                found.append(f"{name} is not set")
            elif not Web3.is_address(value):
                found.append(f"{name} is not a valid address")
        if self.systems_manager_address and not Web3.is_address(self.systems_manager_address):
            found.append("FLARE_SYSTEMS_MANAGER_ADDRESS is not a valid address")

        if not self.private_key:
            found.append("PROVIDER_PRIVATE_KEY is not set")
        elif not _PRIVATE_KEY_RE.match(self.private_key):
            found.append("PROVIDER_PRIVATE_KEY is not a 32-byte hex key")

        try:
            self.fee_wei
        except ConfigurationError as e:
            found.append(str(e))

        if self.verifier_retry_attempts < 0:
            found.append("VERIFIER_RETRY_ATTEMPTS must be >= 0")
        if self.hub_retry_attempts < 0:
            found.append("HUB_RETRY_ATTEMPTS must be >= 0")
        for name, value in (
            ("FACT_TIMEOUT_SECONDS", self.fact_timeout),
            ("VERIFIER_TIMEOUT_SECONDS", self.verifier_timeout),
            ("CHAIN_SUBMIT_TIMEOUT_SECONDS", self.chain_submit_timeout),
            ("CHAIN_CONFIRM_TIMEOUT_SECONDS", self.chain_confirm_timeout),
            ("IN_FLIGHT_WAIT_SECONDS", self.in_flight_wait_seconds),
        ):
            if value <= 0:
                found.append(f"{name} must be positive")

        return found

    def validate(self) -> None:
        """
        Fail fast on a misconfigured relay.

        Raises:
            ConfigurationError: Listing every problem found
        """
        found = self.problems()
        if found:
            raise ConfigurationError(
                "Relay configuration is invalid: " + "; ".join(found),
                problems=found,
            )

    def redacted(self) -> dict:
        """Configuration as a dict with secrets masked (for logging/CLI)."""
        secret_fields = {"weather_api_key", "verifier_api_key", "da_layer_api_key", "private_key"}
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in secret_fields:
                value = REDACTED if value else None
            elif isinstance(value, Enum):
                value = value.value
            out[f.name] = value
        return out
