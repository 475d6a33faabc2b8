"""
Action Registry

Resolves an ActionType into everything the pipeline needs for it:
the FactQuery to run, the FactSource that runs it, and the rule the
result must satisfy. Adding an action type means adding one
ActionDefinition here; nothing downstream branches on the action.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from ..config import RelayConfig
from ..schemas.actions import ActionType, Comparison, PredicateRule
from ..schemas.records import FactQuery
from .errors import ConfigurationError
from .fact_source import DeterministicFactSource, FactSource, HttpFactSource


@dataclass(frozen=True)
class ActionDefinition:
    """How one action type is measured and judged."""
    action_type: ActionType
    description: str
    rule: PredicateRule
    source: FactSource
    build_query: Callable[[], FactQuery]

    def to_dict(self) -> dict:
        return {
            "name": self.action_type.value,
            "id": self.action_type.b32_hex,
            "description": self.description,
            "unit": self.rule.unit,
            "rule": self.rule.to_dict(),
        }


class ActionRegistry:
    """Lookup table from ActionType to its ActionDefinition."""

    def __init__(self, definitions: list[ActionDefinition]):
        self._definitions = {d.action_type: d for d in definitions}

    def __contains__(self, action_type: ActionType) -> bool:
        return action_type in self._definitions

    def get(self, action_type: ActionType) -> ActionDefinition:
        try:
            return self._definitions[action_type]
        except KeyError:
            raise ConfigurationError(f"Action type {action_type} is not registered") from None

    def definitions(self) -> list[ActionDefinition]:
        return list(self._definitions.values())

    def rules(self) -> dict[ActionType, PredicateRule]:
        return {a: d.rule for a, d in self._definitions.items()}

    def resolve(self, action_type: ActionType) -> tuple[FactQuery, FactSource]:
        """
        Build the FactQuery for an action and pair it with its source.

        Raises:
            ConfigurationError: If the action is unregistered or its
                per-action settings (e.g. a data-source key) are missing
        """
        definition = self.get(action_type)
        query = definition.build_query()
        if query.unit != definition.rule.unit:
            raise ConfigurationError(
                f"Unit mismatch for {action_type.value}: "
                f"query reports {query.unit}, rule expects {definition.rule.unit}"
            )
        return query, definition.source


def _temperature_query(config: RelayConfig) -> Callable[[], FactQuery]:
    def build() -> FactQuery:
        if not config.weather_api_key:
            raise ConfigurationError(
                "OPENWEATHERMAP_API_KEY is not set",
                problems=["OPENWEATHERMAP_API_KEY is not set"],
            )
        return FactQuery(
            action_type=ActionType.TEMP_SEOUL_GT_15,
            source_id="openweathermap",
            url=config.weather_api_url,
            unit="celsius",
            extraction_path=("main", "temp"),
            params=(
                ("lat", str(config.weather_lat)),
                ("lon", str(config.weather_lon)),
                ("appid", config.weather_api_key),
                ("units", "metric"),
            ),
            secret_params=frozenset({"appid"}),
        )
    return build


def _transport_query(config: RelayConfig) -> Callable[[], FactQuery]:
    def build() -> FactQuery:
        if not config.transport_source_url:
            raise ConfigurationError(
                "TRANSPORT_SOURCE_URL is not set",
                problems=["TRANSPORT_SOURCE_URL is not set"],
            )
        return FactQuery(
            action_type=ActionType.SUSTAINABLE_TRANSPORT_KM,
            source_id="transport-log",
            url=config.transport_source_url,
            unit="km",
            extraction_path=("distanceKm",),
        )
    return build


def build_registry(
    config: RelayConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ActionRegistry:
    """The production action catalogue, wired from configuration."""
    return ActionRegistry([
        ActionDefinition(
            action_type=ActionType.TEMP_SEOUL_GT_15,
            description="Current temperature in Seoul is above the threshold",
            rule=PredicateRule(Comparison.GT, config.temp_threshold_celsius, "celsius"),
            source=HttpFactSource(http_client, timeout=config.fact_timeout),
            build_query=_temperature_query(config),
        ),
        ActionDefinition(
            action_type=ActionType.SUSTAINABLE_TRANSPORT_KM,
            description="Distance travelled by sustainable transport meets the minimum",
            rule=PredicateRule(Comparison.GTE, config.transport_min_distance_km, "km"),
            source=DeterministicFactSource(config.transport_fixed_distance_km),
            build_query=_transport_query(config),
        ),
    ])
