"""
Canonical Action Type Schema

An action type names a class of verifiable claim.
Its on-chain identity is content-addressed: keccak256 of the name.

Action types are append-only.
You can add more later, never rename or remove one -
the ledger contract has already recorded outcomes against its hash.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union

from web3 import Web3


class ActionType(str, Enum):
    """
    All supported action types.
    The value is the human-readable name that gets hashed.
    """
    TEMP_SEOUL_GT_15 = "TEMP_SEOUL_GT_15"                  # Seoul temperature above threshold
    SUSTAINABLE_TRANSPORT_KM = "SUSTAINABLE_TRANSPORT_KM"  # Distance travelled sustainably

    @property
    def b32(self) -> bytes:
        """The bytes32 identifier used by the ledger contract."""
        return action_type_id(self.value)

    @property
    def b32_hex(self) -> str:
        return "0x" + self.b32.hex()

    @classmethod
    def parse(cls, name: str) -> "ActionType":
        """
        Look up an action type by name.

        Raises:
            ValueError: If the name is not a supported action type
        """
        return cls(name.strip())


def action_type_id(name: str) -> bytes:
    """keccak256 of the UTF-8 action name."""
    return bytes(Web3.keccak(text=name))


class Comparison(str, Enum):
    """Comparison operators a predicate rule may use."""
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="

    def apply(self, value: float, threshold: float) -> bool:
        if self is Comparison.GT:
            return value > threshold
        if self is Comparison.GTE:
            return value >= threshold
        if self is Comparison.LT:
            return value < threshold
        return value <= threshold


@dataclass(frozen=True)
class PredicateRule:
    """
    The single threshold rule owned by one action type.

    The unit must match the unit declared by the action's FactQuery;
    no conversion is ever applied.
    """
    comparison: Comparison
    threshold: float
    unit: str

    def describe(self) -> str:
        return f"value {self.comparison.value} {self.threshold:g} {self.unit}"

    def to_dict(self) -> dict:
        return {
            "comparison": self.comparison.value,
            "threshold": self.threshold,
            "unit": self.unit,
        }


FactValue = Union[float, int, str]
