"""
Canonical Observation Encoding

Deterministic serialization of a recorded observation, used as the
proofData of a direct-record ledger transaction. Anyone holding the
same observation can rebuild the exact bytes and compare them to what
the relayer put on-chain.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every output (first key when sorted)
2. Dictionary keys: sorted recursively
3. Nulls: omitted entirely
4. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
5. UUIDs: lowercase string
6. Enums: string value (not name)
7. Floats: written as their shortest round-trip decimal string
8. Bytes: 0x-prefixed lowercase hex
9. JSON output: no extra whitespace, sorted keys, ASCII only
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from web3 import Web3

from ..schemas.records import FactResult, SubmissionRecord


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


SERIALIZATION_VERSION = 1


def _serialize_value(value: Any, path: str = "") -> Any:
    if value is None:
        return None

    if isinstance(value, UUID):
        return str(value).lower()

    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise CanonicalSerializationError(f"Datetime at {path} is timezone-naive")
        utc_dt = value.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, bool):
        return value

    if isinstance(value, int):
        return value

    # repr() is the shortest string that round-trips, stable across platforms
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise CanonicalSerializationError(f"Non-finite float at {path}")
        return repr(value)

    if isinstance(value, Decimal):
        return str(value)

    if isinstance(value, str):
        return value

    if isinstance(value, bytes):
        return "0x" + value.hex()

    if isinstance(value, (list, tuple)):
        return [_serialize_value(v, f"{path}[{i}]") for i, v in enumerate(value)]

    if isinstance(value, dict):
        return _to_canonical_dict(value, path)

    raise CanonicalSerializationError(
        f"Cannot serialize {type(value).__name__} at {path}. "
        "Only JSON-compatible types are allowed."
    )


def _to_canonical_dict(data: dict, path: str = "") -> dict:
    result = {}
    for key in sorted(data.keys()):
        if not isinstance(key, str):
            raise CanonicalSerializationError(
                f"Dictionary key at {path} must be string, got {type(key).__name__}"
            )
        serialized = _serialize_value(data[key], f"{path}.{key}" if path else key)
        if serialized is not None:
            result[key] = serialized
    return result


def canonicalize(data: dict) -> str:
    """
    Convert a dict to its canonical JSON string.

    Raises:
        CanonicalSerializationError: If data cannot be deterministically serialized
    """
    if not isinstance(data, dict):
        raise CanonicalSerializationError(
            f"Top-level data must be a dict, got {type(data).__name__}"
        )
    canonical = _to_canonical_dict(data)
    canonical["__canon_v"] = SERIALIZATION_VERSION
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def observation_payload(record: SubmissionRecord, fact: FactResult) -> dict:
    """The observation a direct record vouches for."""
    return {
        "record_id": record.record_id,
        "user": record.user_address,
        "action_type": record.action_type,
        "action_type_id": record.action_type.b32,
        "timestamp": record.timestamp,
        "source_id": fact.source_id,
        "value": fact.value,
        "fetched_at": fact.fetched_at,
    }


def observation_proof(record: SubmissionRecord, fact: FactResult) -> bytes:
    """Canonical UTF-8 bytes of the observation, sent as ledger proofData."""
    return canonicalize(observation_payload(record, fact)).encode("ascii")


def observation_digest(record: SubmissionRecord, fact: FactResult) -> str:
    """keccak256 of the observation proof, 0x-prefixed."""
    return Web3.to_hex(Web3.keccak(observation_proof(record, fact)))
