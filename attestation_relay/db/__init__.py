"""
Record history for the attestation relay.

Operational history only; durable outcomes live on the ledger contract.
"""

from .store import RecordStore, InMemoryRecordStore

__all__ = ["RecordStore", "InMemoryRecordStore"]
