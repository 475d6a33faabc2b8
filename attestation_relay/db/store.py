"""
Submission Record Store

Operational history of finished orchestrations. Every terminal
SubmissionRecord is appended here, including unmet conditions and
failures, so operators can see what the relay did and why.

This is not the system of record. Durable outcomes live on the ledger
contract; this store is bounded and forgets the oldest entries.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from threading import Lock
from typing import Optional
from uuid import UUID

from ..schemas.records import SubmissionRecord


class RecordStore(ABC):
    """Interface for submission record history."""

    @abstractmethod
    def add(self, record: SubmissionRecord) -> None:
        pass

    @abstractmethod
    def get(self, record_id: UUID) -> Optional[SubmissionRecord]:
        pass

    @abstractmethod
    def list_for_user(self, user_address: str, limit: int = 50) -> list[SubmissionRecord]:
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class InMemoryRecordStore(RecordStore):
    """
    Bounded in-memory implementation of RecordStore.

    Suitable for single-instance deployments; nothing survives a restart.
    """

    def __init__(self, limit: int = 1000):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._records: "OrderedDict[UUID, SubmissionRecord]" = OrderedDict()
        self._lock = Lock()

    def add(self, record: SubmissionRecord) -> None:
        """Append a record, evicting the oldest once the limit is reached."""
        with self._lock:
            self._records[record.record_id] = record
            self._records.move_to_end(record.record_id)
            while len(self._records) > self._limit:
                self._records.popitem(last=False)

    def get(self, record_id: UUID) -> Optional[SubmissionRecord]:
        with self._lock:
            return self._records.get(record_id)

    def list_for_user(self, user_address: str, limit: int = 50) -> list[SubmissionRecord]:
        """A user's records, newest first. Address comparison is case-insensitive."""
        wanted = user_address.lower()
        with self._lock:
            matches = [
                r for r in reversed(self._records.values())
                if r.user_address.lower() == wanted
            ]
        return matches[:limit]

    def count(self) -> int:
        with self._lock:
            return len(self._records)
