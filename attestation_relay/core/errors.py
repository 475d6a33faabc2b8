"""
Relay exception hierarchy.

Every collaborator converts its library-level failures (httpx, web3)
into one of these before anything reaches the orchestrator.
The fact source is the exception: it reports failures as FactResult values.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for attestation relay errors."""
    pass


class ConfigurationError(RelayError):
    """Raised when required setup is missing or invalid."""

    def __init__(self, message: str, problems: Optional[list[str]] = None):
        super().__init__(message)
        self.problems = problems or []


class PredicateError(ConfigurationError):
    """Raised when an action has no rule or a fact value cannot be compared."""
    pass


class EncodingError(RelayError):
    """Base class for verifier preparation failures."""
    pass


class EncodingTransportError(EncodingError):
    """The verifier could not be reached or answered with a non-2xx status."""
    pass


class EncodingRejectedError(EncodingError):
    """The verifier answered, but refused or returned a malformed payload."""
    pass


class ChainSubmissionError(RelayError):
    """
    Raised when a transaction is rejected, reverted, or cannot be sent.

    broadcast is True when the signed transaction may have reached the
    node; such a failure must never be resubmitted with the same payload.
    """

    def __init__(
        self,
        message: str,
        *,
        broadcast: bool = False,
        tx_hash: Optional[str] = None,
        reverted: bool = False,
    ):
        super().__init__(message)
        self.broadcast = broadcast
        self.tx_hash = tx_hash
        self.reverted = reverted


class ProofError(RelayError):
    """Base class for data-availability layer proof lookups."""
    pass


class ProofUnavailableError(ProofError):
    """No finalised proof yet, or the DA layer could not be reached. Ask again later."""
    pass


class ProofRejectedError(ProofError):
    """The DA layer refused the lookup itself."""
    pass


class RequestInFlightError(RelayError):
    """Raised when the same (user, action type) pair is already being processed."""

    def __init__(self, key: tuple[str, str]):
        super().__init__(f"Request already in flight for {key[0]} / {key[1]}")
        self.key = key


class UnsupportedActionError(RelayError):
    """Raised when a request names an action type the relay does not support."""

    def __init__(self, action_type: str):
        super().__init__(f"Unsupported action type: {action_type}")
        self.action_type = action_type
