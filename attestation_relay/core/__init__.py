# Core relay services
from .errors import (
    RelayError,
    ConfigurationError,
    PredicateError,
    EncodingError,
    EncodingTransportError,
    EncodingRejectedError,
    ChainSubmissionError,
    ProofError,
    ProofUnavailableError,
    ProofRejectedError,
    RequestInFlightError,
    UnsupportedActionError,
)
from .fact_source import FactSource, HttpFactSource, DeterministicFactSource
from .predicate import PredicateEvaluator
from .encoder import AttestationRequestEncoder
from .chain import ChainSubmitter
from .proofs import ProofClient
from .canonical import canonicalize, observation_proof, CanonicalSerializationError

__all__ = [
    "RelayError",
    "ConfigurationError",
    "PredicateError",
    "EncodingError",
    "EncodingTransportError",
    "EncodingRejectedError",
    "ChainSubmissionError",
    "ProofError",
    "ProofUnavailableError",
    "ProofRejectedError",
    "RequestInFlightError",
    "UnsupportedActionError",
    "FactSource",
    "HttpFactSource",
    "DeterministicFactSource",
    "PredicateEvaluator",
    "AttestationRequestEncoder",
    "ChainSubmitter",
    "ProofClient",
    "canonicalize",
    "observation_proof",
    "CanonicalSerializationError",
]
