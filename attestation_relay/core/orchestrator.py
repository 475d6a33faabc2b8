"""
Attestation Orchestrator

Drives one (user, action type) request through the pipeline:

    Idle -> FetchingFact -> EvaluatingPredicate -> ConditionNotMet
                                                -> PreparingAttestation
                                                -> SubmittingToHub
                                                -> RecordingAction -> Done

Any step may end in Failed(reason). The orchestrator is the only place
that retries, and the only place that decides whether a failed hub step
still leads to a direct ledger record.

At most one orchestration per (user, action type) runs at a time.
A duplicate either fails fast with RequestInFlightError or joins the
running one and receives the same record, depending on policy.
Once started, an orchestration runs to a terminal state even if every
caller stops waiting; a signed transaction cannot be taken back.
"""

import asyncio
import time
from typing import Optional, Union

from ..config import InFlightPolicy, RelayConfig
from ..observability import get_logger, get_metrics, user_address_var
from ..schemas.actions import ActionType
from ..schemas.records import (
    EncodedAttestation,
    FactFailureKind,
    FactQuery,
    FactResult,
    FailureReason,
    OrchestrationState,
    SubmissionRecord,
    VerificationMode,
)
from ..db.store import RecordStore
from .canonical import observation_proof
from .chain import ChainSubmitter
from .encoder import AttestationRequestEncoder
from .errors import (
    ChainSubmissionError,
    ConfigurationError,
    EncodingRejectedError,
    EncodingTransportError,
    PredicateError,
    RequestInFlightError,
    UnsupportedActionError,
)
from .predicate import PredicateEvaluator
from .registry import ActionRegistry

logger = get_logger(__name__)

Key = tuple[str, str]


class InFlightRegistry:
    """
    Process-local map of running orchestrations, keyed by (user, action type).

    Claim and lookup happen without an intervening await, so on one event
    loop two requests can never both claim the same key.
    """

    def __init__(self):
        self._running: dict[Key, asyncio.Task] = {}

    def get(self, key: Key) -> Optional[asyncio.Task]:
        return self._running.get(key)

    def claim(self, key: Key, task: asyncio.Task) -> None:
        if key in self._running:
            raise RequestInFlightError(key)
        self._running[key] = task
        task.add_done_callback(lambda _t: self._release(key, task))

    def _release(self, key: Key, task: asyncio.Task) -> None:
        if self._running.get(key) is task:
            del self._running[key]

    def __len__(self) -> int:
        return len(self._running)

    def __contains__(self, key: Key) -> bool:
        return key in self._running


class AttestationOrchestrator:
    """
    Sequences fact source, predicate, verifier and chain for one request.

    Every collaborator is injected; nothing here opens a connection.
    encoder and submitter may be None on a misconfigured relay, in which
    case requests that reach them fail with ConfigurationError.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: ActionRegistry,
        evaluator: PredicateEvaluator,
        encoder: Optional[AttestationRequestEncoder],
        submitter: Optional[ChainSubmitter],
        store: Optional[RecordStore] = None,
    ):
        self.config = config
        self.registry = registry
        self.evaluator = evaluator
        self.encoder = encoder
        self.submitter = submitter
        self.store = store
        self.in_flight = InFlightRegistry()

    # =========================================================
    # ENTRY POINT
    # =========================================================

    async def run(self, user_address: str, action_type: Union[str, ActionType]) -> SubmissionRecord:
        """
        Run (or join) the orchestration for a (user, action type) pair.

        Returns the terminal SubmissionRecord. Technical failures are
        reported inside the record, not raised.

        Raises:
            UnsupportedActionError: If the action type is unknown; nothing external is contacted
            RequestInFlightError: If the pair is already running and the
                policy is reject, or a waiting duplicate ran out of time
        """
        action = self._parse_action(action_type)
        record = SubmissionRecord(user_address=user_address, action_type=action)
        key: Key = record.key
        metrics = get_metrics()

        running = self.in_flight.get(key)
        if running is not None:
            if self.config.in_flight_policy == InFlightPolicy.REJECT:
                metrics.in_flight_rejections += 1
                logger.info("Duplicate request rejected", action_type=action.value)
                raise RequestInFlightError(key)

            metrics.in_flight_joins += 1
            logger.info("Duplicate request joining running orchestration", action_type=action.value)
            try:
                return await asyncio.wait_for(
                    asyncio.shield(running), timeout=self.config.in_flight_wait_seconds
                )
            except asyncio.TimeoutError:
                raise RequestInFlightError(key) from None

        task = asyncio.ensure_future(self._orchestrate(record))
        self.in_flight.claim(key, task)
        return await asyncio.shield(task)

    def _parse_action(self, action_type: Union[str, ActionType]) -> ActionType:
        if isinstance(action_type, ActionType):
            action = action_type
        else:
            try:
                action = ActionType.parse(action_type)
            except ValueError:
                raise UnsupportedActionError(str(action_type)) from None
        if action not in self.registry:
            raise UnsupportedActionError(action.value)
        return action

    async def _orchestrate(self, record: SubmissionRecord) -> SubmissionRecord:
        user_address_var.set(record.user_address)
        started = time.perf_counter()
        logger.info(
            "Orchestration started",
            record_id=str(record.record_id),
            action_type=record.action_type.value,
        )
        try:
            await self._drive(record)
        except Exception:
            logger.exception("Orchestration crashed", record_id=str(record.record_id))
            if not record.state.is_terminal:
                record.fail(FailureReason.INTERNAL_ERROR)
        finally:
            latency_ms = (time.perf_counter() - started) * 1000
            outcome = record.outcome.value if record.outcome else "unknown"
            get_metrics().record_outcome(outcome, latency_ms)
            if self.store is not None:
                self.store.add(record)
            logger.info(
                "Orchestration finished",
                record_id=str(record.record_id),
                state=record.state.value,
                outcome=outcome,
                failure_reason=record.failure_reason.value if record.failure_reason else None,
                latency_ms=round(latency_ms, 2),
            )
        return record

    # =========================================================
    # STATE MACHINE
    # =========================================================

    async def _drive(self, record: SubmissionRecord) -> None:
        action = record.action_type

        # Idle: everything this request will need must be present up front
        try:
            query, source = self.registry.resolve(action)
            self.evaluator.rule_for(action)
            if self.encoder is None:
                raise ConfigurationError("Verifier is not configured")
            if self.submitter is None:
                raise ConfigurationError("Chain submitter is not configured")
            fee_wei = self.config.fee_wei
        except ConfigurationError as e:
            logger.error("Request cannot run: configuration incomplete", error=str(e))
            record.fail(FailureReason.CONFIGURATION_ERROR)
            return

        record.transition(OrchestrationState.FETCHING_FACT)
        fact = await self._fetch(query, source)
        record.source_id = fact.source_id
        if not fact.success:
            logger.warning(
                "Fact source failed",
                url=query.safe_url,
                reason=fact.reason.value if fact.reason else None,
                detail=fact.detail,
            )
            record.fail(FailureReason.SOURCE_UNAVAILABLE)
            return
        record.value = fact.value

        record.transition(OrchestrationState.EVALUATING_PREDICATE)
        try:
            holds = self.evaluator.evaluate(action, fact.value)
        except PredicateError as e:
            logger.warning("Fact value unusable", error=str(e))
            record.fail(FailureReason.SOURCE_UNAVAILABLE)
            return
        if not holds:
            logger.info(
                "Condition not met",
                value=fact.value,
                rule=self.evaluator.rule_for(action).describe(),
            )
            record.transition(OrchestrationState.CONDITION_NOT_MET)
            return

        hub_tx_hash = await self._attest(record, query, fee_wei)
        if record.state.is_terminal:
            return

        if hub_tx_hash is not None:
            verification = VerificationMode.FDC
            proof_data = bytes.fromhex(hub_tx_hash[2:])
        else:
            verification = VerificationMode.UNVERIFIED_DIRECT
            proof_data = observation_proof(record, fact)
            logger.warning(
                "Recording without hub attestation",
                record_id=str(record.record_id),
                verification=verification.value,
            )

        record.transition(OrchestrationState.RECORDING_ACTION)
        try:
            record_tx_hash = await asyncio.wait_for(
                self.submitter.record_action(
                    record.user_address, action, record.timestamp, proof_data
                ),
                timeout=self.config.chain_submit_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Ledger record timed out", record_id=str(record.record_id))
            record.fail(FailureReason.RECORDING_FAILED)
            return
        except ChainSubmissionError as e:
            logger.error(
                "Ledger record failed",
                record_id=str(record.record_id),
                error=str(e),
                broadcast=e.broadcast,
                hub_tx_hash=record.hub_tx_hash,
            )
            record.fail(FailureReason.RECORDING_FAILED)
            return

        record.record_tx_hash = record_tx_hash
        record.verification = verification
        get_metrics().record_ledger_record(direct=verification == VerificationMode.UNVERIFIED_DIRECT)
        record.transition(OrchestrationState.DONE)

    async def _fetch(self, query: FactQuery, source) -> FactResult:
        try:
            return await asyncio.wait_for(source.fetch(query), timeout=self.config.fact_timeout)
        except asyncio.TimeoutError:
            return FactResult.failed(query.source_id, FactFailureKind.TIMEOUT, "fetch timed out")

    async def _attest(self, record: SubmissionRecord, query: FactQuery, fee_wei: int) -> Optional[str]:
        """
        Prepare and submit to the hub, re-preparing on a retryable hub failure.

        Returns the hub tx hash, or None when the hub step failed and the
        direct-record fallback applies. Leaves the record terminal when the
        request must stop here.
        """
        hub_retries_left = self.config.hub_retry_attempts

        while True:
            record.transition(OrchestrationState.PREPARING_ATTESTATION)
            encoded = await self._prepare(record, query)
            if encoded is None:
                return None

            record.transition(OrchestrationState.SUBMITTING_TO_HUB)
            try:
                tx_hash = await self._submit(record, encoded, fee_wei)
                return tx_hash
            except ChainSubmissionError as e:
                error = e

            logger.warning(
                "Hub submission failed",
                record_id=str(record.record_id),
                error=str(error),
                broadcast=error.broadcast,
                reverted=error.reverted,
                tx_hash=error.tx_hash,
            )
            if error.tx_hash:
                record.failed_hub_tx_hash = error.tx_hash

            # A fresh request is only safe when nothing can have reached the chain
            if not error.broadcast and hub_retries_left > 0:
                hub_retries_left -= 1
                logger.info("Retrying with a fresh attestation request", retries_left=hub_retries_left)
                continue

            if self.config.direct_record_fallback:
                return None
            record.fail(FailureReason.HUB_SUBMISSION_FAILED)
            return None

    async def _prepare(self, record: SubmissionRecord, query: FactQuery) -> Optional[EncodedAttestation]:
        attempts = 1 + max(self.config.verifier_retry_attempts, 0)
        for attempt in range(1, attempts + 1):
            try:
                encoded = await asyncio.wait_for(
                    self.encoder.prepare(self.config.attestation_type, self.config.source_id, query),
                    timeout=self.config.verifier_timeout,
                )
            except EncodingRejectedError as e:
                logger.warning("Verifier rejected request", error=str(e))
                record.fail(FailureReason.VERIFIER_REJECTED)
                return None
            except (EncodingTransportError, asyncio.TimeoutError) as e:
                logger.warning(
                    "Verifier unreachable",
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e) or type(e).__name__,
                )
                if attempt < attempts:
                    get_metrics().verifier_retries += 1
                    continue
                record.fail(FailureReason.VERIFIER_UNREACHABLE)
                return None

            record.attestation_request_ids.append(encoded.request_id)
            return encoded
        return None

    async def _submit(self, record: SubmissionRecord, encoded: EncodedAttestation, fee_wei: int) -> str:
        try:
            tx_hash = await asyncio.wait_for(
                self.submitter.submit_to_hub(encoded, fee_wei),
                timeout=self.config.chain_submit_timeout,
            )
        except asyncio.TimeoutError:
            raise ChainSubmissionError("Hub submission timed out", broadcast=True) from None

        get_metrics().record_hub_submission(fee_wei)

        if self.config.await_hub_confirmation:
            try:
                receipt = await asyncio.wait_for(
                    self.submitter.await_confirmation(tx_hash, self.config.chain_confirm_timeout),
                    timeout=self.config.chain_confirm_timeout + 5,
                )
            except asyncio.TimeoutError:
                raise ChainSubmissionError(
                    "Hub confirmation timed out", broadcast=True, tx_hash=tx_hash
                ) from None
            if not receipt.succeeded:
                raise ChainSubmissionError(
                    "Hub transaction reverted", broadcast=True, tx_hash=tx_hash, reverted=True
                )

        record.hub_tx_hash = tx_hash
        record.fee_wei = fee_wei
        record.attestation_request_hex = encoded.payload_hex
        if self.config.await_hub_confirmation and self.submitter.tracks_voting_rounds:
            record.voting_round_id = await self._voting_round(record)
        return tx_hash

    async def _voting_round(self, record: SubmissionRecord) -> Optional[int]:
        """The round the confirmed request landed in; None if it cannot be read."""
        try:
            return await asyncio.wait_for(
                self.submitter.current_voting_round(),
                timeout=self.config.chain_submit_timeout,
            )
        except (ChainSubmissionError, asyncio.TimeoutError) as e:
            logger.warning(
                "Voting round unavailable",
                record_id=str(record.record_id),
                error=str(e) or type(e).__name__,
            )
            return None
