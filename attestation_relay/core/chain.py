"""
Chain Submitter

Signs and sends transactions to the two contracts the relay talks to:

- the attestation hub:  requestAttestation(bytes) payable
- the action ledger:    recordVerifiedAction(address, bytes32, uint256, bytes)

and, when configured, reads the open voting round from the systems manager.

Submission and confirmation are separate steps. submit_to_hub() and
record_action() return as soon as the node accepts the transaction into
its pool; await_confirmation() is an optional second call.

The submitter never resubmits. Every failure surfaces as a
ChainSubmissionError whose `broadcast` flag says whether the signed
transaction may have reached the node.
"""

import asyncio
from typing import Any, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception, Web3RPCError

from ..observability import get_logger
from ..schemas.actions import ActionType
from ..schemas.records import EncodedAttestation, Receipt
from .errors import ChainSubmissionError, ConfigurationError

logger = get_logger(__name__)


HUB_ABI = [
    {
        "type": "function",
        "name": "requestAttestation",
        "stateMutability": "payable",
        "inputs": [{"name": "_data", "type": "bytes", "internalType": "bytes"}],
        "outputs": [],
    },
]

LEDGER_ABI = [
    {
        "type": "function",
        "name": "recordVerifiedAction",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address", "internalType": "address"},
            {"name": "actionType", "type": "bytes32", "internalType": "bytes32"},
            {"name": "timestamp", "type": "uint256", "internalType": "uint256"},
            {"name": "proofData", "type": "bytes", "internalType": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "isActionVerified",
        "stateMutability": "view",
        "inputs": [
            {"name": "user", "type": "address", "internalType": "address"},
            {"name": "actionType", "type": "bytes32", "internalType": "bytes32"},
            {"name": "requiredTimestamp", "type": "uint256", "internalType": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool", "internalType": "bool"}],
    },
    {
        "type": "function",
        "name": "lastActionTimestamp",
        "stateMutability": "view",
        "inputs": [
            {"name": "", "type": "address", "internalType": "address"},
            {"name": "", "type": "bytes32", "internalType": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "uint256", "internalType": "uint256"}],
    },
]

SYSTEMS_MANAGER_ABI = [
    {
        "type": "function",
        "name": "getCurrentVotingEpochId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint32", "internalType": "uint32"}],
    },
]

# Headroom over the node's gas estimate
GAS_MARGIN_PERCENT = 20

_SEND_ERRORS = (Web3Exception, OSError, ValueError)


class ChainSubmitter:
    """
    Owns one signing account and the contract handles.

    Nonce allocation and broadcast are serialized per submitter, so
    concurrent orchestrations for different users never race on a nonce.
    The send lock is held until the broadcast thread has returned, even
    when the awaiting caller gave up first.
    """

    def __init__(
        self,
        w3: Web3,
        private_key: str,
        hub_address: str,
        ledger_address: str,
        chain_id: int,
        systems_manager_address: Optional[str] = None,
    ):
        self._w3 = w3
        self._account = Account.from_key(private_key)
        self._chain_id = chain_id
        self._hub = w3.eth.contract(address=Web3.to_checksum_address(hub_address), abi=HUB_ABI)
        self._ledger = w3.eth.contract(
            address=Web3.to_checksum_address(ledger_address), abi=LEDGER_ABI
        )
        self._systems_manager = None
        if systems_manager_address:
            self._systems_manager = w3.eth.contract(
                address=Web3.to_checksum_address(systems_manager_address),
                abi=SYSTEMS_MANAGER_ABI,
            )
        self._send_lock = asyncio.Lock()
        # Next nonce this process may use; only touched while the send lock is held
        self._next_nonce: Optional[int] = None

    @classmethod
    def from_config(cls, config) -> "ChainSubmitter":
        """
        Build a submitter from RelayConfig.

        Raises:
            ConfigurationError: If the chain settings are incomplete
        """
        missing = [
            name for name, value in (
                ("COSTON2_RPC_URL", config.rpc_url),
                ("PROVIDER_PRIVATE_KEY", config.private_key),
                ("FDC_HUB_ADDRESS", config.hub_address),
                ("USER_ACTIONS_ADDRESS", config.ledger_address),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Chain submitter is not configured: " + ", ".join(missing),
                problems=[f"{name} is not set" for name in missing],
            )
        w3 = Web3(Web3.HTTPProvider(
            config.rpc_url,
            request_kwargs={"timeout": config.chain_submit_timeout},
        ))
        return cls(
            w3,
            private_key=config.private_key,
            hub_address=config.hub_address,
            ledger_address=config.ledger_address,
            chain_id=config.chain_id,
            systems_manager_address=config.systems_manager_address,
        )

    @property
    def address(self) -> str:
        """Checksummed address of the signing account."""
        return self._account.address

    @property
    def hub_address(self) -> str:
        return self._hub.address

    @property
    def ledger_address(self) -> str:
        return self._ledger.address

    def is_connected(self) -> bool:
        return bool(self._w3.is_connected())

    # =========================================================
    # SUBMISSION
    # =========================================================

    async def submit_to_hub(self, encoded: EncodedAttestation, fee_wei: int) -> str:
        """
        Pay the fee and forward an encoded attestation request to the hub.

        The payload is claimed before anything is sent; a second call with
        the same EncodedAttestation fails without touching the chain.

        Returns:
            The transaction hash, once the node has accepted it

        Raises:
            ChainSubmissionError: If the call would revert, is rejected, or
                the node could not be reached
        """
        try:
            encoded.mark_submitted()
        except RuntimeError as e:
            raise ChainSubmissionError(str(e)) from e

        fn = self._hub.functions.requestAttestation(encoded.payload)
        tx_hash = await self._send(fn, value=fee_wei, label="hub")
        logger.info(
            "Hub attestation requested",
            tx_hash=tx_hash,
            request_id=str(encoded.request_id),
            fee_wei=str(fee_wei),
        )
        return tx_hash

    async def record_action(
        self,
        user: str,
        action_type: ActionType,
        timestamp: int,
        proof_data: bytes,
    ) -> str:
        """
        Record an outcome on the user-action ledger.

        Independent of whether a hub submission happened for this attempt.

        Raises:
            ChainSubmissionError: As for submit_to_hub()
        """
        try:
            user = Web3.to_checksum_address(user)
        except ValueError as e:
            raise ChainSubmissionError(f"Invalid user address: {user}") from e

        fn = self._ledger.functions.recordVerifiedAction(
            user, action_type.b32, timestamp, proof_data
        )
        tx_hash = await self._send(fn, value=0, label="ledger")
        logger.info(
            "Ledger action recorded",
            tx_hash=tx_hash,
            action_type=action_type.value,
            timestamp=timestamp,
        )
        return tx_hash

    async def await_confirmation(self, tx_hash: str, timeout: float) -> Receipt:
        """
        Wait for a submitted transaction to be mined.

        A mined-but-reverted transaction is returned as Receipt(succeeded=False).

        Raises:
            ChainSubmissionError: If no receipt arrives within the timeout
        """
        try:
            receipt = await asyncio.to_thread(
                self._w3.eth.wait_for_transaction_receipt, tx_hash, timeout=timeout
            )
        except TimeExhausted as e:
            raise ChainSubmissionError(
                f"No receipt for {tx_hash} after {timeout}s",
                broadcast=True,
                tx_hash=tx_hash,
            ) from e
        except _SEND_ERRORS as e:
            raise ChainSubmissionError(
                f"Receipt lookup failed for {tx_hash} ({type(e).__name__})",
                broadcast=True,
                tx_hash=tx_hash,
            ) from e

        succeeded = receipt.get("status") == 1
        if not succeeded:
            logger.warning("Transaction reverted", tx_hash=tx_hash)
        return Receipt(
            tx_hash=tx_hash,
            succeeded=succeeded,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )

    # =========================================================
    # LEDGER QUERIES
    # =========================================================

    async def is_action_verified(
        self,
        user: str,
        action_type: ActionType,
        required_timestamp: int = 0,
    ) -> bool:
        """
        Ask the ledger whether the user has a recorded action at or after a timestamp.

        Raises:
            ChainSubmissionError: If the view call fails
        """
        fn = self._ledger.functions.isActionVerified(
            Web3.to_checksum_address(user), action_type.b32, required_timestamp
        )
        return bool(await self._call(fn))

    async def last_action_timestamp(self, user: str, action_type: ActionType) -> int:
        fn = self._ledger.functions.lastActionTimestamp(
            Web3.to_checksum_address(user), action_type.b32
        )
        return int(await self._call(fn))

    @property
    def tracks_voting_rounds(self) -> bool:
        return self._systems_manager is not None

    async def current_voting_round(self) -> int:
        """
        The attestation voting round currently open on the systems manager.

        Raises:
            ChainSubmissionError: If no systems manager is configured or the call fails
        """
        if self._systems_manager is None:
            raise ChainSubmissionError("No systems manager contract configured")
        return int(await self._call(self._systems_manager.functions.getCurrentVotingEpochId()))

    # =========================================================
    # INTERNALS
    # =========================================================

    async def _call(self, fn) -> Any:
        try:
            return await asyncio.to_thread(fn.call)
        except _SEND_ERRORS as e:
            raise ChainSubmissionError(f"Contract query failed ({type(e).__name__})") from e

    def _build(self, fn, value: int) -> dict:
        sender = self._account.address
        gas = fn.estimate_gas({"from": sender, "value": value})
        pending = self._w3.eth.get_transaction_count(sender, "pending")
        nonce = max(pending, self._next_nonce or 0)
        return fn.build_transaction({
            "from": sender,
            "value": value,
            "chainId": self._chain_id,
            "nonce": nonce,
            "gas": gas * (100 + GAS_MARGIN_PERCENT) // 100,
            "gasPrice": self._w3.eth.gas_price,
        })

    def _build_sign_send(self, fn, value: int, label: str) -> str:
        """Build, sign and broadcast in one worker thread. Caller holds the send lock."""
        try:
            tx = self._build(fn, value)
        except ContractLogicError as e:
            logger.warning(f"{label} transaction would revert", error=str(e)[:200])
            raise ChainSubmissionError(
                f"{label} transaction would revert", reverted=True
            ) from e
        except _SEND_ERRORS as e:
            logger.warning(f"{label} transaction could not be built", error=type(e).__name__)
            raise ChainSubmissionError(
                f"{label} transaction could not be built ({type(e).__name__})"
            ) from e

        signed = self._account.sign_transaction(tx)
        tx_hash = Web3.to_hex(signed.hash)
        nonce = tx["nonce"]
        self._next_nonce = nonce + 1

        try:
            self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Web3RPCError as e:
            # Refused outright, so the nonce is still free
            self._next_nonce = nonce
            logger.warning(f"{label} transaction rejected by node", tx_hash=tx_hash, error=str(e)[:200])
            raise ChainSubmissionError(
                f"{label} transaction rejected by node", tx_hash=tx_hash
            ) from e
        except _SEND_ERRORS as e:
            # The node may have received it; the outcome is unknown
            logger.error(f"{label} broadcast outcome unknown", tx_hash=tx_hash, error=type(e).__name__)
            raise ChainSubmissionError(
                f"{label} broadcast failed ({type(e).__name__})",
                broadcast=True,
                tx_hash=tx_hash,
            ) from e

        logger.debug(f"{label} transaction broadcast", tx_hash=tx_hash, nonce=nonce)
        return tx_hash

    async def _send(self, fn, *, value: int, label: str) -> str:
        await self._send_lock.acquire()
        try:
            work = asyncio.ensure_future(
                asyncio.to_thread(self._build_sign_send, fn, value, label)
            )
        except BaseException:
            self._send_lock.release()
            raise
        work.add_done_callback(self._finish_send)
        # A cancelled caller stops waiting; the thread and the lock carry on
        return await asyncio.shield(work)

    def _finish_send(self, work: "asyncio.Future[str]") -> None:
        self._send_lock.release()
        if not work.cancelled() and work.exception() is not None:
            logger.debug("Send finished with error", error=type(work.exception()).__name__)
