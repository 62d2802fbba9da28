"""Ledger client: typed reads and signed writes against the market contract.

web3's HTTP provider is synchronous; every RPC is pushed onto a worker
thread with ``asyncio.to_thread`` so the event loop never blocks on the
node.
"""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

import bittensor as bt
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from sdmarket.base.config import LedgerSettings
from sdmarket.base.errors import (
    ConfigError,
    ConfirmationTimeoutError,
    LedgerConnectionError,
    NotInitializedError,
    SignerMissingError,
    TransactionRevertedError,
)

from .abi import EVENT_NAMES, MARKET_ABI
from .models import LedgerEvent, LedgerRequest, LedgerSubmission, TxHandle, TxReceipt


def _event_signature(name: str) -> str:
    for item in MARKET_ABI:
        if item["type"] == "event" and item["name"] == name:
            types = ",".join(p["type"] for p in item["inputs"])
            return f"{name}({types})"
    raise KeyError(name)


EVENT_TOPICS: dict[str, str] = {
    Web3.to_hex(Web3.keccak(text=_event_signature(name))): name
    for name in EVENT_NAMES
}


class LedgerClient:
    """Owns the node connection, the contract handle and the optional signer."""

    def __init__(self, settings: LedgerSettings, web3: Web3 | None = None):
        self.settings = settings
        self._w3 = web3
        self._contract: Any = None
        self._account: Any = None
        self._initialized = False
        self._nonce_lock = asyncio.Lock()

    # -- Lifecycle --

    async def initialize(self) -> None:
        if not self.settings.rpc_url:
            raise ConfigError("ledger rpc_url is not configured")
        if not self.settings.contract_address:
            raise ConfigError("ledger contract_address is not configured")

        if self._w3 is None:
            self._w3 = Web3(Web3.HTTPProvider(self.settings.rpc_url))

        try:
            connected = await asyncio.to_thread(self._w3.is_connected)
            if not connected:
                raise LedgerConnectionError(f"ledger endpoint unreachable: {self.settings.rpc_url}")
            chain_id = await asyncio.to_thread(lambda: self._w3.eth.chain_id)
        except (OSError, Web3Exception) as e:
            raise LedgerConnectionError(f"ledger endpoint unreachable: {e}") from e

        try:
            address = Web3.to_checksum_address(self.settings.contract_address)
        except ValueError as e:
            raise ConfigError(f"invalid contract address: {self.settings.contract_address}") from e
        self._contract = self._w3.eth.contract(address=address, abi=MARKET_ABI)

        if self.settings.signer_private_key:
            try:
                self._account = self._w3.eth.account.from_key(self.settings.signer_private_key)
            except ValueError as e:
                raise ConfigError("invalid signer private key") from e

        self._initialized = True
        bt.logging.info({
            "ledger_client": {
                "status": "initialized",
                "chain_id": chain_id,
                "contract": address,
                "signer": self.signer_address,
            }
        })

    async def close(self) -> None:
        self._initialized = False
        bt.logging.debug({"ledger_client": "closed"})

    def ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("ledger client not initialized")

    @property
    def signer_address(self) -> str | None:
        return self._account.address if self._account is not None else None

    @property
    def has_signer(self) -> bool:
        return self._account is not None

    # -- Reads --

    async def block_number(self) -> int:
        self.ensure_initialized()
        return int(await asyncio.to_thread(lambda: self._w3.eth.block_number))

    async def read_request(self, request_id: int) -> LedgerRequest:
        """Canonical read pinned to the current head."""
        self.ensure_initialized()
        block = await self.block_number()
        raw = await asyncio.to_thread(
            self._contract.functions.requests(int(request_id)).call,
            block_identifier=block,
        )
        return LedgerRequest.from_tuple(raw, request_id, block)

    async def read_submission(self, submission_id: int) -> LedgerSubmission:
        self.ensure_initialized()
        block = await self.block_number()
        raw = await asyncio.to_thread(
            self._contract.functions.submissions(int(submission_id)).call,
            block_identifier=block,
        )
        return LedgerSubmission.from_tuple(raw, submission_id, block)

    async def buyer_request_ids(self, buyer: str) -> list[int]:
        self.ensure_initialized()
        ids = await asyncio.to_thread(
            self._contract.functions.getBuyerRequests(Web3.to_checksum_address(buyer)).call
        )
        return [int(i) for i in ids]

    async def seller_submission_ids(self, seller: str) -> list[int]:
        self.ensure_initialized()
        ids = await asyncio.to_thread(
            self._contract.functions.getSellerSubmissions(Web3.to_checksum_address(seller)).call
        )
        return [int(i) for i in ids]

    async def total_escrowed(self) -> str:
        self.ensure_initialized()
        total = await asyncio.to_thread(self._contract.functions.totalEscrowed().call)
        return str(int(total))

    async def get_events(self, from_block: int, to_block: int) -> list[LedgerEvent]:
        """Decoded contract events in ``[from_block, to_block]``, ledger order."""
        self.ensure_initialized()
        logs = await asyncio.to_thread(
            self._w3.eth.get_logs,
            {"address": self._contract.address, "fromBlock": from_block, "toBlock": to_block},
        )
        events = self._decode_logs(logs)
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    # -- Writes --

    async def submit(self, call: str, args: Sequence[Any], value: int = 0) -> TxHandle:
        """Sign and broadcast a contract call. Returns once the node accepts it."""
        self.ensure_initialized()
        if self._account is None:
            raise SignerMissingError(f"no signer configured, cannot call {call}")

        fn = getattr(self._contract.functions, call)(*args)
        sender = self._account.address
        async with self._nonce_lock:
            nonce = await asyncio.to_thread(self._w3.eth.get_transaction_count, sender, "pending")
            try:
                tx = await asyncio.to_thread(
                    fn.build_transaction, {"from": sender, "nonce": nonce, "value": int(value)},
                )
            except Web3Exception as e:
                raise TransactionRevertedError(f"{call} rejected during gas estimation: {e}") from e
            signed = self._account.sign_transaction(tx)
            raw_hash = await asyncio.to_thread(self._w3.eth.send_raw_transaction, signed.raw_transaction)

        handle = TxHandle(tx_hash=Web3.to_hex(raw_hash), call=call, sender=sender)
        bt.logging.info({"ledger_tx_sent": {"call": call, "tx_hash": handle.tx_hash, "nonce": nonce}})
        return handle

    async def await_confirmation(
        self,
        handle: TxHandle,
        confirmations: int | None = None,
        timeout: float | None = None,
    ) -> TxReceipt:
        """Block until the tx has ``confirmations`` blocks on top of it.

        Expiry does not mean the tx is dropped: it may still be mined, so
        callers keep the handle for reconciliation.
        """
        self.ensure_initialized()
        if confirmations is None:
            confirmations = self.settings.confirmations
        if timeout is None:
            timeout = self.settings.confirmation_timeout
        poll = self.settings.receipt_poll_interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            raw = await asyncio.to_thread(
                self._w3.eth.wait_for_transaction_receipt,
                handle.tx_hash,
                timeout=timeout,
                poll_latency=poll,
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(
                f"{handle.call} not mined within {timeout}s", tx_hash=handle.tx_hash,
            ) from e

        receipt = self._to_receipt(raw)
        if not receipt.succeeded:
            raise TransactionRevertedError(f"{handle.call} reverted", tx_hash=handle.tx_hash)

        while True:
            head = await self.block_number()
            if head - receipt.block_number + 1 >= confirmations:
                break
            if loop.time() >= deadline:
                raise ConfirmationTimeoutError(
                    f"{handle.call} mined but only {head - receipt.block_number + 1}/"
                    f"{confirmations} confirmations within {timeout}s",
                    tx_hash=handle.tx_hash,
                )
            await asyncio.sleep(poll)

        bt.logging.info({
            "ledger_tx_confirmed": {
                "call": handle.call,
                "tx_hash": handle.tx_hash,
                "block": receipt.block_number,
                "events": [e.name.value for e in receipt.events],
            }
        })
        return receipt

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Receipt for a previously submitted tx, or None if not yet mined."""
        self.ensure_initialized()
        try:
            raw = await asyncio.to_thread(self._w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        return self._to_receipt(raw)

    # -- Decoding --

    def _to_receipt(self, raw: Any) -> TxReceipt:
        return TxReceipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            block_number=int(raw["blockNumber"]),
            status=int(raw["status"]),
            gas_used=int(raw.get("gasUsed", 0)),
            events=self._decode_logs(raw.get("logs", [])),
        )

    def _decode_logs(self, logs: Sequence[Any]) -> list[LedgerEvent]:
        events: list[LedgerEvent] = []
        contract_address = str(self._contract.address).lower()
        for log in logs:
            topics = log.get("topics") or []
            if not topics or str(log.get("address", "")).lower() != contract_address:
                continue
            name = EVENT_TOPICS.get(Web3.to_hex(topics[0]))
            if name is None:
                continue
            try:
                decoded = getattr(self._contract.events, name)().process_log(log)
            except (Web3Exception, ValueError, TypeError) as e:
                bt.logging.debug({"ledger_log_skipped": {"event": name, "error": str(e)}})
                continue
            events.append(LedgerEvent.from_decoded(
                name=name,
                args=dict(decoded["args"]),
                tx_hash=Web3.to_hex(decoded["transactionHash"]),
                block_number=int(decoded["blockNumber"]),
                log_index=int(decoded["logIndex"]),
            ))
        return events


__all__ = ["EVENT_TOPICS", "LedgerClient"]
