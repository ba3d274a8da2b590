"""
Ledger Log Source backed by a JSON-RPC node through web3.

Every call is bounded by the provider timeout and retried with backoff;
exhausted retries surface as LedgerQueryError. Logs and transactions are
normalized to plain dicts so nothing downstream depends on web3 types.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception

from src.indexer.abi import SCHEDULE_GETTER_ABI
from src.indexer.errors import LedgerQueryError
from src.utils.logger import logger
from src.utils.retry import RetryExhaustedError, retry_call


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


def _hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value)


def normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "address": str(log.get("address") or "").lower(),
        "blockNumber": _to_int(log.get("blockNumber")),
        "logIndex": _to_int(log.get("logIndex")),
        "transactionHash": _hex(log.get("transactionHash")) or "",
        "topics": [_to_bytes(t) for t in (log.get("topics") or [])],
        "data": _to_bytes(log.get("data")),
    }


class Web3LedgerClient:
    """The ledger capability the scanner, enrichment and pipeline consume."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 20.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        w3: Optional[Web3] = None,
    ):
        self.rpc_url = rpc_url
        self.max_retries = max_retries
        self.backoff = backoff
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._block_ts_cache: Dict[int, int] = {}

    def _call(self, name: str, func, *args, attempts: Optional[int] = None):
        try:
            return retry_call(
                func, *args,
                attempts=attempts or self.max_retries,
                backoff=self.backoff,
                name=f"rpc.{name}",
            )
        except RetryExhaustedError as e:
            raise LedgerQueryError(str(e)) from e.last_error

    def latest_block_height(self) -> int:
        return int(self._call("blockNumber", lambda: self.w3.eth.block_number))

    def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Union[str, Sequence[str], None] = None,
        attempts: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"fromBlock": from_block, "toBlock": to_block}
        if isinstance(address, str):
            params["address"] = to_checksum_address(address)
        elif address:
            params["address"] = [to_checksum_address(a) for a in address]
        raw = self._call("getLogs", self.w3.eth.get_logs, params, attempts=attempts)
        return [normalize_log(dict(log)) for log in raw]

    def get_block_timestamp(self, height: int) -> int:
        if height not in self._block_ts_cache:
            block = self._call("getBlock", self.w3.eth.get_block, height)
            self._block_ts_cache[height] = _to_int(block["timestamp"])
        return self._block_ts_cache[height]

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        tx = self._call("getTransaction", self.w3.eth.get_transaction, tx_hash)
        return {
            "hash": _hex(tx.get("hash")) or tx_hash.lower(),
            "from": str(tx.get("from") or "").lower(),
            "to": str(tx.get("to") or "").lower(),
            "value": _to_int(tx.get("value")),
            "blockNumber": _to_int(tx.get("blockNumber")) if tx.get("blockNumber") is not None else None,
        }

    def get_receipt(self, tx_hash: str) -> Dict[str, Any]:
        receipt = self._call("getReceipt", self.w3.eth.get_transaction_receipt, tx_hash)
        return {
            "status": _to_int(receipt.get("status")),
            "blockNumber": _to_int(receipt.get("blockNumber")),
        }

    def get_balance(self, address: str) -> int:
        return int(self._call("getBalance", self.w3.eth.get_balance, to_checksum_address(address)))

    def call_uint(self, address: str, getter_names: Iterable[str]) -> Optional[int]:
        """Call the first getter in ``getter_names`` that the contract answers."""
        contract = self.w3.eth.contract(address=to_checksum_address(address), abi=SCHEDULE_GETTER_ABI)
        for name in getter_names:
            fn = getattr(contract.functions, name)
            try:
                return int(self._call(f"call.{name}", fn().call, attempts=1))
            except LedgerQueryError as e:
                cause = e.__cause__
                if isinstance(cause, (ContractLogicError, BadFunctionCallOutput, Web3Exception, ValueError)):
                    logger.debug("LedgerClient: %s.%s() unavailable: %s", address, name, cause)
                    continue
                raise
        return None
