from __future__ import annotations

import logging
from typing import Any

from web3 import Web3

from chainsignals.config.settings import AppSettings
from chainsignals.services.signal_sync import ChainSignalRecord

logger = logging.getLogger(__name__)

SIGNALS_ABI: list[dict[str, Any]] = [
    {
        "name": "getSignalsCount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getSignalsRange",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "from", "type": "uint256"},
            {"name": "to", "type": "uint256"},
        ],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "trader", "type": "address"},
                    {"name": "strategy", "type": "string"},
                    {"name": "asset", "type": "string"},
                    {"name": "message", "type": "string"},
                    {"name": "target", "type": "uint8"},
                    {"name": "leverage", "type": "uint8"},
                    {"name": "weight", "type": "uint16"},
                    {"name": "timestamp", "type": "uint64"},
                ],
            }
        ],
    },
]


def _record_from_tuple(raw: Any) -> ChainSignalRecord:
    trader, strategy, asset, message, target, leverage, weight, timestamp = tuple(raw)
    return ChainSignalRecord(
        trader=str(trader),
        strategy=str(strategy),
        asset=str(asset),
        message=str(message or ""),
        target=int(target),
        leverage=int(leverage),
        weight=int(weight),
        timestamp=int(timestamp),
    )


class ChainSignalsClient:
    """Read-only view of the signals contract over HTTP JSON-RPC."""

    def __init__(self, rpc_url: str, contract_address: str, timeout_seconds: float = 20.0) -> None:
        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=SIGNALS_ABI,
        )

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ChainSignalsClient":
        return cls(
            settings.chain_rpc_url,
            settings.chain_signals_address,
            timeout_seconds=settings.chain_request_timeout_seconds,
        )

    def get_signals_count(self) -> int:
        return int(self._contract.functions.getSignalsCount().call())

    def get_signals_range(self, start: int, end: int) -> list[ChainSignalRecord]:
        if end <= start:
            return []
        raw = self._contract.functions.getSignalsRange(int(start), int(end)).call()
        records = [_record_from_tuple(item) for item in raw]
        logger.debug("event=chain_signals_read from=%s to=%s count=%s", start, end, len(records))
        return records
