"""
Chain feed implementation using web3.py.

Reads FeesCollected logs from the fee collector contract over JSON-RPC:
- eth_blockNumber for the head height
- eth_getLogs filtered by contract address and event topic
- eth_getBlockByNumber for block timestamps
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BlockNotFound

from .abi import FEE_COLLECTOR_ABI, FEES_COLLECTED_SIGNATURE
from .base import DecodedLog, DecodeError, RawLog, UpstreamFeed

logger = logging.getLogger(__name__)


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower()
    return AsyncWeb3.to_hex(value).lower()


class Web3Feed(UpstreamFeed):
    """JSON-RPC feed for one fee collector contract.

    The AsyncWeb3 instance is the transport; ``reconnect`` discards it and
    builds a fresh one.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        timeout: float = 30.0,
    ):
        """Initialize the feed.

        Args:
            rpc_url: JSON-RPC endpoint URL
            contract_address: Fee collector contract address
            timeout: Per-request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self.timeout = timeout
        self.event_topic = AsyncWeb3.to_hex(AsyncWeb3.keccak(text=FEES_COLLECTED_SIGNATURE))

        self._w3 = self._build_client()
        self._contract = self._w3.eth.contract(
            address=self.contract_address,
            abi=FEE_COLLECTOR_ABI,
        )

    @property
    def name(self) -> str:
        return "web3"

    def _build_client(self) -> AsyncWeb3:
        # No provider-level retries: EventSource owns retry timing
        provider = AsyncHTTPProvider(
            self.rpc_url,
            request_kwargs={"timeout": self.timeout},
            exception_retry_configuration=None,
        )
        return AsyncWeb3(provider)

    async def current_height(self) -> int:
        height = await self._w3.eth.block_number
        logger.debug("Current block number fetched: %d", height)
        return int(height)

    async def range_query(self, from_height: int, to_height: int) -> list[RawLog]:
        logs = await self._w3.eth.get_logs({
            "address": self.contract_address,
            "fromBlock": from_height,
            "toBlock": to_height,
            "topics": [self.event_topic],
        })
        logger.info(
            "Loaded %d FeesCollected logs",
            len(logs),
            extra={"from_height": from_height, "to_height": to_height},
        )
        return list(logs)

    async def resolve_timestamp(self, height: int) -> datetime | None:
        try:
            block = await self._w3.eth.get_block(height)
        except BlockNotFound:
            return None
        return datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc)

    def decode_log(self, raw: RawLog) -> DecodedLog:
        try:
            event = self._contract.events.FeesCollected().process_log(raw)
        except Exception as e:
            raise DecodeError(f"Failed to decode FeesCollected log: {e}", cause=e) from e

        args = event["args"]
        return DecodedLog(
            token=str(args["_token"]).lower(),
            integrator=str(args["_integrator"]).lower(),
            integrator_fee=int(args["_integratorFee"]),
            protocol_fee=int(args["_lifiFee"]),
            block_height=int(event["blockNumber"]),
            tx_hash=_to_hex(event["transactionHash"]),
            log_index=int(event["logIndex"]),
        )

    async def reconnect(self) -> None:
        await self.close()
        self._w3 = self._build_client()
        self._contract = self._w3.eth.contract(
            address=self.contract_address,
            abi=FEE_COLLECTOR_ABI,
        )

    async def close(self) -> None:
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
