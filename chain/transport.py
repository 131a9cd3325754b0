# betsync/chain/transport.py
"""
Async read transport over a JSON-RPC endpoint.

Every call is bounded by RPC_TIMEOUT; any transport failure (HTTP error,
RPC error, timeout, revert on a view call) is raised as FetchError so callers
only ever see the error taxonomy in chain.errors.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput

from config import RPC_TIMEOUT, get_network
from .errors import DecodeError, FetchError
from .models import RawLog

logger = logging.getLogger(__name__)


def to_raw_log(log: Any) -> RawLog:
    return RawLog(
        address=str(log["address"]),
        topics=tuple(Web3.to_hex(t) for t in log["topics"]),
        data=bytes(log["data"]),
        block_number=int(log["blockNumber"]),
        transaction_hash=Web3.to_hex(log["transactionHash"]) if log.get("transactionHash") else "",
        log_index=int(log.get("logIndex") or 0),
    )


class ReadTransport:
    def __init__(self, rpc_url: str, timeout: float = RPC_TIMEOUT):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._contracts: Dict[tuple, Any] = {}

    async def _guard(self, what: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except BadFunctionCallOutput as e:
            raise DecodeError(f"{what}: {e}") from e
        except asyncio.TimeoutError as e:
            raise FetchError(f"{what}: timed out after {self.timeout:.0f}s") from e
        except Exception as e:
            raise FetchError(f"{what}: {e}") from e

    def _contract(self, address: str, abi):
        address = Web3.to_checksum_address(address)
        key = (address, id(abi))
        contract = self._contracts.get(key)
        if contract is None:
            contract = self.w3.eth.contract(address=address, abi=abi)
            self._contracts[key] = contract
        return contract

    async def get_block_number(self) -> int:
        async def _read():
            return await self.w3.eth.block_number
        return int(await self._guard("eth_blockNumber", _read()))

    async def get_logs(self, filter_params: Dict[str, Any]) -> List[RawLog]:
        params = dict(filter_params)

        async def _read():
            params["address"] = Web3.to_checksum_address(params["address"])
            logs = await self.w3.eth.get_logs(params)
            return [to_raw_log(log) for log in logs]

        return await self._guard(
            f"eth_getLogs[{params.get('fromBlock')}..{params.get('toBlock')}]", _read()
        )

    async def call(self, address: str, abi, method: str, args: Sequence[Any]) -> tuple:
        async def _read():
            contract = self._contract(address, abi)
            return await getattr(contract.functions, method)(*args).call()

        result = await self._guard(f"{method}{tuple(args)}", _read())
        if isinstance(result, (list, tuple)):
            return tuple(result)
        return (result,)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(await self._guard("eth_estimateGas", self.w3.eth.estimate_gas(tx)))

    async def get_fee_data(self) -> Dict[str, Optional[int]]:
        async def _read():
            return await self.w3.eth.gas_price
        return {"gas_price": int(await self._guard("eth_gasPrice", _read()))}


def make_transport(network: str) -> ReadTransport:
    """A fresh read endpoint for ``network``."""
    return ReadTransport(get_network(network)["rpc"])
