# betsync/chain/log_reader.py
"""
Chunked eth_getLogs reader and typed event decoding.

Providers cap the block range of a single getLogs call, so a window is
walked from the newest block down in LOG_CHUNK_SIZE steps. A failing chunk
is logged and recorded as missed; it does not abort the walk.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from eth_abi import decode as abi_decode
from hexbytes import HexBytes

from config import LOG_CHUNK_SIZE
from .abi import event_topic
from .errors import DecodeError, FetchError
from .models import DecodedEvent, RawLog

logger = logging.getLogger(__name__)

Topics = Sequence[Optional[str]]


@dataclass
class LogScan:
    logs: List[RawLog] = field(default_factory=list)
    missed: List[Tuple[int, int]] = field(default_factory=list)

    def __iter__(self) -> Iterator[RawLog]:
        return iter(self.logs)

    def __len__(self) -> int:
        return len(self.logs)

    @property
    def complete(self) -> bool:
        return not self.missed


def block_chunks(from_block: int, to_block: int, chunk_size: int) -> Iterator[Tuple[int, int]]:
    """Yield inclusive (start, end) ranges from ``to_block`` down to ``from_block``."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    end = to_block
    while end >= from_block:
        start = max(from_block, end - chunk_size + 1)
        yield start, end
        end = start - 1


class ChainLogReader:
    def __init__(self, transport, chunk_size: int = LOG_CHUNK_SIZE):
        self.transport = transport
        self.chunk_size = chunk_size

    async def fetch_logs(
        self,
        address: str,
        topics: Topics,
        from_block: int,
        to_block: int,
    ) -> LogScan:
        scan = LogScan()
        from_block = max(0, from_block)
        for start, end in block_chunks(from_block, to_block, self.chunk_size):
            try:
                logs = await self.transport.get_logs({
                    "address": address,
                    "topics": list(topics),
                    "fromBlock": start,
                    "toBlock": end,
                })
            except FetchError as e:
                logger.warning("getLogs chunk %d..%d failed, skipping: %s", start, end, e)
                scan.missed.append((start, end))
                continue
            scan.logs.extend(logs)
        return scan


def decode_log(event: Dict[str, Any], log: RawLog) -> Union[DecodedEvent, DecodeError]:
    """Decode ``log`` against ``event``'s ABI.

    Returns a DecodeError instead of raising so a malformed or unrelated log
    can be dropped by the caller without try/except around every item.
    """
    if not log.topics or log.topics[0].lower() != event_topic(event).lower():
        return DecodeError(f"topic mismatch for {event['name']}")

    indexed = [i for i in event["inputs"] if i.get("indexed")]
    plain = [i for i in event["inputs"] if not i.get("indexed")]
    if len(log.topics) != 1 + len(indexed):
        return DecodeError(
            f"{event['name']}: expected {1 + len(indexed)} topics, got {len(log.topics)}"
        )

    args: Dict[str, Any] = {}
    try:
        for inp, topic in zip(indexed, log.topics[1:]):
            args[inp["name"]] = abi_decode([inp["type"]], bytes(HexBytes(topic)))[0]
        values = abi_decode([i["type"] for i in plain], log.data)
    except Exception as e:
        return DecodeError(f"{event['name']}: {e}")
    for inp, value in zip(plain, values):
        args[inp["name"]] = value

    return DecodedEvent(
        name=event["name"],
        args=args,
        block_number=log.block_number,
        transaction_hash=log.transaction_hash,
        log_index=log.log_index,
    )


def decode_all(event: Dict[str, Any], logs) -> List[DecodedEvent]:
    out = []
    for log in logs:
        result = decode_log(event, log)
        if isinstance(result, DecodeError):
            logger.debug("Dropping undecodable log in block %d: %s", log.block_number, result)
            continue
        out.append(result)
    return out
