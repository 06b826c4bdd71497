"""Read-only USDC transfer lookups built on web3.py."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

from web3 import Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

logger = logging.getLogger(__name__)

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class ChainQueryError(RuntimeError):
    pass


@dataclass(frozen=True)
class Transfer:
    amount_raw: int
    tx_hash: str


class ChainQuery(Protocol):
    def get_recent_transfers(self, receiving_address: str, lookback_blocks: int) -> List[Transfer]:
        ...


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + address[2:].lower().rjust(64, "0")


def _decode_amount(data: Any) -> int:
    if isinstance(data, str):
        return int(data, 16) if data not in ("", "0x") else 0
    return int.from_bytes(bytes(data), "big")


class Erc20TransferQuery:
    """Reads ERC-20 ``Transfer`` events sent to a wallet over recent blocks."""

    def __init__(self, rpc_url: str, token_address: str, web3: Optional[Web3] = None) -> None:
        if web3 is None:
            web3 = Web3(Web3.HTTPProvider(rpc_url))
            # Polygon PoS blocks carry extra data beyond the 32 byte limit
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.web3 = web3
        self.token_address = Web3.to_checksum_address(token_address)

    def get_recent_transfers(self, receiving_address: str, lookback_blocks: int) -> List[Transfer]:
        try:
            latest = int(self.web3.eth.block_number)
            from_block = max(0, latest - int(lookback_blocks))
            logs = self.web3.eth.get_logs(
                {
                    "fromBlock": from_block,
                    "toBlock": "latest",
                    "address": self.token_address,
                    "topics": [TRANSFER_TOPIC, None, address_topic(receiving_address)],
                }
            )
        except Exception as exc:
            raise ChainQueryError(f"Transfer log query failed: {exc}") from exc

        transfers: List[Transfer] = []
        for log in logs:
            try:
                amount = _decode_amount(log["data"])
                raw_hash = log["transactionHash"]
                tx_hash = raw_hash if isinstance(raw_hash, str) else Web3.to_hex(raw_hash)
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("Skipping undecodable transfer log: %s", exc)
                continue
            transfers.append(Transfer(amount_raw=amount, tx_hash=tx_hash))
        logger.debug(
            "Fetched %s transfer(s) to %s from block %s",
            len(transfers),
            receiving_address,
            from_block,
        )
        return transfers


__all__ = [
    "ChainQuery",
    "ChainQueryError",
    "Erc20TransferQuery",
    "TRANSFER_TOPIC",
    "Transfer",
    "address_topic",
]
