"""Locate the NFT transfer behind a settlement log and resolve token metadata.

The transfer is searched in the transaction receipt starting next to the
settlement log, in the marketplace's scan direction. A transfer to a known
aggregator is followed forward to the downstream buyer.

Interface contract:
  - find_transfer(receipt_logs, settlement_log_index, direction) → TransferInfo | None
  - resolve(receipt, settlement_log, direction) → TransferInfo | None
  - metadata_uri(collection, token_id, standard) → str | None (never raises)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from nftwatch.connectors import abi
from nftwatch.connectors.marketplaces import ScanDirection
from nftwatch.connectors.rpc_client import RpcClient, RpcError
from nftwatch.core.events import TokenStandard
from nftwatch.utils.logger import get_logger

logger = get_logger("transfer_resolver")

# OpenSea shared storefront (ERC-1155, token id in log data)
OPENSEA_SHARED_STOREFRONT = "0x495f947276749ce646f68ac8c248420045cb7b5e"


@dataclass(frozen=True)
class TransferInfo:
    collection: str
    token_id: str
    standard: TokenStandard
    from_address: str
    to_address: str
    position: int  # index in the receipt's log list
    intermediary: str | None = None
    metadata_uri: str | None = None


class TransferResolver:
    """Receipt scanner plus token metadata reader.

    Args:
        rpc: JSON-RPC client for metadata calls.
        aggregators: Marketplace aggregator addresses (Gem, Genie, ...).
        shared_storefronts: Contracts matched by address instead of topic.
    """

    def __init__(
        self,
        rpc: RpcClient,
        aggregators: Iterable[str] = (),
        shared_storefronts: Iterable[str] = (OPENSEA_SHARED_STOREFRONT,),
    ) -> None:
        self._rpc = rpc
        self._aggregators = {a.lower() for a in aggregators}
        self._shared_storefronts = {a.lower() for a in shared_storefronts}

    # ------------------------------------------------------------------
    # Receipt scanning
    # ------------------------------------------------------------------

    def _match(self, log: dict[str, Any], position: int) -> TransferInfo | None:
        address = (log.get("address") or "").lower()
        topics = log.get("topics") or []
        if len(topics) != 4:
            return None
        topic0 = topics[0]

        if address in self._shared_storefronts or topic0 == abi.TRANSFER_SINGLE_TOPIC:
            # TransferSingle(operator, from, to, id, value): id is data word 0
            token_id = abi.to_int(abi.word(log["data"], 0))
            standard = TokenStandard.ERC1155
            from_topic, to_topic = topics[2], topics[3]
        elif topic0 == abi.TRANSFER_TOPIC:
            # ERC-721 indexes the token id; ERC-20 transfers have 3 topics
            token_id = abi.to_int(abi.strip_hex(topics[3]))
            standard = TokenStandard.ERC721
            from_topic, to_topic = topics[1], topics[2]
        else:
            return None

        return TransferInfo(
            collection=address,
            token_id=str(token_id),
            standard=standard,
            from_address=abi.to_address(from_topic),
            to_address=abi.to_address(to_topic),
            position=position,
        )

    def find_transfer(
        self,
        receipt_logs: list[dict[str, Any]],
        settlement_log_index: int,
        direction: ScanDirection,
    ) -> TransferInfo | None:
        """Scan the receipt from the settlement log in `direction` for the first NFT transfer."""
        position = next(
            (
                i
                for i, log in enumerate(receipt_logs)
                if abi.hex_to_int(log.get("logIndex")) == settlement_log_index
            ),
            None,
        )
        if position is None:
            # Settlement log not in receipt: walk the whole list from the scan's start
            position = -1 if direction is ScanDirection.FORWARD else len(receipt_logs)

        if direction is ScanDirection.FORWARD:
            indices: Iterable[int] = range(position + 1, len(receipt_logs))
        else:
            indices = range(position - 1, -1, -1)

        for i in indices:
            try:
                transfer = self._match(receipt_logs[i], i)
            except (ValueError, KeyError) as e:
                logger.debug("transfer_log_malformed", position=i, error=str(e))
                continue
            if transfer is not None:
                return self._follow_aggregator(receipt_logs, transfer)
        return None

    def _follow_aggregator(
        self, receipt_logs: list[dict[str, Any]], transfer: TransferInfo
    ) -> TransferInfo:
        """Rewrite an aggregator recipient to the downstream buyer."""
        aggregator = transfer.to_address
        if aggregator not in self._aggregators:
            return transfer
        for i in range(transfer.position + 1, len(receipt_logs)):
            try:
                onward = self._match(receipt_logs[i], i)
            except (ValueError, KeyError):
                continue
            if (
                onward is not None
                and onward.from_address == aggregator
                and onward.collection == transfer.collection
                and onward.token_id == transfer.token_id
            ):
                return replace(transfer, to_address=onward.to_address, intermediary=aggregator)
        logger.debug("aggregator_onward_transfer_missing", aggregator=aggregator)
        return replace(transfer, intermediary=aggregator)

    async def resolve(
        self,
        receipt: dict[str, Any],
        settlement_log: dict[str, Any],
        direction: ScanDirection,
    ) -> TransferInfo | None:
        """Find the transfer for a settlement log and attach its metadata URI."""
        transfer = self.find_transfer(
            receipt.get("logs") or [],
            abi.hex_to_int(settlement_log.get("logIndex")),
            direction,
        )
        if transfer is None:
            return None
        uri = await self.metadata_uri(transfer.collection, transfer.token_id, transfer.standard)
        return replace(transfer, metadata_uri=uri)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def metadata_uri(
        self, collection: str, token_id: str, standard: TokenStandard
    ) -> str | None:
        """tokenURI / uri read. Any failure yields None."""
        token_word = abi.uint_word(int(token_id))
        try:
            if standard is TokenStandard.ERC721:
                result = await self._rpc.eth_call(collection, abi.TOKEN_URI_SELECTOR + token_word)
                return abi.decode_string(result)

            result = await self._rpc.eth_call(collection, abi.URI_SELECTOR + token_word)
            uri = abi.decode_string(result)
        except (RpcError, ValueError) as e:
            logger.debug("metadata_call_failed", collection=collection, error=str(e))
            uri = None
            if standard is TokenStandard.ERC721:
                return None

        if uri is None:
            uri = await self._uri_from_events(collection, token_word)
        if uri is None:
            return None
        return uri.replace("0x{id}", "0x" + token_word).replace("{id}", token_word)

    async def _uri_from_events(self, collection: str, token_word: str) -> str | None:
        """Latest URI(string,uint256) event emitted for the token."""
        try:
            logs = await self._rpc.get_logs(
                collection, [abi.URI_TOPIC, "0x" + token_word], "earliest", "latest"
            )
        except RpcError as e:
            logger.debug("metadata_events_failed", collection=collection, error=str(e))
            return None
        if not logs:
            return None
        return abi.decode_string(logs[-1].get("data", ""))
