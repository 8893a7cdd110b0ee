# ============================================================================
# url_finder/clients/lotus_client.py
# ============================================================================
# Minimal JSON-RPC client for a Lotus full node (Glif by default).
#
# Environment-driven configuration (see config.py):
#   - settings.glif_url (e.g., https://api.node.glif.io/rpc/v1)
#   - settings.upstream_timeout_seconds
#   - settings.upstream_max_retries
# ============================================================================

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

import httpx

from ..config import settings
from ..exceptions import LotusRpcError
from .http_retry import request_with_retry

logger = logging.getLogger("url_finder.clients.lotus")


class LotusClient:
    """Async client for the Lotus JSON-RPC methods URL Finder needs."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url or settings.glif_url
        self.timeout = timeout or settings.upstream_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.upstream_max_retries
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def call(self, method: str, params: List[Any]) -> Any:
        """
        Invoke a JSON-RPC method and return its ``result``.

        Raises:
            LotusRpcError: On transport failure, non-2xx status, malformed
                body or a JSON-RPC error object.
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with self._client() as client:
                response = await request_with_retry(
                    client, "POST", self.base_url, retries=self.max_retries, json=payload
                )
        except httpx.TransportError as e:
            raise LotusRpcError(f"{method} request failed: {e!s}") from e

        if response.status_code >= 400:
            raise LotusRpcError(f"{method} HTTP {response.status_code}: {response.text[:500]}")

        try:
            body = response.json()
        except ValueError as e:
            raise LotusRpcError(f"{method} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise LotusRpcError(f"{method} returned unexpected payload")
        if body.get("error"):
            raise LotusRpcError(f"{method} error: {body['error']}")
        return body.get("result")

    async def get_peer_id(self, address: str) -> str:
        """Return the libp2p peer id a miner actor advertises on chain."""
        result = await self.call("Filecoin.StateMinerInfo", [address, None])
        peer_id = result.get("PeerId") if isinstance(result, dict) else None
        if not peer_id:
            raise LotusRpcError(f"No PeerId in StateMinerInfo for {address}")
        return peer_id

    async def get_deal_label(self, deal_id: int) -> Tuple[str, str]:
        """
        Return ``(label, piece_cid)`` from a market deal proposal.

        Labels are strings on chain; byte labels are returned as-is by Lotus
        in their JSON form and simply won't parse as a payload CID.
        """
        result = await self.call("Filecoin.StateMarketStorageDeal", [deal_id, None])
        proposal = result.get("Proposal") if isinstance(result, dict) else None
        if not isinstance(proposal, dict):
            raise LotusRpcError(f"No proposal for deal {deal_id}")

        label = proposal.get("Label")
        if not isinstance(label, str):
            label = "" if label is None else str(label)

        piece = proposal.get("PieceCID")
        piece_cid = piece.get("/") if isinstance(piece, dict) else piece
        if not piece_cid:
            raise LotusRpcError(f"No PieceCID for deal {deal_id}")
        return label, piece_cid


# Reusable singleton
lotus_client = LotusClient()
