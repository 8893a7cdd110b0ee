# ============================================================================
# url_finder/clients/cid_contact_client.py
# ============================================================================
# Client for the cid.contact provider directory (IPNI).
#
# GET {settings.cid_contact_url}/providers/{peer_id} returns the provider
# record whose ExtendedProviders / Publisher sections list multiaddrs.
# ============================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import httpx

from .. import __version__
from ..config import settings
from ..exceptions import CidContactError, CidContactNoData
from .http_retry import request_with_retry

logger = logging.getLogger("url_finder.clients.cid_contact")


class CidContactClient:
    """Async client to look up a peer's advertised addresses."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.cid_contact_url).rstrip("/")
        self.timeout = timeout or settings.upstream_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.upstream_max_retries
        self._transport = transport

    def _headers(self) -> dict:
        return {"Accept": "application/json", "User-Agent": f"url-finder/{__version__}"}

    async def get_contact(self, peer_id: str) -> Dict[str, Any]:
        """
        Fetch the directory record for ``peer_id``.

        Raises:
            CidContactNoData: Non-2xx status or a body that is not a JSON object.
            CidContactError: The directory could not be reached after retries.
        """
        url = f"{self.base_url}/providers/{peer_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await request_with_retry(
                    client, "GET", url, retries=self.max_retries, headers=self._headers()
                )
        except httpx.TransportError as e:
            raise CidContactError(f"cid.contact unreachable for {peer_id}: {e!s}") from e

        logger.debug(f"cid.contact {peer_id} -> HTTP {response.status_code}")

        if not response.is_success:
            raise CidContactNoData(f"cid.contact returned HTTP {response.status_code} for {peer_id}")

        try:
            payload = response.json()
        except ValueError as e:
            raise CidContactNoData(f"cid.contact returned invalid JSON for {peer_id}") from e

        if not isinstance(payload, dict):
            raise CidContactNoData(f"cid.contact returned unexpected payload for {peer_id}")
        return payload


def _normalize_publisher_addr(addr: str) -> str:
    cleaned = unquote(addr).replace("//", "/")
    index = cleaned.find("/http-path")
    if index != -1:
        cleaned = cleaned[:index]
    if cleaned.endswith("/https"):
        return cleaned[: -len("/https")] + "/tcp/443/https"
    if cleaned.endswith("/http"):
        return cleaned[: -len("/http")] + "/tcp/80/http"
    return cleaned


def get_all_addresses(payload: Dict[str, Any]) -> List[str]:
    """
    Collect multiaddr strings from a directory record.

    ``ExtendedProviders.Providers[*].Addrs`` is used when present. Otherwise
    ``Publisher.Addrs`` is used, after URL-decoding and normalizing the
    publisher's HTTP path form (``/dns/host/https/http-path/...``) into a
    plain multiaddr with an explicit port.
    """
    addresses: List[str] = []

    extended = payload.get("ExtendedProviders")
    providers = extended.get("Providers") if isinstance(extended, dict) else None
    if isinstance(providers, list):
        for provider in providers:
            addrs = provider.get("Addrs") if isinstance(provider, dict) else None
            if isinstance(addrs, list):
                addresses.extend(addr for addr in addrs if isinstance(addr, str))
        return addresses

    publisher = payload.get("Publisher")
    addrs = publisher.get("Addrs") if isinstance(publisher, dict) else None
    if isinstance(addrs, list):
        addresses.extend(_normalize_publisher_addr(addr) for addr in addrs if isinstance(addr, str))
    return addresses


# Reusable singleton
cid_contact_client = CidContactClient()
