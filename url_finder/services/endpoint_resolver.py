# url_finder/services/endpoint_resolver.py
"""
Endpoint resolver: storage provider -> advertised HTTP base URLs.

Resolution steps:
    1. Peer id for the provider (Lotus ``StateMinerInfo``), reusing the
       cached value on the provider row while it is fresh.
    2. Directory record for the peer id (cid.contact).
    3. Multiaddrs from the record, converted to HTTP(S) base URLs.

Outcomes are reported as result codes (``NoCidContactData``,
``MissingAddrFromCidContact``, ``MissingHttpAddrFromCidContact``) on the
returned ``EndpointResolution``. Infrastructure failures raise
``EndpointResolutionError`` carrying the matching ``ErrorCode``. Nothing
here retries; the clients' transient retry is the only retry layer.

Usage:
    resolver = EndpointResolver()
    resolution = await resolver.resolve("1234", provider_state=provider)
    if resolution.ok:
        urls = resolution.endpoints
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from ..clients.cid_contact_client import CidContactClient, cid_contact_client, get_all_addresses
from ..clients.lotus_client import LotusClient, lotus_client
from ..config import settings
from ..database.models import StorageProvider
from ..exceptions import CidContactError, CidContactNoData, EndpointResolutionError, LotusRpcError
from ..types import ErrorCode, ResultCode, to_address
from .multiaddr_parser import parse_addresses

logger = logging.getLogger("url_finder.services.endpoint_resolver")


@dataclass
class EndpointResolution:
    """Outcome of resolving one provider's endpoints."""
    result_code: ResultCode
    endpoints: List[str] = field(default_factory=list)
    peer_id: Optional[str] = None
    peer_id_refreshed: bool = False
    endpoints_refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.result_code == ResultCode.SUCCESS and bool(self.endpoints)


def _is_fresh(fetched_at: Optional[datetime], max_age_hours: int, now: datetime) -> bool:
    return fetched_at is not None and now - fetched_at < timedelta(hours=max_age_hours)


class EndpointResolver:
    """Resolves HTTP endpoints for a provider through Lotus and cid.contact."""

    def __init__(
        self,
        lotus: Optional[LotusClient] = None,
        cid_contact: Optional[CidContactClient] = None,
    ):
        self.lotus = lotus or lotus_client
        self.cid_contact = cid_contact or cid_contact_client

    async def get_peer_id(
        self,
        provider_id: str,
        provider_state: Optional[StorageProvider] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[str, bool]:
        """
        Return ``(peer_id, refreshed)``.

        Raises:
            EndpointResolutionError: FailedToGetPeerId when the RPC lookup fails.
        """
        now = now or datetime.utcnow()
        if (
            provider_state is not None
            and provider_state.peer_id
            and _is_fresh(provider_state.peer_id_fetched_at, settings.peer_id_max_age_hours, now)
        ):
            return provider_state.peer_id, False

        address = to_address(provider_id)
        try:
            peer_id = await self.lotus.get_peer_id(address)
        except LotusRpcError as e:
            logger.error(f"Failed to get peer id for {address}: {e}")
            raise EndpointResolutionError(str(e), ErrorCode.FAILED_TO_GET_PEER_ID) from e
        return peer_id, True

    async def resolve(
        self,
        provider_id: str,
        provider_state: Optional[StorageProvider] = None,
        now: Optional[datetime] = None,
    ) -> EndpointResolution:
        """
        Resolve the provider's HTTP base URLs.

        Args:
            provider_id: Bare numeric provider id
            provider_state: Provider row whose caches may be reused
            now: Reference time for cache freshness (defaults to utcnow)

        Returns:
            EndpointResolution with ``Success`` and the endpoints, or the
            directory-level result code and no endpoints.

        Raises:
            EndpointResolutionError: FailedToGetPeerId or
                FailedToRetrieveCidContactData.
        """
        now = now or datetime.utcnow()

        if (
            provider_state is not None
            and provider_state.cached_http_endpoints
            and _is_fresh(provider_state.endpoints_fetched_at, settings.endpoints_max_age_hours, now)
        ):
            logger.debug(f"Using cached endpoints for provider {provider_id}")
            return EndpointResolution(
                result_code=ResultCode.SUCCESS,
                endpoints=list(provider_state.cached_http_endpoints),
                peer_id=provider_state.peer_id,
            )

        peer_id, peer_id_refreshed = await self.get_peer_id(provider_id, provider_state, now)

        try:
            record = await self.cid_contact.get_contact(peer_id)
        except CidContactNoData as e:
            logger.debug(f"No cid.contact data for provider {provider_id}: {e}")
            return EndpointResolution(
                result_code=ResultCode.NO_CID_CONTACT_DATA,
                peer_id=peer_id,
                peer_id_refreshed=peer_id_refreshed,
            )
        except CidContactError as e:
            logger.error(f"Failed to get cid.contact record for provider {provider_id}: {e}")
            raise EndpointResolutionError(str(e), ErrorCode.FAILED_TO_RETRIEVE_CID_CONTACT_DATA) from e

        addrs = get_all_addresses(record)
        if not addrs:
            logger.debug(f"Missing addr from cid.contact for provider {provider_id}")
            return EndpointResolution(
                result_code=ResultCode.MISSING_ADDR_FROM_CID_CONTACT,
                peer_id=peer_id,
                peer_id_refreshed=peer_id_refreshed,
            )

        endpoints = parse_addresses(addrs)
        if not endpoints:
            logger.debug(f"Missing http addr from cid.contact for provider {provider_id} ({len(addrs)} addrs)")
            return EndpointResolution(
                result_code=ResultCode.MISSING_HTTP_ADDR_FROM_CID_CONTACT,
                peer_id=peer_id,
                peer_id_refreshed=peer_id_refreshed,
            )

        logger.info(f"Resolved {len(endpoints)} endpoint(s) for provider {provider_id}")
        return EndpointResolution(
            result_code=ResultCode.SUCCESS,
            endpoints=endpoints,
            peer_id=peer_id,
            peer_id_refreshed=peer_id_refreshed,
            endpoints_refreshed=True,
        )
