"""
Tests for the upstream HTTP clients (Lotus RPC, cid.contact) and the shared
retry loop. All traffic goes through ``httpx.MockTransport``.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from url_finder.clients.cid_contact_client import CidContactClient, get_all_addresses
from url_finder.clients.http_retry import backoff_delay, request_with_retry
from url_finder.clients.lotus_client import LotusClient
from url_finder.exceptions import CidContactError, CidContactNoData, LotusRpcError


def _lotus(handler, **kwargs):
    return LotusClient(base_url="http://lotus.test/rpc/v1", max_retries=0, transport=httpx.MockTransport(handler), **kwargs)


def _cid_contact(handler, **kwargs):
    return CidContactClient(base_url="http://cid.test", max_retries=0, transport=httpx.MockTransport(handler), **kwargs)


class TestRetryLoop:
    """Transient failures are retried with capped backoff."""

    def test_backoff_is_capped(self):
        assert backoff_delay(0) == 0.5
        assert backoff_delay(1) == 1.0
        assert backoff_delay(2) == 2.0
        assert backoff_delay(10) == 6.0

    @pytest.mark.asyncio
    async def test_retries_5xx_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"ok": True})

        with patch("url_finder.clients.http_retry.asyncio.sleep", new=AsyncMock()) as sleep:
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                response = await request_with_retry(client, "GET", "http://x.test/", retries=3)

        assert response.status_code == 200
        assert len(calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_returns_last_response_when_retries_exhausted(self):
        with patch("url_finder.clients.http_retry.asyncio.sleep", new=AsyncMock()):
            async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502))) as client:
                response = await request_with_retry(client, "GET", "http://x.test/", retries=2)
        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_does_not_retry_4xx(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            response = await request_with_retry(client, "GET", "http://x.test/", retries=3)
        assert response.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_raises_last_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with patch("url_finder.clients.http_retry.asyncio.sleep", new=AsyncMock()):
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                with pytest.raises(httpx.ConnectError):
                    await request_with_retry(client, "GET", "http://x.test/", retries=1)


class TestLotusClient:
    @pytest.mark.asyncio
    async def test_get_peer_id(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"PeerId": "12D3KooWPeer"}})

        peer_id = await _lotus(handler).get_peer_id("f01234")

        assert peer_id == "12D3KooWPeer"
        assert seen["method"] == "Filecoin.StateMinerInfo"
        assert seen["params"] == ["f01234", None]

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": 1, "message": "actor not found"}})

        with pytest.raises(LotusRpcError, match="actor not found"):
            await _lotus(handler).get_peer_id("f09999")

    @pytest.mark.asyncio
    async def test_missing_peer_id_raises(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"PeerId": None}})

        with pytest.raises(LotusRpcError):
            await _lotus(handler).get_peer_id("f01234")

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        with pytest.raises(LotusRpcError, match="HTTP 403"):
            await _lotus(lambda r: httpx.Response(403, text="forbidden")).get_peer_id("f01234")

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LotusRpcError):
            await _lotus(handler).get_peer_id("f01234")

    @pytest.mark.asyncio
    async def test_get_deal_label(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "Filecoin.StateMarketStorageDeal"
            assert body["params"] == [42, None]
            return httpx.Response(
                200,
                json={
                    "result": {
                        "Proposal": {
                            "Label": "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi",
                            "PieceCID": {"/": "baga6ea4seaqpiece"},
                        }
                    }
                },
            )

        label, piece_cid = await _lotus(handler).get_deal_label(42)
        assert label.startswith("bafy")
        assert piece_cid == "baga6ea4seaqpiece"


class TestCidContactClient:
    @pytest.mark.asyncio
    async def test_get_contact(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["accept"] = request.headers.get("accept")
            return httpx.Response(200, json={"AddrInfo": {"ID": "peer"}})

        payload = await _cid_contact(handler).get_contact("peer")

        assert payload == {"AddrInfo": {"ID": "peer"}}
        assert seen["url"] == "http://cid.test/providers/peer"
        assert seen["accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_not_found_is_no_data(self):
        with pytest.raises(CidContactNoData):
            await _cid_contact(lambda r: httpx.Response(404)).get_contact("peer")

    @pytest.mark.asyncio
    async def test_invalid_json_is_no_data(self):
        with pytest.raises(CidContactNoData):
            await _cid_contact(lambda r: httpx.Response(200, text="not json")).get_contact("peer")

    @pytest.mark.asyncio
    async def test_unreachable_is_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(CidContactError):
            await _cid_contact(handler).get_contact("peer")


class TestGetAllAddresses:
    def test_extended_providers(self):
        payload = {
            "ExtendedProviders": {
                "Providers": [
                    {"Addrs": ["/ip4/1.2.3.4/tcp/8080/http"]},
                    {"Addrs": ["/dns/sp.example.com/tcp/443/https", 17]},
                ]
            },
            "Publisher": {"Addrs": ["/dns/ignored.example.com/https"]},
        }
        assert get_all_addresses(payload) == [
            "/ip4/1.2.3.4/tcp/8080/http",
            "/dns/sp.example.com/tcp/443/https",
        ]

    def test_publisher_fallback_is_normalized(self):
        payload = {
            "Publisher": {
                "Addrs": [
                    "/dns/sp.example.com/https/http-path/%2Fipni-provider%2F12D3",
                    "/dns/plain.example.com/http",
                ]
            }
        }
        assert get_all_addresses(payload) == [
            "/dns/sp.example.com/tcp/443/https",
            "/dns/plain.example.com/tcp/80/http",
        ]

    def test_no_addresses(self):
        assert get_all_addresses({}) == []
        assert get_all_addresses({"ExtendedProviders": {"Providers": []}}) == []
