"""Tests for vendor provider adapters against httpx.MockTransport.

Covers:
- Vendor auth headers, endpoints, and incremental filters
- Page-number, Link-header, and body-cursor pagination
- Pagination cycle detection and the page cap
- Transient-status retry and hard HTTP failures
- Vendor field mapping and client discovery
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest
from tenacity import wait_none

from src.assetsync.integrations.providers import (
    AuvikProvider,
    ConnectWiseProvider,
    CustomProvider,
    HttpDefaults,
    ItGlueProvider,
    KaseyaProvider,
)
from src.assetsync.integrations.providers.http import build_url, fetch_page
from src.assetsync.integrations.schemas import AuthType, ConnectionRead

SINCE = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


def _connection(provider: str, base_url: str | None = "https://vendor.test", **kwargs: Any) -> ConnectionRead:
    return ConnectionRead(
        id=1,
        name=f"{provider} connection",
        slug=f"{provider}-connection",
        provider=provider,
        base_url=base_url,
        **kwargs,
    )


def _recording_transport(handler) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(_handler), requests


async def _collect(provider, connection, since=None) -> list:
    assets = []
    async for page in provider.iter_asset_pages(connection, since):
        assets.extend(page)
    return assets


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    """Retry transient statuses without sleeping."""
    monkeypatch.setattr(fetch_page.retry, "wait", wait_none())


# ── ConnectWise ──────────────────────────────────────────────────────────────


class TestConnectWise:
    def test_auth_headers(self):
        connection = _connection(
            "connectwise",
            credentials={
                "company_id": "acme",
                "public_key": "pub",
                "private_key": "priv",
                "client_id": "cid-1",
            },
        )
        headers = ConnectWiseProvider().auth_headers(connection)
        expected = base64.b64encode(b"acme+pub:priv").decode()
        assert headers["Authorization"] == f"Basic {expected}"
        assert headers["clientId"] == "cid-1"

    async def test_pages_follow_link_header(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json=[{"id": 3, "name": "ws-03"}])
            return httpx.Response(
                200,
                json=[
                    {
                        "id": 1,
                        "name": "srv-01",
                        "ipAddress": "10.0.0.1",
                        "type": {"name": "Server"},
                        "status": {"name": "Active"},
                        "company": {"id": 250, "name": "Acme Corp"},
                    },
                    {"id": 2, "name": "srv-02"},
                ],
                headers={
                    "Link": '<https://cw.test/v4_6_release/apis/3.0/company/configurations?page=2&pageSize=2>; rel="next"'
                },
            )

        transport, requests = _recording_transport(handler)
        provider = ConnectWiseProvider(defaults=HttpDefaults(page_size=2), transport=transport)
        connection = _connection("connectwise", base_url="https://cw.test")

        assets = await _collect(provider, connection, SINCE)

        assert [a.external_id for a in assets] == ["1", "2", "3"]
        first = requests[0]
        assert first.url.path == "/v4_6_release/apis/3.0/company/configurations"
        assert first.url.params["pageSize"] == "2"
        assert first.url.params["page"] == "1"
        assert first.url.params["conditions"] == "lastUpdated > [2024-01-01T00:00:00Z]"
        assert requests[1].url.params["page"] == "2"

        srv = assets[0]
        assert srv.external_type == "Server"
        assert srv.status == "Active"
        assert srv.hostname == "srv-01"
        assert srv.ip_address == "10.0.0.1"
        assert srv.external_client_id == "250"
        assert srv.external_client_name == "Acme Corp"
        assert assets[1].external_type == "configuration"
        assert assets[1].status == "unknown"


# ── IT Glue ──────────────────────────────────────────────────────────────────


class TestItGlue:
    async def test_page_number_paging_until_short_page(self):
        def handler(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page[number]"]
            if page == "1":
                data = [
                    {
                        "id": "11",
                        "attributes": {
                            "name": "Firewall",
                            "hostname": "fw01",
                            "primary-ip": "192.168.1.1",
                            "configuration-status-name": "Active",
                            "organization-id": 77,
                            "organization-name": "Globex",
                        },
                    },
                    {"id": "12", "attributes": {}},
                ]
            else:
                data = [{"id": "13", "attributes": {"name": "Switch"}}]
            return httpx.Response(200, json={"data": data})

        transport, requests = _recording_transport(handler)
        provider = ItGlueProvider(defaults=HttpDefaults(page_size=2), transport=transport)
        connection = _connection("it_glue", credentials={"api_key": "itg-key"})

        assets = await _collect(provider, connection, SINCE)

        assert [a.external_id for a in assets] == ["11", "12", "13"]
        assert len(requests) == 2
        assert requests[0].headers["x-api-key"] == "itg-key"
        assert requests[0].url.params["page[size]"] == "2"
        assert requests[0].url.params["filter[updated_at]"] == "2024-01-01T00:00:00+00:00"
        assert requests[1].url.params["page[number]"] == "2"

        fw = assets[0]
        assert fw.external_type == "configuration"
        assert fw.hostname == "fw01"
        assert fw.ip_address == "192.168.1.1"
        assert fw.external_client_id == "77"
        assert assets[1].name == "IT Glue Configuration"
        assert assets[1].status == "unknown"


# ── Kaseya ───────────────────────────────────────────────────────────────────


class TestKaseya:
    async def test_bearer_auth_and_site_fallback(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"assetId": "A-1", "deviceName": "laptop-7", "siteId": "S-4", "siteName": "HQ"},
                        {"name": "no id at all"},
                    ]
                },
            )

        transport, requests = _recording_transport(handler)
        provider = KaseyaProvider(transport=transport)
        connection = _connection("kaseya", credentials={"api_token": "kt"})

        assets = await _collect(provider, connection, SINCE)

        assert len(assets) == 1
        asset = assets[0]
        assert asset.external_id == "A-1"
        assert asset.name == "laptop-7"
        assert asset.hostname == "laptop-7"
        assert asset.external_client_id == "S-4"
        assert asset.external_client_name == "HQ"
        assert requests[0].headers["Authorization"] == "Bearer kt"
        assert requests[0].url.path == "/api/v1/assets"
        assert requests[0].url.params["updatedSince"] == "2024-01-01T00:00:00+00:00"


# ── Auvik ────────────────────────────────────────────────────────────────────


class TestAuvik:
    async def test_cursor_links_and_attribute_filter(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "page[after]" in request.url.params:
                return httpx.Response(200, json={"data": [{"id": "d3", "attributes": {}}], "links": {}})
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "id": "d1",
                            "attributes": {
                                "deviceName": "core-sw",
                                "deviceType": "switch",
                                "primaryIp": "10.1.1.1",
                                "monitoringStatus": "online",
                            },
                            "relationships": {"tenant": {"data": {"id": "t9"}}},
                        },
                        {"id": "d2"},
                    ],
                    "links": {"next": "/v1/inventory/device?page[after]=abc"},
                },
            )

        transport, requests = _recording_transport(handler)
        provider = AuvikProvider(transport=transport)
        connection = _connection("auvik", base_url="https://auvik.test", credentials={"api_token": "at"})

        assets = await _collect(provider, connection)

        assert [a.external_id for a in assets] == ["d1", "d3"]
        assert assets[0].external_type == "switch"
        assert assets[0].ip_address == "10.1.1.1"
        assert assets[0].external_client_id == "t9"
        assert assets[1].external_type == "network_device"
        assert assets[1].name == "Auvik Device"
        assert assets[1].status == "unknown"
        assert len(requests) == 2
        assert "filter[modifiedAt][gte]" not in requests[0].url.params

    async def test_discover_tenants(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/tenants"
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"id": "t1", "attributes": {"tenantName": "Initech"}},
                        {"id": "t2", "attributes": {}},
                        {"attributes": {"tenantName": "No Id"}},
                    ]
                },
            )

        transport, _ = _recording_transport(handler)
        clients = await AuvikProvider(transport=transport).discover_clients(
            _connection("auvik", credentials={"api_token": "at"})
        )
        assert [(c.external_client_id, c.external_client_name) for c in clients] == [
            ("t1", "Initech"),
            ("t2", "Auvik Tenant"),
        ]


# ── Custom ───────────────────────────────────────────────────────────────────


class TestCustom:
    def test_auth_variants(self):
        provider = CustomProvider()
        bearer = _connection("custom", auth_type=AuthType.bearer, credentials={"access_token": "t1"})
        basic = _connection("custom", auth_type=AuthType.basic, credentials={"username": "u", "password": "p"})
        headers = _connection("custom", credentials={"headers": {"X-Auth": "abc"}})
        api_key = _connection("custom", credentials={"api_key": "k"})

        assert provider.auth_headers(bearer) == {"Authorization": "Bearer t1"}
        assert provider.auth_headers(basic) == {"Authorization": f"Basic {base64.b64encode(b'u:p').decode()}"}
        assert provider.auth_headers(headers) == {"X-Auth": "abc"}
        assert provider.auth_headers(api_key) == {"x-api-key": "k"}

    async def test_configurable_params_and_endpoint(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"id": "c1", "client_id": 12, "organization_id": "o1"}]})

        transport, requests = _recording_transport(handler)
        provider = CustomProvider(defaults=HttpDefaults(page_size=50), transport=transport)
        connection = _connection(
            "custom",
            settings={
                "assets_endpoint": "/v2/devices",
                "page_param": "page",
                "page_size_param": "per_page",
                "since_param": "modified_after",
            },
        )

        assets = await _collect(provider, connection, SINCE)

        params = requests[0].url.params
        assert requests[0].url.path == "/v2/devices"
        assert params["per_page"] == "50"
        assert params["page"] == "1"
        assert params["modified_after"] == "2024-01-01T00:00:00+00:00"
        assert assets[0].client_id == 12
        assert assets[0].external_client_id == "o1"

    def test_webhook_mapping_keeps_client_id(self):
        assets = CustomProvider().map_webhook_payload(
            _connection("custom"),
            {"assets": [{"external_id": "x-1", "client_id": "5"}, {"name": "skip me"}]},
        )
        assert len(assets) == 1
        assert assets[0].external_id == "x-1"
        assert assets[0].client_id == 5

    async def test_discovery_honors_clients_endpoint_setting(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/orgs"
            return httpx.Response(200, json=[{"id": 1, "name": "Acme"}, {"name": "nameless"}])

        transport, _ = _recording_transport(handler)
        clients = await CustomProvider(transport=transport).discover_clients(
            _connection("custom", settings={"clients_endpoint": "/orgs"})
        )
        assert [c.external_client_id for c in clients] == ["1"]


# ── Pagination Guards and HTTP Errors ────────────────────────────────────────


class TestPaginationGuards:
    async def test_repeated_next_link_stops(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"items": [{"id": str(request.url)}], "next": "https://vendor.test/assets?cursor=1"},
            )

        transport, requests = _recording_transport(handler)
        assets = await _collect(CustomProvider(transport=transport), _connection("custom"))
        assert len(requests) == 2
        assert len(assets) == 2

    async def test_page_cap(self):
        def handler(request: httpx.Request) -> httpx.Response:
            cursor = int(request.url.params.get("cursor", "0"))
            return httpx.Response(
                200,
                json={"items": [{"id": cursor}], "next": f"/assets?cursor={cursor + 1}"},
            )

        transport, requests = _recording_transport(handler)
        connection = _connection("custom", settings={"max_pages": 3})
        assets = await _collect(CustomProvider(transport=transport), connection)
        assert len(requests) == 3
        assert [a.external_id for a in assets] == ["0", "1", "2"]

    async def test_transient_status_is_retried(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"items": [{"id": 1}]})])

        transport, requests = _recording_transport(lambda request: next(responses))
        assets = await _collect(CustomProvider(transport=transport), _connection("custom"))
        assert len(requests) == 2
        assert [a.external_id for a in assets] == ["1"]

    async def test_client_error_raises(self):
        transport, requests = _recording_transport(lambda request: httpx.Response(401))
        with pytest.raises(httpx.HTTPStatusError):
            await _collect(CustomProvider(transport=transport), _connection("custom"))
        assert len(requests) == 1

    def test_relative_endpoint_requires_base_url(self):
        with pytest.raises(ValueError, match="no base URL"):
            build_url(_connection("custom", base_url=None), "/assets")
        assert build_url(_connection("custom", base_url=None), "https://x.test/a") == "https://x.test/a"
