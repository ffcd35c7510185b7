"""Tests for the AWX gateway using httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from inventory_controller.gateway import (
    AwxApiError,
    AwxConnectionError,
    AwxGateway,
    encode_variables,
)

BASE_URL = "https://awx.test"

Handler = Callable[[httpx.Request], httpx.Response]


class RecordingHandler:
    """Route requests by (method, path) and remember what was sent."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response | Handler]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"detail": "Not found."})
        if callable(route):
            return route(request)
        return route

    def sent(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]


def listing(*ids: int) -> httpx.Response:
    return httpx.Response(
        200, json={"count": len(ids), "results": [{"id": i, "name": f"obj-{i}"} for i in ids]}
    )


def make_gateway(handler: Callable[[httpx.Request], httpx.Response]) -> AwxGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AwxGateway(BASE_URL, "secret-token", client=client)


class TestPing:
    """Tests for the readiness probe."""

    @pytest.mark.asyncio
    async def test_ping_ok(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/ping/"): httpx.Response(200, json={})})
        gateway = make_gateway(handler)

        assert await gateway.ping() is True
        assert handler.requests[0].headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_ping_unavailable(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/ping/"): httpx.Response(503)})
        assert await make_gateway(handler).ping() is False

    @pytest.mark.asyncio
    async def test_ping_connection_refused(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assert await make_gateway(refuse).ping() is False


class TestLookups:
    """Tests for find-by-name primitives."""

    @pytest.mark.asyncio
    async def test_find_organization(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/organizations/"): listing(1)})

        assert await make_gateway(handler).find_organization("Default") == 1
        assert handler.requests[0].url.params["name"] == "Default"

    @pytest.mark.asyncio
    async def test_find_inventory_not_found(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/inventories/"): listing()})
        assert await make_gateway(handler).find_inventory("k8s prod") is None

    @pytest.mark.asyncio
    async def test_lookup_error_status_raises(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/organizations/"): httpx.Response(401)})

        with pytest.raises(AwxApiError) as exc_info:
            await make_gateway(handler).find_organization("Default")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_listing_raises(self) -> None:
        handler = RecordingHandler(
            {("GET", "/api/v2/inventories/"): httpx.Response(200, text="<html>")}
        )
        with pytest.raises(AwxApiError):
            await make_gateway(handler).find_inventory("prod")

    @pytest.mark.asyncio
    async def test_transport_error_raises_connection_error(self) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(AwxConnectionError):
            await make_gateway(timeout).find_host(1, "vm1")


class TestCreateInventory:
    """Tests for inventory creation and conflict handling."""

    @pytest.mark.asyncio
    async def test_created(self) -> None:
        handler = RecordingHandler(
            {("POST", "/api/v2/inventories/"): httpx.Response(201, json={"id": 42, "name": "x"})}
        )

        assert await make_gateway(handler).create_inventory("k8s prod", 1) == 42
        assert json.loads(handler.requests[0].content) == {"name": "k8s prod", "organization": 1}

    @pytest.mark.asyncio
    async def test_conflict_falls_back_to_lookup(self) -> None:
        handler = RecordingHandler(
            {
                ("POST", "/api/v2/inventories/"): httpx.Response(
                    400, json={"__all__": ["Inventory with this Name and Organization already exists."]}
                ),
                ("GET", "/api/v2/inventories/"): listing(17),
            }
        )

        assert await make_gateway(handler).create_inventory("k8s prod", 1) == 17

    @pytest.mark.asyncio
    async def test_server_error_raises(self) -> None:
        handler = RecordingHandler(
            {("POST", "/api/v2/inventories/"): httpx.Response(500, text="boom")}
        )

        with pytest.raises(AwxApiError) as exc_info:
            await make_gateway(handler).create_inventory("k8s prod", 1)

        assert exc_info.value.status_code == 500
        assert "boom" in str(exc_info.value)


class TestHosts:
    """Tests for host upsert and delete."""

    @pytest.mark.asyncio
    async def test_upsert_creates_missing_host(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/hosts/"): listing(),
                ("POST", "/api/v2/inventories/42/hosts/"): httpx.Response(
                    201, json={"id": 7, "name": "vm1"}
                ),
            }
        )
        variables = {"ansible_host": "10.0.0.5", "labels": {"tier": "web"}}

        host_id = await make_gateway(handler).upsert_host(42, "vm1", variables)

        assert host_id == 7
        body = json.loads(handler.sent("POST")[0].content)
        assert body["name"] == "vm1"
        assert body["inventory"] == 42
        assert isinstance(body["variables"], str)
        assert json.loads(body["variables"]) == variables

    @pytest.mark.asyncio
    async def test_upsert_patches_existing_host(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/hosts/"): listing(7),
                ("PATCH", "/api/v2/hosts/7/"): httpx.Response(200, json={"id": 7}),
            }
        )

        host_id = await make_gateway(handler).upsert_host(42, "vm1", {"ansible_host": "10.0.0.9"})

        assert host_id == 7
        assert handler.sent("POST") == []
        body = json.loads(handler.sent("PATCH")[0].content)
        assert json.loads(body["variables"]) == {"ansible_host": "10.0.0.9"}

    @pytest.mark.asyncio
    async def test_upsert_rejected_raises(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/hosts/"): listing(),
                ("POST", "/api/v2/inventories/42/hosts/"): httpx.Response(403),
            }
        )
        with pytest.raises(AwxApiError):
            await make_gateway(handler).upsert_host(42, "vm1", {})

    @pytest.mark.asyncio
    async def test_delete_missing_host_is_noop(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/inventories/42/hosts/"): listing()})

        assert await make_gateway(handler).delete_host(42, "vm1") is False
        assert handler.sent("DELETE") == []

    @pytest.mark.asyncio
    async def test_delete_existing_host(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/hosts/"): listing(7),
                ("DELETE", "/api/v2/hosts/7/"): httpx.Response(204),
            }
        )
        assert await make_gateway(handler).delete_host(42, "vm1") is True

    @pytest.mark.asyncio
    async def test_delete_race_with_404_succeeds(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/hosts/"): listing(7),
                ("DELETE", "/api/v2/hosts/7/"): httpx.Response(404),
            }
        )
        assert await make_gateway(handler).delete_host(42, "vm1") is False

    @pytest.mark.asyncio
    async def test_delete_error_raises(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/hosts/"): listing(7),
                ("DELETE", "/api/v2/hosts/7/"): httpx.Response(500),
            }
        )
        with pytest.raises(AwxApiError):
            await make_gateway(handler).delete_host(42, "vm1")


class TestGroups:
    """Tests for group creation and membership."""

    @pytest.mark.asyncio
    async def test_existing_group_is_returned(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/inventories/42/groups/"): listing(5)})

        assert await make_gateway(handler).find_or_create_group(42, "web") == 5
        assert handler.sent("POST") == []

    @pytest.mark.asyncio
    async def test_group_created(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/groups/"): listing(),
                ("POST", "/api/v2/inventories/42/groups/"): httpx.Response(
                    201, json={"id": 6, "name": "web"}
                ),
            }
        )
        assert await make_gateway(handler).find_or_create_group(42, "web") == 6

    @pytest.mark.asyncio
    async def test_group_conflict_falls_back_to_lookup(self) -> None:
        lookups = iter([listing(), listing(9)])
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/inventories/42/groups/"): lambda request: next(lookups),
                ("POST", "/api/v2/inventories/42/groups/"): httpx.Response(400),
            }
        )
        assert await make_gateway(handler).find_or_create_group(42, "web") == 9

    @pytest.mark.asyncio
    async def test_add_host_already_member(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/groups/5/hosts/"): listing(7)})

        await make_gateway(handler).add_host_to_group(5, 7)

        assert handler.sent("POST") == []

    @pytest.mark.asyncio
    async def test_add_host_associates(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/groups/5/hosts/"): listing(),
                ("POST", "/api/v2/groups/5/hosts/"): httpx.Response(204),
            }
        )

        await make_gateway(handler).add_host_to_group(5, 7)

        assert json.loads(handler.sent("POST")[0].content) == {"id": 7}

    @pytest.mark.asyncio
    async def test_add_host_400_is_success(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/groups/5/hosts/"): listing(),
                ("POST", "/api/v2/groups/5/hosts/"): httpx.Response(400),
            }
        )
        await make_gateway(handler).add_host_to_group(5, 7)

    @pytest.mark.asyncio
    async def test_add_host_error_raises(self) -> None:
        handler = RecordingHandler(
            {
                ("GET", "/api/v2/groups/5/hosts/"): listing(),
                ("POST", "/api/v2/groups/5/hosts/"): httpx.Response(500),
            }
        )
        with pytest.raises(AwxApiError):
            await make_gateway(handler).add_host_to_group(5, 7)


class TestConstruction:
    """Tests for gateway construction helpers."""

    def test_token_required(self) -> None:
        with pytest.raises(ValueError):
            AwxGateway(BASE_URL, "")

    def test_encode_variables_is_stable(self) -> None:
        assert encode_variables({"b": 1, "a": {"y": 2, "x": 1}}) == '{"a": {"x": 1, "y": 2}, "b": 1}'

    @pytest.mark.asyncio
    async def test_trailing_slash_in_base_url(self) -> None:
        handler = RecordingHandler({("GET", "/api/v2/ping/"): httpx.Response(200)})
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        gateway = AwxGateway(BASE_URL + "/", "token", client=client)

        assert await gateway.ping() is True
        assert str(handler.requests[0].url) == f"{BASE_URL}/api/v2/ping/"
