"""AWX inventory gateway.

Thin async client for the AWX REST API (``/api/v2``). Every primitive is
safe to repeat:
- lookups return None instead of failing when nothing matches
- creates that collide with an existing object fall back to a lookup
- deletes of hosts that are already gone succeed

All requests carry the bearer token and a fixed client-side timeout.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .models import AwxObject, Host, ListResponse

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v2"

# Truncate error bodies in exceptions and logs
MAX_ERROR_BODY_LENGTH = 512


class GatewayError(Exception):
    """Base class for inventory gateway failures."""

    pass


class AwxConnectionError(GatewayError):
    """Raised when AWX cannot be reached (DNS, TLS, timeout, reset)."""

    pass


class AwxApiError(GatewayError):
    """Raised when AWX answers with an unexpected status code."""

    def __init__(self, operation: str, status_code: int, body: str = "") -> None:
        self.operation = operation
        self.status_code = status_code
        self.body = body[:MAX_ERROR_BODY_LENGTH]
        super().__init__(f"failed to {operation}: HTTP {status_code}, body: {self.body}")


class OrganizationNotFoundError(GatewayError):
    """Raised when the configured organization does not exist in AWX."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"organization '{name}' not found")


class InventoryGateway(Protocol):
    """Operations the reconciliation engine needs from the remote inventory."""

    async def ping(self) -> bool: ...

    async def find_organization(self, name: str) -> int | None: ...

    async def find_inventory(self, name: str) -> int | None: ...

    async def create_inventory(self, name: str, organization_id: int) -> int: ...

    async def find_host(self, inventory_id: int, name: str) -> int | None: ...

    async def upsert_host(
        self, inventory_id: int, name: str, variables: dict[str, Any]
    ) -> int: ...

    async def delete_host(self, inventory_id: int, name: str) -> bool: ...

    async def find_or_create_group(self, inventory_id: int, name: str) -> int: ...

    async def add_host_to_group(self, group_id: int, host_id: int) -> None: ...


def encode_variables(variables: dict[str, Any]) -> str:
    """Serialize host variables to the JSON string AWX stores."""
    return json.dumps(variables, sort_keys=True)


class AwxGateway:
    """InventoryGateway backed by the AWX REST API.

    The gateway owns its ``httpx.AsyncClient`` unless one is injected; use it
    as an async context manager or call ``aclose()`` when done.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = 30.0,
        verify_tls: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("AWX token is required")

        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            verify=verify_tls,
        )
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def __aenter__(self) -> AwxGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{API_PREFIX}{path}"
        try:
            return await self._client.request(
                method, url, params=params, json=payload, headers=self._headers
            )
        except httpx.RequestError as e:
            raise AwxConnectionError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _parse(response: httpx.Response, model: type[Any], operation: str) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise AwxApiError(operation, response.status_code, response.text) from e

    async def _find_one(self, path: str, name: str, operation: str) -> int | None:
        response = await self._request("GET", path, params={"name": name})
        if response.status_code != 200:
            raise AwxApiError(operation, response.status_code, response.text)
        listing: ListResponse = self._parse(response, ListResponse, operation)
        return listing.first_id()

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def ping(self) -> bool:
        """Return True if the AWX API answers its ping endpoint."""
        try:
            response = await self._request("GET", "/ping/")
        except AwxConnectionError as e:
            logger.debug("AWX ping failed", extra={"error": str(e)})
            return False
        return response.status_code == 200

    # -------------------------------------------------------------------------
    # Organizations and inventories
    # -------------------------------------------------------------------------

    async def find_organization(self, name: str) -> int | None:
        return await self._find_one("/organizations/", name, "get organization")

    async def find_inventory(self, name: str) -> int | None:
        return await self._find_one("/inventories/", name, "get inventory")

    async def create_inventory(self, name: str, organization_id: int) -> int:
        """Create an inventory, or return the existing one on a name conflict."""
        response = await self._request(
            "POST", "/inventories/", payload={"name": name, "organization": organization_id}
        )
        if response.status_code == 201:
            created: AwxObject = self._parse(response, AwxObject, "create inventory")
            return created.id

        if response.status_code == 400:
            # AWX rejects duplicate names with 400; someone else created it
            existing = await self.find_inventory(name)
            if existing is not None:
                logger.info(
                    "Inventory already exists, using it",
                    extra={"inventory_name": name, "inventory_id": existing},
                )
                return existing

        raise AwxApiError("create inventory", response.status_code, response.text)

    # -------------------------------------------------------------------------
    # Hosts
    # -------------------------------------------------------------------------

    async def find_host(self, inventory_id: int, name: str) -> int | None:
        return await self._find_one(f"/inventories/{inventory_id}/hosts/", name, "get host")

    async def upsert_host(self, inventory_id: int, name: str, variables: dict[str, Any]) -> int:
        """Patch the host if the inventory already has it, otherwise create it.

        Returns:
            The AWX host id.
        """
        encoded = encode_variables(variables)
        host_id = await self.find_host(inventory_id, name)

        if host_id is not None:
            response = await self._request(
                "PATCH", f"/hosts/{host_id}/", payload={"name": name, "variables": encoded}
            )
            if response.status_code != 200:
                raise AwxApiError("update host", response.status_code, response.text)
            logger.debug("Host updated", extra={"inventory_id": inventory_id, "host": name})
            return host_id

        response = await self._request(
            "POST",
            f"/inventories/{inventory_id}/hosts/",
            payload={"name": name, "inventory": inventory_id, "variables": encoded},
        )
        if response.status_code != 201:
            raise AwxApiError("create host", response.status_code, response.text)
        created: Host = self._parse(response, Host, "create host")
        logger.debug("Host created", extra={"inventory_id": inventory_id, "host": name})
        return created.id

    async def delete_host(self, inventory_id: int, name: str) -> bool:
        """Delete the host by name.

        Returns:
            True if a host was deleted, False if none existed.
        """
        host_id = await self.find_host(inventory_id, name)
        if host_id is None:
            return False

        response = await self._request("DELETE", f"/hosts/{host_id}/")
        if response.status_code not in (204, 404):
            raise AwxApiError("delete host", response.status_code, response.text)
        return response.status_code == 204

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def find_or_create_group(self, inventory_id: int, name: str) -> int:
        path = f"/inventories/{inventory_id}/groups/"
        group_id = await self._find_one(path, name, "get group")
        if group_id is not None:
            return group_id

        response = await self._request("POST", path, payload={"name": name})
        if response.status_code == 201:
            created: AwxObject = self._parse(response, AwxObject, "create group")
            return created.id

        if response.status_code == 400:
            group_id = await self._find_one(path, name, "get group")
            if group_id is not None:
                return group_id

        raise AwxApiError("create group", response.status_code, response.text)

    async def add_host_to_group(self, group_id: int, host_id: int) -> None:
        """Associate a host with a group; existing membership is success."""
        path = f"/groups/{group_id}/hosts/"
        response = await self._request("GET", path, params={"id": host_id})
        if response.status_code == 200:
            members: ListResponse = self._parse(response, ListResponse, "list group hosts")
            if any(member.id == host_id for member in members.results):
                return

        response = await self._request("POST", path, payload={"id": host_id})
        # 400 means AWX already has the association
        if response.status_code in (201, 204, 400):
            return
        raise AwxApiError("add host to group", response.status_code, response.text)
