"""
Panel admin API client.

Looks up order customer details and checks whether a panel username exists.
Two panel dialects are supported:

- RENTAL: a single endpoint taking ``key`` and ``action`` query parameters.
- STANDARD: RESTful endpoints authenticated with an ``X-Api-Key`` header.

Every failure to get a usable answer (no credentials, transport error,
non-2xx status, undecodable body, panel-reported error) raises
``UpstreamDependencyError``; callers choose whether to fail open or closed.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ordergate.database.models import Panel, PanelType
from ordergate.errors import UpstreamDependencyError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
USER_NOT_FOUND_MARKERS = ("not found", "invalid user", "no user")


@dataclass
class AdminOrderInfo:
    """Customer and provider details of a panel order."""

    external_order_id: str
    customer_username: str | None = None
    customer_email: str | None = None
    status: str | None = None
    provider_name: str | None = None
    provider_order_id: str | None = None


def is_rental_panel(panel: Panel) -> bool:
    return panel.panel_type == PanelType.RENTAL or "/adminapi/v1" in (panel.admin_api_base_url or "")


def _rental_error(data: Any) -> str | None:
    """Extract the error string from a rental panel response, if any."""
    if not isinstance(data, dict):
        return None
    if data.get("error_message") and data.get("error_code"):
        return str(data["error_message"])
    if data.get("status") == "error" or data.get("error"):
        return str(data.get("error") or data.get("message") or "Rental panel API error")
    return None


class AdminApiClient:
    """
    Async client for panel admin APIs.

    The underlying ``httpx.AsyncClient`` is created lazily and can be
    injected for testing.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, panel: Panel, path: str, params: dict[str, Any]) -> Any:
        if not panel.admin_api_key:
            raise UpstreamDependencyError(f"Panel {panel.name} has no admin API key configured")
        if not panel.admin_api_base_url:
            raise UpstreamDependencyError(f"Panel {panel.name} has no admin API URL configured")

        base_url = panel.admin_api_base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if is_rental_panel(panel):
            url = base_url
            params = {"key": panel.admin_api_key, **params}
        else:
            url = f"{base_url}/{path.lstrip('/')}"
            headers["X-Api-Key"] = panel.admin_api_key

        logger.debug(f"Admin API GET {url} (panel {panel.name})")
        try:
            response = await self._get_client().get(url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamDependencyError(
                f"Admin API of panel {panel.name} responded with {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamDependencyError(f"Admin API request to panel {panel.name} failed: {e}") from e
        except ValueError as e:
            raise UpstreamDependencyError(f"Admin API of panel {panel.name} returned invalid JSON") from e

        if data == {"error": "bad_auth"}:
            raise UpstreamDependencyError(f"Invalid admin API key for panel {panel.name}")
        return data

    async def get_order_with_provider(self, panel: Panel, external_order_id: str) -> AdminOrderInfo | None:
        """
        Fetch an order's customer and provider details.

        Args:
            panel: Panel the order belongs to.
            external_order_id: Order ID as known by the panel.

        Returns:
            AdminOrderInfo | None: Order details, or None if the panel does
                not know the order.

        Raises:
            UpstreamDependencyError: If the panel could not be queried.
        """
        if is_rental_panel(panel):
            data = await self._request(
                panel, "", {"action": "getOrders-by-id", "orders": external_order_id, "provider": 1}
            )
            error = _rental_error(data)
            if error:
                raise UpstreamDependencyError(f"Panel {panel.name} error: {error}")
            orders = (data.get("orders") or []) if isinstance(data, dict) else []
            if not orders:
                return None
            order = orders[0]
            return AdminOrderInfo(
                external_order_id=str(order.get("id", external_order_id)),
                customer_username=order.get("username"),
                customer_email=None,
                status=order.get("order_status") or order.get("status"),
                provider_name=order.get("provider"),
                provider_order_id=order.get("external_id"),
            )

        data = await self._request(panel, f"/orders/{external_order_id}", {})
        order = data
        # Responses may be wrapped as {"data": {...}, "error_message": ..., "error_code": ...}
        if isinstance(order, dict) and isinstance(order.get("data"), dict) and order["data"].get("id"):
            order = order["data"]
        if not isinstance(order, dict) or not order.get("id"):
            return None
        return AdminOrderInfo(
            external_order_id=str(order["id"]),
            customer_username=order.get("user") or order.get("username"),
            customer_email=order.get("user_email"),
            status=order.get("status"),
            provider_name=order.get("provider"),
            provider_order_id=order.get("external_id"),
        )

    async def validate_username(self, panel: Panel, username: str) -> bool:
        """
        Check whether a username exists on the panel.

        Returns:
            bool: False only when the panel positively reports that the
                user does not exist.

        Raises:
            UpstreamDependencyError: If the panel could not be queried.
        """
        if is_rental_panel(panel):
            data = await self._request(panel, "", {"action": "getOrders-by-user", "username": username, "limit": 1})
            error = _rental_error(data)
            if error:
                if any(marker in error.lower() for marker in USER_NOT_FOUND_MARKERS):
                    return False
                raise UpstreamDependencyError(f"Panel {panel.name} error: {error}")
            return True

        data = await self._request(panel, "/users", {"search": username})
        users = data.get("data") if isinstance(data, dict) else data
        if isinstance(users, list):
            wanted = username.strip().lower()
            return any(str(u.get("username", "")).lower() == wanted for u in users if isinstance(u, dict))

        logger.info(f"Cannot determine whether '{username}' exists on panel {panel.name}, assuming it does")
        return True
