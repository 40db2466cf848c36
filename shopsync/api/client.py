"""Async client for the remote commerce REST API."""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from shopsync.config import settings
from shopsync.data.schemas import CartLine, normalize_lines
from shopsync.utils.log import mask_token
from .errors import CommerceApiError, NetworkError, error_for_status

logger = logging.getLogger(__name__)


class CommerceApiClient:
    """
    Thin wrapper over httpx.AsyncClient for the storefront backend.

    Authenticated calls carry the bearer token installed with set_token().
    Transport failures become NetworkError and non-2xx statuses become the
    matching CommerceApiError subclass, so callers never see raw httpx errors.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: API root (defaults to settings.api_base_url)
            timeout: Connect/read timeout in seconds (defaults to settings.api_timeout)
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.base_url = base_url or settings.api_base_url
        self.timeout = timeout if timeout is not None else settings.api_timeout
        self.token: Optional[str] = None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "CommerceApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_token(self, token: str) -> None:
        self.token = token
        self._client.headers["Authorization"] = f"Bearer {token}"
        logger.debug(f"[API] Using token {mask_token(token)}")

    def clear_token(self) -> None:
        self.token = None
        self._client.headers.pop("Authorization", None)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        logger.debug(f"[API] Request: {method} {path}")
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e.__class__.__name__}: {e}") from e

        logger.debug(f"[API] Response: {response.status_code} {path}")
        payload = self._parse_body(response)
        if response.is_error:
            error = error_for_status(
                response.status_code,
                f"{method} {path} returned {response.status_code}",
                payload=payload,
            )
            logger.warning(f"[API] {error.message}: {error.server_message or 'no message'}")
            raise error
        return payload

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            if response.is_error:
                return {"message": response.text}
            raise CommerceApiError(
                f"Invalid JSON from {response.request.url.path}",
                status_code=response.status_code,
            )

    @staticmethod
    def _cart_from(payload: Any, path: str) -> List[CartLine]:
        if not isinstance(payload, dict) or "cart" not in payload:
            raise CommerceApiError(f"No cart in response from {path}", payload=payload)
        try:
            return normalize_lines(payload["cart"])
        except ValueError as e:
            raise CommerceApiError(f"Malformed cart from {path}: {e}", payload=payload) from e

    # Auth

    async def get_me(self, token: Optional[str] = None) -> Dict[str, Any]:
        """Fetch the profile of the user owning the token."""
        payload = await self._request("GET", "/auth/me", token=token)
        if not isinstance(payload, dict):
            raise CommerceApiError("Profile response is not an object", payload=payload)
        return payload

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        payload = await self._request("POST", "/auth/login", json={"email": email, "password": password})
        return payload if isinstance(payload, dict) else {}

    async def register(self, name: str, email: str, password: str, role: str = "user") -> Dict[str, Any]:
        payload = await self._request(
            "POST",
            "/auth/register",
            json={"name": name, "email": email, "password": password, "role": role},
        )
        return payload if isinstance(payload, dict) else {}

    async def logout(self) -> None:
        await self._request("GET", "/auth/logout")

    async def update_profile(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = await self._request("PUT", "/auth/updateProfile", json=data)
        return payload if isinstance(payload, dict) else {}

    # Cart

    async def get_cart(self, user_id: str) -> List[CartLine]:
        path = f"/auth/cart/{quote(user_id, safe='')}"
        return self._cart_from(await self._request("GET", path), path)

    async def add_to_cart(self, user_id: str, product_id: str) -> List[CartLine]:
        """Add one unit of a product; the server has no quantity parameter."""
        path = f"/auth/addtocart/{quote(user_id, safe='')}"
        return self._cart_from(await self._request("POST", path, json={"productId": product_id}), path)

    async def remove_from_cart(self, user_id: str, product_id: str) -> List[CartLine]:
        path = f"/auth/removefromcart/{quote(user_id, safe='')}"
        return self._cart_from(await self._request("POST", path, json={"productId": product_id}), path)

    async def clear_cart(self, user_id: str) -> bool:
        payload = await self._request("DELETE", f"/order/clearcart/{quote(user_id, safe='')}")
        return bool(isinstance(payload, dict) and payload.get("success"))

    # Catalog

    async def get_products(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", "/product/allproducts")
        if not isinstance(payload, list):
            raise CommerceApiError("Product list response is not a list", payload=payload)
        return payload
