"""Shared fixtures: an in-process fake of the commerce backend."""
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import jwt
import pytest

from shopsync.service import StorefrontService
from shopsync.storage.kv import MemoryKeyValueStore

BASE_URL = "http://shop.test"
JWT_SECRET = "fake-backend-signing-secret-0123456789"


class FakeCommerceBackend:
    """
    Minimal stand-in for the storefront REST API.

    Records every call, keeps carts per user and can be told to fail specific
    routes with a status code or a connection error.
    """

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.carts: Dict[str, Dict[str, int]] = {}
        self.products: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str, Any]] = []
        self.failures: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.has_clear_endpoint = True
        # Called after every cart write response is built, with (user_id, product_id)
        self.after_write: Optional[Callable[[str, str], None]] = None
        # Requests parked until the test releases them, keyed by (method, path)
        self.holds: Dict[Tuple[str, str], asyncio.Event] = {}
        self.held: List[Tuple[str, str]] = []

    # Setup helpers

    def add_user(self, user_id: str, email: str, password: str = "secret", name: str = "Test User", role: str = "user"):
        self.users[email] = {"_id": user_id, "email": email, "password": password, "name": name, "role": role}
        self.carts.setdefault(user_id, {})
        return self.users[email]

    def issue_token(self, user_id: str) -> str:
        user = self.user_by_id(user_id)
        token = jwt.encode(
            {"id": user_id, "role": user["role"], "email": user["email"], "n": len(self.tokens)},
            JWT_SECRET,
            algorithm="HS256",
        )
        self.tokens[token] = user_id
        return token

    def user_by_id(self, user_id: str) -> Dict[str, Any]:
        for user in self.users.values():
            if user["_id"] == user_id:
                return user
        raise KeyError(user_id)

    def fail(self, method: str, path_prefix: str, status: Any = 500, message: Optional[str] = None, times: Optional[int] = None):
        """Make matching requests fail with `status` ("network" for a connection error)."""
        self.failures[(method, path_prefix)] = {"status": status, "message": message, "times": times}

    def hold(self, method: str, path: str) -> asyncio.Event:
        """Park the next matching request until the returned event is set. Call inside the event loop."""
        release = asyncio.Event()
        self.holds[(method, path)] = release
        return release

    def heal(self, method: str, path_prefix: str):
        self.failures.pop((method, path_prefix), None)

    def count(self, method: str, path_prefix: str) -> int:
        return len([c for c in self.calls if c[0] == method and c[1].startswith(path_prefix)])

    def calls_for(self, method: str, path_prefix: str) -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method and c[1].startswith(path_prefix)]

    def cart_lines(self, user_id: str) -> List[Dict[str, Any]]:
        return [{"productId": pid, "quantity": qty} for pid, qty in self.carts.get(user_id, {}).items()]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.async_handler)

    # Request handling

    def _json(self, status: int, body: Any) -> httpx.Response:
        return httpx.Response(status, json=body)

    def _auth_user(self, request: httpx.Request) -> Optional[str]:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        return self.tokens.get(header[len("Bearer "):])

    def _check_failure(self, request: httpx.Request) -> Optional[httpx.Response]:
        for (method, prefix), failure in list(self.failures.items()):
            if request.method == method and request.url.path.startswith(prefix):
                if failure["times"] is not None:
                    failure["times"] -= 1
                    if failure["times"] < 0:
                        continue
                if failure["status"] == "network":
                    raise httpx.ConnectError("connection refused", request=request)
                body = {"message": failure["message"]} if failure["message"] else {}
                return self._json(failure["status"], body)
        return None

    def _written(self, user_id: str, product_id: str) -> httpx.Response:
        response = self._json(200, {"cart": self.cart_lines(user_id)})
        # Runs after the response body is built, like a write from another device
        if self.after_write:
            self.after_write(user_id, product_id)
        return response

    async def async_handler(self, request: httpx.Request) -> httpx.Response:
        release = self.holds.pop((request.method, request.url.path), None)
        if release is not None:
            self.held.append((request.method, request.url.path))
            await release.wait()
        return self.handler(request)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.calls.append((request.method, path, body))

        failure = self._check_failure(request)
        if failure is not None:
            return failure

        if request.method == "POST" and path == "/auth/login":
            user = self.users.get(body.get("email"))
            if user is None:
                return self._json(404, {"message": "User not found"})
            if user["password"] != body.get("password"):
                return self._json(401, {"message": "Invalid credentials"})
            return self._json(200, {"token": self.issue_token(user["_id"]), "name": user["name"]})

        if request.method == "POST" and path == "/auth/register":
            if body.get("email") in self.users:
                return self._json(409, {"message": "User already exists"})
            user_id = f"u{len(self.users) + 100}"
            self.add_user(user_id, body["email"], body["password"], name=body["name"], role=body.get("role", "user"))
            return self._json(201, {"success": True})

        if request.method == "GET" and path == "/product/allproducts":
            return self._json(200, self.products)

        user_id = self._auth_user(request)
        if user_id is None:
            return self._json(401, {"message": "Not authorized"})

        if request.method == "GET" and path == "/auth/me":
            profile = {k: v for k, v in self.user_by_id(user_id).items() if k != "password"}
            return self._json(200, profile)

        if request.method == "GET" and path == "/auth/logout":
            return self._json(200, {"success": True})

        if request.method == "PUT" and path == "/auth/updateProfile":
            user = self.user_by_id(user_id)
            for key in ("name", "email", "address"):
                if key in body:
                    user[key] = body[key]
            profile = {k: v for k, v in user.items() if k != "password"}
            return self._json(200, profile)

        segments = path.strip("/").split("/")
        target = segments[-1]
        if target != user_id:
            return self._json(403, {"message": "Forbidden"})

        if request.method == "GET" and path.startswith("/auth/cart/"):
            return self._json(200, {"cart": self.cart_lines(target)})

        if request.method == "POST" and path.startswith("/auth/addtocart/"):
            cart = self.carts.setdefault(target, {})
            cart[body["productId"]] = cart.get(body["productId"], 0) + 1
            return self._written(target, body["productId"])

        if request.method == "POST" and path.startswith("/auth/removefromcart/"):
            self.carts.setdefault(target, {}).pop(body["productId"], None)
            return self._written(target, body["productId"])

        if request.method == "DELETE" and path.startswith("/order/clearcart/"):
            if not self.has_clear_endpoint:
                return self._json(404, {"message": "Cannot DELETE"})
            self.carts[target] = {}
            return self._json(200, {"success": True})

        return self._json(404, {"message": f"No route for {request.method} {path}"})


@pytest.fixture
def backend() -> FakeCommerceBackend:
    fake = FakeCommerceBackend()
    fake.add_user("u1", "alice@example.com", "alice-pw", name="Alice")
    fake.add_user("u2", "bob@example.com", "bob-pw", name="Bob")
    fake.add_user("admin1", "root@example.com", "root-pw", name="Root", role="admin")
    fake.products = [
        {"_id": "p1", "name": "Kettle", "new_price": 100, "old_price": 120, "image": "kettle.png"},
        {"_id": "p2", "name": "Mug", "price": 15},
        {"id": "p3", "name": "Teapot", "new_price": 40, "images": ["teapot.png"]},
    ]
    return fake


@pytest.fixture
def storage() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def make_service(backend, storage):
    """Build a StorefrontService against the fake backend. Call inside the test's event loop."""
    def factory(store: Optional[MemoryKeyValueStore] = None) -> StorefrontService:
        return StorefrontService(
            storage=store if store is not None else storage,
            base_url=BASE_URL,
            transport=backend.transport,
            refresh_settle_delay=0,
        )
    return factory
