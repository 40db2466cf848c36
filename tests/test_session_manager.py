"""Tests for login, registration, logout, restore and profile updates."""
import asyncio

import pytest

from shopsync.data.schemas import Role
from shopsync.session.manager import (
    BAD_CREDENTIALS_MESSAGE,
    EMAIL_TAKEN_MESSAGE,
    LIMITED_LOGIN_MESSAGE,
    LOGIN_FAILED_MESSAGE,
    NETWORK_MESSAGE,
    NO_SUCH_USER_MESSAGE,
    UNEXPECTED_LOGIN_RESPONSE_MESSAGE,
    ErrorKind,
)
from shopsync.storage.kv import MemoryKeyValueStore
from shopsync.utils.events import ChangeReason, Event


def pairs(lines):
    return [(line.product_id, line.quantity) for line in lines]


def test_login_applies_server_cart_before_returning(backend, storage, make_service):
    backend.carts["u1"] = {"p1": 2}

    async def scenario():
        service = make_service()
        result = await service.session.login("alice@example.com", "alice-pw")
        # Read immediately, before anything else gets a chance to run
        lines = service.cart_store.lines
        await service.aclose()
        return service, result, lines

    service, result, lines = asyncio.run(scenario())
    snapshot = storage.snapshot()
    assert result == {"success": True, "message": "Login successful"}
    assert pairs(lines) == [("p1", 2)]
    assert snapshot["userId"] == "u1"
    assert backend.tokens[snapshot["token"]] == "u1"
    assert snapshot["triggerAppRefresh"] == "true"
    assert service.session.is_authenticated
    assert service.session.session.role == Role.USER
    assert not service.session.is_admin


def test_admin_login_sets_role(backend, make_service):
    async def scenario():
        service = make_service()
        await service.session.login("root@example.com", "root-pw")
        await service.aclose()
        return service

    assert asyncio.run(scenario()).session.is_admin


@pytest.mark.parametrize("email,password,setup,message,kind", [
    ("alice@example.com", "wrong", None, BAD_CREDENTIALS_MESSAGE, ErrorKind.CREDENTIAL),
    ("nobody@example.com", "pw", None, NO_SUCH_USER_MESSAGE, ErrorKind.NOT_FOUND),
    ("alice@example.com", "alice-pw", ("network", None), NETWORK_MESSAGE, ErrorKind.NETWORK),
    ("alice@example.com", "alice-pw", (500, "Database is asleep"), "Database is asleep", ErrorKind.OTHER),
    ("alice@example.com", "alice-pw", (500, None), LOGIN_FAILED_MESSAGE, ErrorKind.OTHER),
    ("alice@example.com", "alice-pw", (200, "ok"), UNEXPECTED_LOGIN_RESPONSE_MESSAGE, ErrorKind.CREDENTIAL),
])
def test_login_failures_map_to_messages(backend, storage, make_service, email, password, setup, message, kind):
    if setup is not None:
        backend.fail("POST", "/auth/login", status=setup[0], message=setup[1])

    async def scenario():
        service = make_service()
        result = await service.session.login(email, password)
        await service.aclose()
        return service, result

    service, result = asyncio.run(scenario())
    assert result["success"] is False
    assert result["message"] == message
    assert service.session.error == message
    assert service.session.error_kind == kind
    assert not service.session.is_authenticated
    assert "token" not in storage.snapshot()


def test_login_validation_sends_nothing(backend, make_service):
    async def scenario():
        service = make_service()
        result = await service.session.login("  ", "pw")
        await service.aclose()
        return result

    result = asyncio.run(scenario())
    assert result["error_kind"] == ErrorKind.VALIDATION.value
    assert backend.calls == []


def test_switching_users_leaves_nothing_of_the_previous_one(backend, storage, make_service):
    backend.carts["u1"] = {"p1": 3}
    backend.carts["u2"] = {"p2": 1}
    reasons = []

    async def scenario():
        service = make_service()
        service.channel.subscribe(Event.SESSION_CHANGED, lambda change: reasons.append(change.reason))
        await service.session.login("alice@example.com", "alice-pw")
        alice_token = await storage.get("token")
        await service.session.login("bob@example.com", "bob-pw")
        await service.aclose()
        return service, alice_token

    service, alice_token = asyncio.run(scenario())
    snapshot = storage.snapshot()
    assert reasons == [ChangeReason.LOGIN, ChangeReason.LOGOUT, ChangeReason.LOGIN]
    assert snapshot["token"] != alice_token
    assert snapshot["userId"] == "u2"
    assert pairs(service.cart_store.lines) == [("p2", 1)]
    # Alice's cart was not merged into Bob's
    assert backend.carts["u2"] == {"p2": 1}
    assert backend.carts["u1"] == {"p1": 3}


def test_login_with_profile_outage_uses_token_identity(backend, storage, make_service):
    backend.fail("GET", "/auth/me", status=503)

    async def scenario():
        service = make_service()
        result = await service.session.login("alice@example.com", "alice-pw")
        await service.aclose()
        return service, result

    service, result = asyncio.run(scenario())
    assert result == {"success": True, "message": LIMITED_LOGIN_MESSAGE}
    assert service.session.session.degraded
    assert service.session.user_id == "u1"
    assert storage.snapshot()["userId"] == "u1"
    assert backend.count("GET", "/auth/cart/") == 0


def test_register_never_signs_in(backend, storage, make_service):
    async def scenario():
        service = make_service()
        result = await service.session.register("Carol", "carol@example.com", "carol-pw")
        await service.aclose()
        return service, result

    service, result = asyncio.run(scenario())
    assert result["success"] is True
    assert "carol@example.com" in backend.users
    assert backend.calls_for("POST", "/auth/register")[0][2]["role"] == "user"
    assert "token" not in storage.snapshot()
    assert not service.session.is_authenticated


def test_register_existing_email(backend, make_service):
    async def scenario():
        service = make_service()
        result = await service.session.register("Alice", "alice@example.com", "pw")
        await service.aclose()
        return result

    result = asyncio.run(scenario())
    assert result["message"] == EMAIL_TAKEN_MESSAGE
    assert result["error_kind"] == ErrorKind.CONFLICT.value


def test_register_server_error_mentions_status(backend, make_service):
    backend.fail("POST", "/auth/register", status=502)

    async def scenario():
        service = make_service()
        result = await service.session.register("Dan", "dan@example.com", "pw")
        await service.aclose()
        return result

    assert asyncio.run(scenario())["message"] == "Registration failed (502). Please try again."


@pytest.mark.parametrize("failure", [500, "network"])
def test_logout_clears_everything_even_when_server_fails(backend, storage, make_service, failure):
    backend.carts["u1"] = {"p1": 2}
    backend.fail("GET", "/auth/logout", status=failure)

    async def scenario():
        service = make_service()
        await service.session.login("alice@example.com", "alice-pw")
        result = await service.session.logout()
        await service.aclose()
        return service, result

    service, result = asyncio.run(scenario())
    snapshot = storage.snapshot()
    assert result["success"] is True
    for key in ("token", "userId", "cartItems"):
        assert key not in snapshot
    assert service.cart_store.is_empty
    assert not service.session.is_authenticated
    assert service.client.token is None


def test_restore_session_fetches_server_cart(backend, make_service):
    backend.carts["u1"] = {"p1": 1}
    token = backend.issue_token("u1")

    async def scenario():
        service = make_service(MemoryKeyValueStore({"token": token, "userId": "u1"}))
        await service.start(load_products=False)
        await service.aclose()
        return service

    service = asyncio.run(scenario())
    assert service.session.user_id == "u1"
    assert not service.session.session.degraded
    assert pairs(service.cart_store.lines) == [("p1", 1)]


def test_restore_discards_rejected_token(backend, make_service):
    store = MemoryKeyValueStore({"token": "revoked", "userId": "u1", "cartItems": "[]"})

    async def scenario():
        service = make_service(store)
        await service.start(load_products=False)
        await service.aclose()
        return service

    service = asyncio.run(scenario())
    assert not service.session.is_authenticated
    assert store.snapshot() == {}


def test_restore_during_backend_outage_keeps_token_identity(backend, make_service):
    token = backend.issue_token("u1")
    backend.fail("GET", "/auth/me", status=500)
    store = MemoryKeyValueStore({"token": token})

    async def scenario():
        service = make_service(store)
        await service.start(load_products=False)
        await service.aclose()
        return service

    service = asyncio.run(scenario())
    assert service.session.is_authenticated
    assert service.session.session.degraded
    assert service.session.user_id == "u1"
    assert store.snapshot()["token"] == token
    assert service.cart_store.is_empty


def test_restore_discards_unreadable_token_when_profile_unreachable(backend, make_service):
    backend.fail("GET", "/auth/me", status="network")
    store = MemoryKeyValueStore({"token": "garbage"})

    async def scenario():
        service = make_service(store)
        await service.start(load_products=False)
        await service.aclose()
        return service

    service = asyncio.run(scenario())
    assert not service.session.is_authenticated
    assert "token" not in store.snapshot()


def test_update_profile_keeps_token(backend, storage, make_service):
    async def scenario():
        service = make_service()
        await service.session.login("alice@example.com", "alice-pw")
        token = service.session.session.token
        result = await service.session.update_profile({"name": "Alice B"})
        await service.aclose()
        return service, token, result

    service, token, result = asyncio.run(scenario())
    assert result["success"] is True
    assert result["profile"]["name"] == "Alice B"
    assert service.session.session.token == token
    assert storage.snapshot()["token"] == token
    assert backend.calls_for("PUT", "/auth/updateProfile")[0][2]["userId"] == "u1"


def test_update_profile_without_token(make_service):
    async def scenario():
        service = make_service()
        result = await service.session.update_profile({"name": "X"})
        await service.aclose()
        return result

    result = asyncio.run(scenario())
    assert result["success"] is False
    assert result["message"] == "Authentication token is missing"
