"""Cart synchronization between the guest cart, the cart store and the server."""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from shopsync.api.client import CommerceApiClient
from shopsync.api.errors import (
    AuthorizationError,
    CommerceApiError,
    EndpointUnavailableError,
    NotFoundError,
)
from shopsync.catalog import Catalog
from shopsync.data.schemas import CartLine, OwnerMode, lines_to_json
from shopsync.session.manager import SessionManager, profile_user_id
from shopsync.storage.kv import CART_ITEMS_KEY
from shopsync.utils.events import ChangeReason, Event, EventChannel, SessionChange
from .store import CartStore

logger = logging.getLogger(__name__)

ADD_FAILED_MESSAGE = "Failed to add item to cart. Please try again."
REMOVE_FAILED_MESSAGE = "Failed to remove item from cart. Please try again."
UPDATE_FAILED_MESSAGE = "Failed to update cart item. Please try again."
SYNC_FAILED_MESSAGE = "Some items from your cart could not be saved to your account."


def _as_quantities(lines: List[CartLine]) -> Dict[str, int]:
    return {line.product_id: line.quantity for line in lines}


class CartSyncEngine:
    """
    Keeps one consistent cart across guest and signed-in use.

    Guest mutations touch only the cart store. Signed-in mutations re-derive
    the user from /auth/me right before every write, apply the server's full
    cart from the response, then re-read the cart and let that read win if it
    disagrees. Any failed or stale fetch empties the cart rather than leaving
    an old one on screen. Mutations of the same product are serialized.
    """

    def __init__(
        self,
        client: CommerceApiClient,
        session_manager: SessionManager,
        store: CartStore,
        channel: EventChannel,
        catalog: Optional[Catalog] = None
    ):
        """
        Initialize the engine and subscribe it to session events.

        Args:
            client: Commerce API client
            session_manager: Source of the current session (read only)
            store: Cart store holding the live cart
            channel: Event channel shared with the session manager
            catalog: Product catalog used for totals
        """
        self.client = client
        self.session_manager = session_manager
        self.store = store
        self.channel = channel
        self.catalog = catalog if catalog is not None else Catalog()
        self.last_error: Optional[str] = None
        self._line_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._guest_snapshot: Optional[List[CartLine]] = None

        channel.subscribe(Event.LOGIN_STARTED, self._on_login_started)
        channel.subscribe(Event.SESSION_CHANGED, self._on_session_changed)

    @property
    def cart_items(self) -> List[CartLine]:
        return self.store.lines

    @property
    def owner_mode(self) -> OwnerMode:
        if self.session_manager.is_authenticated:
            return OwnerMode.AUTHENTICATED
        return OwnerMode.GUEST

    # Session transitions

    async def _on_login_started(self, previous_user_id: Optional[str]) -> None:
        if not self.session_manager.is_authenticated and self.store.owner_mode == OwnerMode.GUEST:
            self._guest_snapshot = self.store.lines
            logger.info(f"[CART] Holding {len(self._guest_snapshot)} guest lines for sync after login")

    async def _on_session_changed(self, change: SessionChange) -> None:
        logger.info(f"[CART] Session changed ({change.reason.value}): {change.previous_user_id} -> {change.user_id}")
        if change.reason in (ChangeReason.LOGOUT, ChangeReason.EXPIRED):
            # The session manager already removed the persisted cart
            await self.store.clear(owner_mode=OwnerMode.GUEST, persist=False)
        elif change.reason == ChangeReason.USER_DRIFT:
            await self.store.clear(owner_mode=OwnerMode.AUTHENTICATED)
        elif change.reason == ChangeReason.RESTORE:
            await self.refresh_cart()
        elif change.reason == ChangeReason.LOGIN:
            await self.sync_local_cart_to_server()

    # Helpers

    def _is_current(self, user_id: Optional[str]) -> bool:
        return (
            user_id is not None
            and self.session_manager.is_authenticated
            and self.session_manager.user_id == user_id
        )

    async def _drop_stale(self, user_id: Optional[str], what: str) -> None:
        logger.warning(
            f"[CART] Discarding {what} for user {user_id}; "
            f"current user is {self.session_manager.user_id}"
        )
        await self.store.clear()

    async def _apply_if_current(self, user_id: str, lines: List[CartLine], what: str) -> bool:
        if not self._is_current(user_id):
            await self._drop_stale(user_id, what)
            return False
        await self.store.replace(lines, owner_mode=OwnerMode.AUTHENTICATED)
        return True

    async def _resolve_identity(self) -> str:
        """
        Ask the server who owns the token right now.

        The cached session user is never trusted for writes. If the server
        reports a different user, the session manager adopts it (which also
        empties the cart) before the caller writes anything.
        """
        profile = await self.client.get_me()
        user_id = profile_user_id(profile)
        if user_id is None:
            raise CommerceApiError("Profile has no user id", payload=profile)
        await self.session_manager.reconcile_user_id(user_id)
        return user_id

    async def _report(self, message: str, error: Exception) -> None:
        logger.error(f"[CART] {message} ({error.__class__.__name__}: {error})")
        if isinstance(error, AuthorizationError) and self.session_manager.is_authenticated:
            await self.session_manager.expire_session()
        self.last_error = message
        await self.channel.emit(Event.CART_ERROR, message)

    async def _verify(self, user_id: str, written: List[CartLine]) -> None:
        """Re-read the cart after a write; the re-read wins when they disagree."""
        try:
            verified = await self.client.get_cart(user_id)
        except CommerceApiError as e:
            logger.warning(f"[CART] Verification fetch failed, keeping write response: {e}")
            return
        if _as_quantities(verified) != _as_quantities(written):
            logger.warning(
                f"[CART] Server cart differs from write response for user {user_id}, "
                f"applying server cart ({len(verified)} lines)"
            )
            await self._apply_if_current(user_id, verified, "verification fetch")

    # Fetching

    async def fetch_cart_data(self, expected_user_id: Optional[str]) -> List[CartLine]:
        """
        Replace the cart with the server cart of `expected_user_id`.

        The request is skipped, and its result dropped, unless `expected_user_id`
        is still the signed-in user both before and after the call. Any failure
        empties the cart.

        Returns:
            The applied lines (empty when nothing was applied)
        """
        if not self._is_current(expected_user_id):
            await self._drop_stale(expected_user_id, "cart fetch")
            return []

        try:
            lines = await self.client.get_cart(expected_user_id)
        except CommerceApiError as e:
            logger.error(f"[CART] Error fetching cart data: {e}")
            if isinstance(e, AuthorizationError):
                await self.session_manager.expire_session()
            elif self._is_current(expected_user_id):
                await self.store.clear(owner_mode=OwnerMode.AUTHENTICATED)
            return []

        if not await self._apply_if_current(expected_user_id, lines, "cart fetch"):
            return []
        logger.info(f"[CART] Fetched cart for user {expected_user_id}: {len(lines)} lines (v{self.store.version})")
        return lines

    async def refresh_cart(self) -> List[CartLine]:
        """
        Pull the latest truth into the cart store.

        Guests get their persisted cart back. Signed-in users get identity
        re-checked against the server, a drifted cached user id corrected, and
        a fresh cart fetch. Failures are logged only.
        """
        if not self.session_manager.is_authenticated:
            lines = await self.store.load_persisted()
            await self.store.replace(lines, owner_mode=OwnerMode.GUEST, persist=False)
            return lines

        await self.store.clear(owner_mode=OwnerMode.AUTHENTICATED, persist=False)
        try:
            user_id = await self._resolve_identity()
        except AuthorizationError:
            await self.session_manager.expire_session()
            return []
        except CommerceApiError as e:
            logger.error(f"[CART] Could not refresh cart, identity unavailable: {e}")
            return []
        return await self.fetch_cart_data(user_id)

    async def load_persisted_cart(self) -> List[CartLine]:
        """Hydrate the cart store from storage at startup, as a guest cart."""
        lines = await self.store.load_persisted()
        await self.store.replace(lines, owner_mode=OwnerMode.GUEST)
        logger.info(f"[CART] Loaded {len(lines)} persisted cart lines")
        return lines

    # Mutations

    async def _add_authenticated(self, product_id: str, verify: bool = True) -> bool:
        try:
            user_id = await self._resolve_identity()
            lines = await self.client.add_to_cart(user_id, product_id)
        except CommerceApiError as e:
            await self._report(ADD_FAILED_MESSAGE, e)
            return False
        if not await self._apply_if_current(user_id, lines, "add response"):
            return False
        logger.info(f"[CART] Item {product_id} added to cart of user {user_id}")
        if verify:
            await self._verify(user_id, lines)
        return True

    async def _remove_authenticated(self, product_id: str, verify: bool = True) -> bool:
        try:
            user_id = await self._resolve_identity()
            lines = await self.client.remove_from_cart(user_id, product_id)
        except CommerceApiError as e:
            await self._report(REMOVE_FAILED_MESSAGE, e)
            return False
        if not await self._apply_if_current(user_id, lines, "remove response"):
            return False
        logger.info(f"[CART] Item {product_id} removed from cart of user {user_id}")
        if verify:
            await self._verify(user_id, lines)
        return True

    async def add_to_cart(self, product_id: str) -> bool:
        """
        Add one unit of a product.

        Returns:
            True on success; on failure a CART_ERROR is published and False returned
        """
        if not self.session_manager.is_authenticated:
            try:
                await self.store.upsert(product_id)
            except OSError as e:
                await self._report(ADD_FAILED_MESSAGE, e)
                return False
            return True

        async with self._line_locks[product_id]:
            return await self._add_authenticated(product_id)

    async def remove_from_cart(self, product_id: str) -> bool:
        """Remove a product's line entirely."""
        if not self.session_manager.is_authenticated:
            try:
                await self.store.delete(product_id)
            except OSError as e:
                await self._report(REMOVE_FAILED_MESSAGE, e)
                return False
            return True

        async with self._line_locks[product_id]:
            return await self._remove_authenticated(product_id)

    async def update_cart_item_count(self, product_id: str, new_quantity: int) -> bool:
        """
        Set the quantity of a line; zero or less removes it.

        The server has no set-quantity call, so signed-in updates remove the
        line and add it back one unit at a time. This is not atomic: a failure
        part way leaves fewer units than asked for, and the final fetch shows
        whatever the server ended up with.
        """
        if new_quantity <= 0:
            return await self.remove_from_cart(product_id)

        if not self.session_manager.is_authenticated:
            try:
                updated = await self.store.set_quantity(product_id, new_quantity)
            except OSError as e:
                await self._report(UPDATE_FAILED_MESSAGE, e)
                return False
            if not updated:
                logger.info(f"[CART] Product {product_id} is not in the guest cart, nothing to update")
            return updated

        async with self._line_locks[product_id]:
            ok = await self._remove_authenticated(product_id, verify=False)
            added = 0
            while ok and added < new_quantity:
                ok = await self._add_authenticated(product_id, verify=False)
                if ok:
                    added += 1
            if not ok:
                logger.error(f"[CART] Quantity update for {product_id} stopped after {added}/{new_quantity} units")
            await self.fetch_cart_data(self.session_manager.user_id)
            return ok

    async def clear_cart(self) -> bool:
        """
        Empty the cart locally at once, then on the server.

        Uses the bulk clear endpoint, or per-line removal where the server does
        not offer it, and finishes with one verification read. The local result
        always stands, whatever the server does.
        """
        await self.store.clear()
        logger.info("[CART] Cart cleared locally")
        if not self.session_manager.is_authenticated:
            return True

        try:
            user_id = await self._resolve_identity()
        except CommerceApiError as e:
            if isinstance(e, AuthorizationError):
                await self.session_manager.expire_session()
            logger.warning(f"[CART] Could not clear server cart, identity unavailable: {e}")
            return True

        try:
            try:
                if not await self.client.clear_cart(user_id):
                    logger.warning("[CART] Server did not confirm cart clear")
            except (EndpointUnavailableError, NotFoundError):
                logger.info("[CART] Bulk clear unavailable, removing lines one by one")
                for line in await self.client.get_cart(user_id):
                    await self.client.remove_from_cart(user_id, line.product_id)

            remaining = await self.client.get_cart(user_id)
            if remaining:
                logger.warning(f"[CART] Server still reports {len(remaining)} lines after clear for user {user_id}")
        except CommerceApiError as e:
            logger.warning(f"[CART] Server cart clear failed: {e}")
        return True

    async def sync_local_cart_to_server(self, guest_lines: Optional[List[CartLine]] = None) -> bool:
        """
        Merge the pre-login guest cart into the signed-in user's server cart.

        Runs once per login. The server cart is fetched first as the baseline,
        then every guest unit is replayed as a separate add, because the server
        add call always adds exactly one unit. Quantities therefore add up with
        what the server already had. Afterwards the persisted guest cart is
        reset to empty.

        Args:
            guest_lines: Lines to merge (defaults to the cart held when login started)

        Returns:
            True if every unit was added
        """
        if guest_lines is None:
            guest_lines = self._guest_snapshot
        self._guest_snapshot = None

        if not self.session_manager.is_authenticated:
            logger.info("[CART] Not signed in, nothing to sync")
            return False
        if guest_lines:
            logger.info(f"[CART] Syncing {len(guest_lines)} guest lines to user {self.session_manager.user_id}")
            await self.fetch_cart_data(self.session_manager.user_id)

        for line in guest_lines or []:
            for _ in range(line.quantity):
                if not await self.add_to_cart(line.product_id):
                    logger.error(f"[CART] Error syncing local cart to server at product {line.product_id}")
                    self.last_error = SYNC_FAILED_MESSAGE
                    return False

        await self.store.storage.set(CART_ITEMS_KEY, lines_to_json([]))
        logger.info("[CART] Guest cart synced and reset")
        return True

    # Derived values

    def get_total_cart_amount(self) -> float:
        """Sum of quantity x price; products missing from the catalog count as 0."""
        total = 0.0
        for line in self.store.lines:
            product = self.catalog.get(line.product_id)
            if product is not None:
                total += line.quantity * product.price
        return total

    def get_total_cart_items(self) -> int:
        return sum(line.quantity for line in self.store.lines)
