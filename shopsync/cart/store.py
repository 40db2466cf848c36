"""In-memory cart state mirrored to persistent storage."""
import logging
from typing import List, Optional

from shopsync.data.schemas import CartLine, OwnerMode, lines_from_json, lines_to_json
from shopsync.storage.kv import CART_ITEMS_KEY, KeyValueStore
from shopsync.utils.events import CartUpdate, Event, EventChannel

logger = logging.getLogger(__name__)


class CartStore:
    """
    Single source of truth for cart reads.

    Every change bumps `version` and is written to the `cartItems` key, so the
    persisted cart never drifts from the in-memory one. Server carts are
    applied by wholesale replacement only.
    """

    def __init__(self, storage: KeyValueStore, channel: Optional[EventChannel] = None):
        """
        Initialize an empty guest cart.

        Args:
            storage: Persistent key-value store
            channel: Optional event channel; CART_UPDATED payloads are applied on arrival
        """
        self.storage = storage
        self.owner_mode = OwnerMode.GUEST
        self.version = 0
        self._lines: List[CartLine] = []
        if channel is not None:
            channel.subscribe(Event.CART_UPDATED, self._on_cart_updated)

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def get_line(self, product_id: str) -> Optional[CartLine]:
        for line in self._lines:
            if line.product_id == product_id:
                return line
        return None

    def quantity_of(self, product_id: str) -> int:
        line = self.get_line(product_id)
        return line.quantity if line else 0

    async def persist(self) -> None:
        await self.storage.set(CART_ITEMS_KEY, lines_to_json(self._lines))

    async def _commit(self, lines: List[CartLine], persist: bool = True) -> int:
        # Storage first: a failed write leaves memory untouched
        if persist:
            await self.storage.set(CART_ITEMS_KEY, lines_to_json(lines))
        self._lines = lines
        self.version += 1
        return self.version

    async def replace(
        self,
        lines: List[CartLine],
        owner_mode: Optional[OwnerMode] = None,
        persist: bool = True
    ) -> int:
        """
        Replace the whole cart.

        Args:
            lines: New cart lines (already normalized)
            owner_mode: New owner mode, if it changes
            persist: Whether to write the cart to storage

        Returns:
            The new cart version
        """
        if owner_mode is not None:
            self.owner_mode = owner_mode
        return await self._commit(list(lines), persist)

    async def clear(self, owner_mode: Optional[OwnerMode] = None, persist: bool = True) -> int:
        return await self.replace([], owner_mode=owner_mode, persist=persist)

    async def upsert(self, product_id: str, delta: int = 1) -> CartLine:
        """Add `delta` units of a product, creating the line if needed."""
        if delta <= 0:
            raise ValueError("delta must be positive")
        lines = []
        updated = None
        for line in self._lines:
            if line.product_id == product_id:
                updated = line.model_copy(update={"quantity": line.quantity + delta})
                lines.append(updated)
            else:
                lines.append(line)
        if updated is None:
            updated = CartLine(product_id=product_id, quantity=delta)
            lines.append(updated)
        await self._commit(lines)
        return updated

    async def set_quantity(self, product_id: str, quantity: int) -> bool:
        """Set the quantity of an existing line. Returns False if there is no such line."""
        if quantity <= 0:
            raise ValueError("quantity must be positive; use delete() to remove a line")
        if self.get_line(product_id) is None:
            return False
        lines = [
            line.model_copy(update={"quantity": quantity}) if line.product_id == product_id else line
            for line in self._lines
        ]
        await self._commit(lines)
        return True

    async def delete(self, product_id: str) -> bool:
        lines = [line for line in self._lines if line.product_id != product_id]
        if len(lines) == len(self._lines):
            return False
        await self._commit(lines)
        return True

    async def load_persisted(self) -> List[CartLine]:
        """
        Read the persisted cart without touching the in-memory one.

        A corrupt value is logged and read as an empty cart.
        """
        raw = await self.storage.get(CART_ITEMS_KEY)
        try:
            return lines_from_json(raw)
        except ValueError as e:
            logger.error(f"[CART] Discarding unreadable persisted cart: {e}")
            return []

    async def _on_cart_updated(self, update: CartUpdate) -> None:
        await self.replace(update.lines, owner_mode=OwnerMode.AUTHENTICATED)
        logger.info(f"[CART] Applied pushed cart for user {update.user_id}: {len(update.lines)} lines (v{self.version})")
