"""Storefront service that wires the session, cart and refresh components together."""
import logging
from typing import Optional

import httpx

from shopsync.api.client import CommerceApiClient
from shopsync.cart.store import CartStore
from shopsync.cart.sync import CartSyncEngine
from shopsync.catalog import Catalog
from shopsync.config import settings
from shopsync.refresh import AppRefresher, AppRefreshSignal
from shopsync.session.manager import SessionManager
from shopsync.storage.kv import JsonFileKeyValueStore, KeyValueStore
from shopsync.utils.events import EventChannel

logger = logging.getLogger(__name__)


class StorefrontService:
    """
    Composition root for the storefront client.

    Front ends hold one instance and talk to `session` and `cart`; everything
    else is internal wiring.
    """

    def __init__(
        self,
        storage: Optional[KeyValueStore] = None,
        client: Optional[CommerceApiClient] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refresh_settle_delay: Optional[float] = None
    ):
        """
        Initialize every component.

        Args:
            storage: Key-value store (defaults to a JSON file at settings.storage_path)
            client: Commerce API client (built from base_url/transport if not given)
            base_url: API root for a client built here
            transport: Optional httpx transport for a client built here
            refresh_settle_delay: Override for the app refresh settle delay
        """
        self.storage = storage if storage is not None else JsonFileKeyValueStore(settings.storage_path)
        self.client = client if client is not None else CommerceApiClient(base_url=base_url, transport=transport)
        self.channel = EventChannel()
        self.catalog = Catalog()
        self.refresh_signal = AppRefreshSignal(self.storage)

        # The store subscribes before the engine so pushed carts land first
        self.cart_store = CartStore(self.storage, self.channel)
        self.session = SessionManager(self.client, self.storage, self.channel, refresh_signal=self.refresh_signal)
        self.cart = CartSyncEngine(self.client, self.session, self.cart_store, self.channel, catalog=self.catalog)
        self.refresher = AppRefresher(
            self.refresh_signal,
            self.cart,
            channel=self.channel,
            settle_delay=refresh_settle_delay,
        )

    async def __aenter__(self) -> "StorefrontService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def start(self, load_products: bool = True) -> None:
        """
        Run the startup sequence.

        Hydrates the guest cart, restores a persisted session (which refreshes
        the cart for a signed-in user), loads the catalog and finally lets the
        refresher consume a pending refresh flag.
        """
        logger.info("[SERVICE] Starting storefront client")
        await self.cart.load_persisted_cart()
        await self.session.restore_session()
        if load_products:
            await self.catalog.fetch_products(self.client)
        await self.refresher.on_mount()
        logger.info(
            f"[SERVICE] Ready: user={self.session.user_id or 'guest'}, "
            f"cart lines={len(self.cart_store.lines)}, products={len(self.catalog)}"
        )

    async def aclose(self) -> None:
        await self.client.aclose()
