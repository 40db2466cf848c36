"""Cart synchronization and session reconciliation for a storefront client."""
from .cart import CartStore, CartSyncEngine
from .catalog import Catalog
from .refresh import AppRefresher, AppRefreshSignal
from .service import StorefrontService
from .session import ErrorKind, SessionManager

__all__ = [
    "CartStore",
    "CartSyncEngine",
    "Catalog",
    "AppRefresher",
    "AppRefreshSignal",
    "StorefrontService",
    "ErrorKind",
    "SessionManager"
]
