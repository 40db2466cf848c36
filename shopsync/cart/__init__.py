"""Cart state and synchronization."""
from .store import CartStore
from .sync import CartSyncEngine

__all__ = [
    "CartStore",
    "CartSyncEngine"
]
