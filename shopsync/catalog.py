"""Product catalog used to price the cart."""
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from shopsync.api.client import CommerceApiClient
from shopsync.api.errors import CommerceApiError
from shopsync.data.schemas import Product

logger = logging.getLogger(__name__)

LOAD_ERROR_MESSAGE = "Failed to load products. The server might be starting up, please try again."


class Catalog:
    """Products keyed by id, normalized once on ingestion."""

    def __init__(self, products: Optional[Iterable[Any]] = None):
        self._products: Dict[str, Product] = {}
        self.is_loading = False
        self.error: Optional[str] = None
        if products is not None:
            self.load(products)

    def load(self, raw_products: Iterable[Any]) -> int:
        """
        Replace the catalog with the given entries.

        Entries that fail validation are skipped and logged.

        Returns:
            Number of products loaded
        """
        products: Dict[str, Product] = {}
        for raw in raw_products:
            try:
                product = raw if isinstance(raw, Product) else Product.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"[CATALOG] Skipping invalid product entry: {e.error_count()} errors")
                continue
            products[product.id] = product
        self._products = products
        return len(products)

    async def fetch_products(self, client: CommerceApiClient) -> bool:
        """Load every product from the API. Keeps the current entries on failure."""
        self.is_loading = True
        try:
            raw_products = await client.get_products()
            count = self.load(raw_products)
            self.error = None
            logger.info(f"[CATALOG] Products fetched successfully: {count}")
            return True
        except CommerceApiError as e:
            logger.error(f"[CATALOG] Error fetching products: {e}")
            self.error = LOAD_ERROR_MESSAGE
            return False
        finally:
            self.is_loading = False

    def get(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def all(self) -> List[Product]:
        return list(self._products.values())

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._products
