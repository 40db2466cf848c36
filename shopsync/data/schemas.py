"""Cart, catalog and session schemas."""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator


class OwnerMode(str, Enum):
    """Which backing store is authoritative for the cart."""
    GUEST = "guest"
    AUTHENTICATED = "authenticated"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        try:
            return cls(value)
        except ValueError:
            return None


class CartLine(BaseModel):
    """One product in a cart. Quantity is always at least 1."""
    product_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("productId", "product_id", "id"),
        serialization_alias="productId",
        description="Catalog product id"
    )
    quantity: int = Field(1, ge=1, description="Units of the product in the cart")

    @field_validator('product_id', mode='before')
    @classmethod
    def coerce_product_id(cls, v):
        if isinstance(v, (int, float)):
            return str(v)
        return v

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def normalize_lines(raw: Any) -> List[CartLine]:
    """
    Turn a server or persisted cart payload into valid cart lines.

    Lines with quantity <= 0 are dropped, a missing quantity counts as 1 and
    duplicate product ids are merged by summing, keeping first-seen order.

    Args:
        raw: List of line objects (None is treated as an empty cart)

    Returns:
        List of cart lines with unique product ids

    Raises:
        ValueError: If the payload is not a list of line objects
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"Cart payload must be a list, got {type(raw).__name__}")

    merged: Dict[str, int] = {}
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError(f"Cart line must be an object, got {type(item).__name__}")
        quantity = item.get("quantity")
        if quantity is None:
            quantity = 1
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid quantity in cart line: {item!r}")
        if quantity <= 0:
            continue
        line = CartLine.model_validate({**item, "quantity": quantity})
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity

    return [CartLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def lines_to_json(lines: List[CartLine]) -> str:
    return json.dumps([line.to_wire() for line in lines])


def lines_from_json(text: Optional[str]) -> List[CartLine]:
    """Decode a persisted cart; raises ValueError on malformed JSON or lines."""
    if not text:
        return []
    return normalize_lines(json.loads(text))


def _first_present(data: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, "", 0):
            return value
    return None


class Product(BaseModel):
    """
    Catalog entry with canonical id, price and image.

    The backend has used several field names for the same thing over time;
    they are resolved once here so readers never have to look at raw payloads.
    """
    id: str = Field(..., min_length=1)
    name: str = ""
    price: float = Field(0.0, ge=0)
    old_price: Optional[float] = None
    image: Optional[str] = None
    category: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def resolve_aliases(cls, data):
        if not isinstance(data, dict):
            return data
        images = data.get("images")
        first_image = images[0] if isinstance(images, list) and images else None
        product_id = _first_present(data, ("_id", "id"))
        return {
            "id": str(product_id) if product_id is not None else "",
            "name": data.get("name") or "",
            "price": _first_present(data, ("new_price", "price")) or 0,
            "old_price": data.get("old_price"),
            "image": _first_present(data, ("image",)) or first_image or data.get("imageUrl"),
            "category": data.get("category"),
        }


@dataclass
class Session:
    """Who is signed in. Owned by the session manager; read by everyone else."""
    token: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[Role] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    # True when identity came from the token payload, not from /auth/me
    degraded: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None
