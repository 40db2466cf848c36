"""Data layer package."""
from .schemas import (
    CartLine,
    OwnerMode,
    Product,
    Role,
    Session,
    lines_from_json,
    lines_to_json,
    normalize_lines,
)

__all__ = [
    "CartLine",
    "OwnerMode",
    "Product",
    "Role",
    "Session",
    "lines_from_json",
    "lines_to_json",
    "normalize_lines"
]
