"""
Catalog record to public DTO transformation.

The transformer copies an explicit allow-list of fields. Cost, supplier and
margin data never leave the catalog because nothing here reads them.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .models import PriceInfo, ProductDTO, StockInfo


UNCATEGORIZED = "Uncategorized"


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _category_name(record: Dict[str, Any]) -> str:
    name = record.get("categoryName")
    if not name:
        category = record.get("category")
        name = category.get("name") if isinstance(category, dict) else category
    return name if isinstance(name, str) and name else UNCATEGORIZED


def _image_urls(images: Any) -> List[str]:
    urls = []
    for image in images or []:
        url = image.get("url") if isinstance(image, dict) else image
        if url:
            urls.append(str(url))
    return urls


def _is_available(inventory: Any) -> bool:
    if not isinstance(inventory, list):
        return False
    for location in inventory:
        quantity = _to_float(location.get("quantity")) if isinstance(location, dict) else None
        if quantity is not None and quantity > 0:
            return True
    return False


class ResultTransformer:
    """Maps raw catalog records to `ProductDTO`s."""

    def __init__(self, default_currency: str = "INR"):
        self.default_currency = default_currency

    def transform(self, record: Dict[str, Any]) -> ProductDTO:
        original = _to_float(record.get("sellingPrice"))
        discounted = _to_float(record.get("discountedPrice"))
        has_discount = discounted is not None and original is not None and discounted < original

        return ProductDTO(
            id=str(record["id"]),
            name=record.get("name"),
            slug=record.get("slug"),
            description=record.get("description"),
            images=_image_urls(record.get("images")),
            price=PriceInfo(
                original=original,
                discounted=discounted,
                currency=record.get("currency") or self.default_currency,
                has_discount=has_discount,
            ),
            category=_category_name(record),
            tags=[str(tag) for tag in record.get("tags") or []],
            sku=record.get("sku"),
            stock=StockInfo(available=_is_available(record.get("inventory"))),
        )

    def transform_all(self, records: Iterable[Dict[str, Any]]) -> List[ProductDTO]:
        return [self.transform(record) for record in records]
