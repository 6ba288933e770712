"""
Public product projection returned by smart rule execution.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PriceInfo(BaseModel):
    """Price block of a product card."""
    model_config = ConfigDict(populate_by_name=True)

    original: Optional[float] = None
    discounted: Optional[float] = None
    currency: str
    has_discount: bool = Field(False, alias="hasDiscount")


class StockInfo(BaseModel):
    """Stock block; only availability is public."""
    available: bool


class ProductDTO(BaseModel):
    """Storefront-safe product record."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    price: PriceInfo
    category: str
    tags: List[str] = Field(default_factory=list)
    sku: Optional[str] = None
    stock: StockInfo


class PreviewResult(BaseModel):
    """Result of previewing an unsaved rule."""
    model_config = ConfigDict(populate_by_name=True)

    results: List[ProductDTO]
    estimated_count: int = Field(..., alias="estimatedCount")
    execution_time_ms: float = Field(..., alias="executionTimeMs")


class ProductListResponse(BaseModel):
    """Products produced by one rule or section execution."""
    model_config = ConfigDict(populate_by_name=True)

    rule_id: Optional[str] = Field(None, alias="ruleId")
    products: List[ProductDTO]
    count: int
