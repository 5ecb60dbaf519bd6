from datetime import datetime
from typing import List, Optional
import uuid

from pydantic import BaseModel, ConfigDict


class CategoryResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    description: Optional[str] = None
    icon: Optional[str] = None
    product_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class AdvertiserResponse(BaseModel):
    id: uuid.UUID
    awin_id: str
    name: str
    logo_url: Optional[str] = None
    website_url: Optional[str] = None
    product_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class ProductResponse(BaseModel):
    id: uuid.UUID
    awin_product_id: str
    slug: str
    original_title: str
    seo_title: str
    description: Optional[str] = None
    seo_description: Optional[str] = None
    image_url: Optional[str] = None
    original_price: Optional[float] = None
    sale_price: float
    discount_percentage: Optional[int] = None
    currency: str
    product_url: str
    affiliate_link: str
    brand: Optional[str] = None
    availability: str
    variant_value: Optional[str] = None
    parent_product_id: Optional[uuid.UUID] = None
    is_featured: bool
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    category: Optional[CategoryResponse] = None
    advertiser: Optional[AdvertiserResponse] = None

    model_config = ConfigDict(from_attributes=True)


class ProductDetailResponse(ProductResponse):
    variants: List[ProductResponse] = []


class ProductPageResponse(BaseModel):
    products: List[ProductResponse]
    total_count: int
    page: int
    limit: int
    has_more: bool

    model_config = ConfigDict(from_attributes=True)


class ProductStatsResponse(BaseModel):
    total_products: int
    featured_products: int
    inactive_products: int
    total_advertisers: int
