"""
Read side of the store: filtered product listings and small lookup lists
for the public catalog and the admin dashboard.
"""
from __future__ import annotations

import random
import uuid
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from kortingdeal.models import Advertiser, Category, Product
from kortingdeal.services.shuffle import shuffle_for_diversity
from kortingdeal.settings import settings

SortBy = Literal["newest", "price_low", "price_high", "discount"]

DEFAULT_PAGE_LIMIT = 24


@dataclass
class ProductFilters:
    search: Optional[str] = None
    category_slug: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_discount: Optional[int] = None
    advertiser_ids: List[uuid.UUID] = field(default_factory=list)
    sort_by: SortBy = "newest"
    page: int = 1
    limit: int = DEFAULT_PAGE_LIMIT

    def __post_init__(self):
        self.page = max(1, int(self.page))
        self.limit = min(max(1, int(self.limit)), settings.catalog_page_limit_max)


@dataclass
class ProductPage:
    products: List[Product]
    total_count: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total_count


def _active_products() -> Select:
    return select(Product).where(Product.is_active.is_(True))


def _apply_filters(stmt: Select, filters: ProductFilters) -> Select:
    if filters.search and filters.search.strip():
        pattern = f"%{filters.search.strip()}%"
        stmt = stmt.where(
            or_(
                Product.seo_title.ilike(pattern),
                Product.description.ilike(pattern),
                Product.brand.ilike(pattern),
            )
        )
    if filters.category_slug:
        stmt = stmt.join(Category, Product.category_id == Category.id).where(Category.slug == filters.category_slug)
    if filters.min_price is not None:
        stmt = stmt.where(Product.sale_price >= filters.min_price)
    if filters.max_price is not None:
        stmt = stmt.where(Product.sale_price <= filters.max_price)
    if filters.min_discount is not None:
        stmt = stmt.where(Product.discount_percentage >= filters.min_discount)
    if filters.advertiser_ids:
        stmt = stmt.where(Product.advertiser_id.in_(filters.advertiser_ids))
    return stmt


def _apply_sort(stmt: Select, sort_by: str) -> Select:
    if sort_by == "price_low":
        return stmt.order_by(Product.sale_price.asc(), Product.id)
    if sort_by == "price_high":
        return stmt.order_by(Product.sale_price.desc(), Product.id)
    if sort_by == "discount":
        return stmt.order_by(Product.discount_percentage.desc().nulls_last(), Product.id)
    if sort_by == "newest":
        return stmt.order_by(Product.created_at.desc(), Product.id)
    raise ValueError(f"Unsupported sort order: {sort_by}")


def list_products(session: Session, filters: ProductFilters) -> ProductPage:
    stmt = _apply_filters(_active_products(), filters)
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0

    stmt = _apply_sort(stmt, filters.sort_by)
    stmt = stmt.offset((filters.page - 1) * filters.limit).limit(filters.limit)
    products = list(session.scalars(stmt).unique().all())
    return ProductPage(products=products, total_count=total, page=filters.page, limit=filters.limit)


def diverse_page(
    session: Session,
    filters: ProductFilters,
    pool_factor: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> List[Product]:
    """Pull a larger candidate pool for the filters, interleave it by category and brand, keep one page."""
    pool_size = filters.limit * (pool_factor or settings.shuffle_pool_factor)
    stmt = _apply_sort(_apply_filters(_active_products(), filters), filters.sort_by).limit(pool_size)
    pool = list(session.scalars(stmt).unique().all())
    return shuffle_for_diversity(pool, rng=rng)[: filters.limit]


def get_product_by_slug(session: Session, slug: str) -> Product | None:
    return session.scalars(_active_products().where(Product.slug == slug)).unique().first()


def get_product(session: Session, product_id: uuid.UUID) -> Product | None:
    return session.get(Product, product_id)


def get_variants(session: Session, product: Product) -> List[Product]:
    """All active sizes of the product's group, parent first."""
    parent_id = product.parent_product_id or product.id
    stmt = _active_products().where(
        or_(Product.id == parent_id, Product.parent_product_id == parent_id)
    ).order_by(Product.parent_product_id.is_not(None), Product.variant_value)
    return list(session.scalars(stmt).unique().all())


def top_deals(session: Session, limit: int = 8) -> List[Product]:
    stmt = (
        _active_products()
        .where(Product.discount_percentage.is_not(None))
        .order_by(Product.discount_percentage.desc(), Product.id)
        .limit(limit)
    )
    return list(session.scalars(stmt).unique().all())


def featured_products(session: Session, limit: int = 8) -> List[Product]:
    stmt = (
        _active_products()
        .where(Product.is_featured.is_(True))
        .order_by(Product.discount_percentage.desc().nulls_last(), Product.id)
        .limit(limit)
    )
    return list(session.scalars(stmt).unique().all())


def recent_products(session: Session, limit: int = 8) -> List[Product]:
    stmt = _active_products().order_by(Product.created_at.desc(), Product.id).limit(limit)
    return list(session.scalars(stmt).unique().all())


def list_categories(session: Session) -> List[Category]:
    return list(session.scalars(select(Category).order_by(Category.name)).all())


def get_category_by_slug(session: Session, slug: str) -> Category | None:
    return session.scalars(select(Category).where(Category.slug == slug)).first()


def list_advertisers(session: Session, only_with_products: bool = True) -> List[Advertiser]:
    stmt = select(Advertiser).where(Advertiser.is_active.is_(True))
    if only_with_products:
        stmt = stmt.where(Advertiser.product_count > 0)
    return list(session.scalars(stmt.order_by(Advertiser.name)).all())


def product_stats(session: Session) -> dict:
    active = session.scalar(select(func.count(Product.id)).where(Product.is_active.is_(True))) or 0
    featured = session.scalar(
        select(func.count(Product.id)).where(Product.is_active.is_(True), Product.is_featured.is_(True))
    ) or 0
    inactive = session.scalar(select(func.count(Product.id)).where(Product.is_active.is_(False))) or 0
    advertisers = session.scalar(select(func.count(Advertiser.id))) or 0
    return {
        "totalProducts": active,
        "featuredProducts": featured,
        "inactiveProducts": inactive,
        "totalAdvertisers": advertisers,
    }
