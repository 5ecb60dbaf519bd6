import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from kortingdeal.db import get_session
from kortingdeal.schemas.product import ProductDetailResponse, ProductPageResponse, ProductResponse
from kortingdeal.services import catalog

router = APIRouter()


def _filters(
    search: str | None = Query(default=None),
    category_slug: str | None = Query(default=None, alias="categorySlug"),
    min_price: float | None = Query(default=None, alias="minPrice", ge=0),
    max_price: float | None = Query(default=None, alias="maxPrice", ge=0),
    min_discount: int | None = Query(default=None, alias="minDiscount", ge=0, le=100),
    advertiser_ids: List[uuid.UUID] = Query(default=[], alias="advertiserIds"),
    sort_by: str = Query(default="newest", alias="sortBy", pattern="^(newest|price_low|price_high|discount)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=catalog.DEFAULT_PAGE_LIMIT, ge=1),
) -> catalog.ProductFilters:
    return catalog.ProductFilters(
        search=search,
        category_slug=category_slug,
        min_price=min_price,
        max_price=max_price,
        min_discount=min_discount,
        advertiser_ids=advertiser_ids,
        sort_by=sort_by,
        page=page,
        limit=limit,
    )


@router.get("", response_model=ProductPageResponse)
def list_products(
    filters: catalog.ProductFilters = Depends(_filters),
    session: Session = Depends(get_session),
):
    page = catalog.list_products(session, filters)
    return ProductPageResponse(
        products=page.products,
        total_count=page.total_count,
        page=page.page,
        limit=page.limit,
        has_more=page.has_more,
    )


@router.get("/diverse", response_model=List[ProductResponse])
def list_diverse_products(
    filters: catalog.ProductFilters = Depends(_filters),
    session: Session = Depends(get_session),
):
    """One page of products interleaved so neighbours differ in category and brand."""
    return catalog.diverse_page(session, filters)


@router.get("/top-deals", response_model=List[ProductResponse])
def list_top_deals(limit: int = Query(default=8, ge=1, le=48), session: Session = Depends(get_session)):
    return catalog.top_deals(session, limit=limit)


@router.get("/featured", response_model=List[ProductResponse])
def list_featured(limit: int = Query(default=8, ge=1, le=48), session: Session = Depends(get_session)):
    return catalog.featured_products(session, limit=limit)


@router.get("/recent", response_model=List[ProductResponse])
def list_recent(limit: int = Query(default=8, ge=1, le=48), session: Session = Depends(get_session)):
    return catalog.recent_products(session, limit=limit)


@router.get("/{slug}", response_model=ProductDetailResponse)
def get_product(slug: str, session: Session = Depends(get_session)):
    product = catalog.get_product_by_slug(session, slug)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    detail = ProductDetailResponse.model_validate(product)
    detail.variants = [
        ProductResponse.model_validate(v) for v in catalog.get_variants(session, product) if v.id != product.id
    ]
    return detail
