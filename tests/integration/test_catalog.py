"""Catalog query tests."""

import random

import pytest
from sqlalchemy import select, update

from kortingdeal.models import Advertiser, Product
from kortingdeal.normalization import normalize_row
from kortingdeal.services import catalog
from kortingdeal.services.catalog import ProductFilters
from kortingdeal.services.product_store import category_index, refresh_counts, upsert_products
from kortingdeal.services.variant_linker import link_variants
from tests.feeds import feed_row


@pytest.fixture
def products(db_session):
    rows = [
        feed_row("E1", "Laptop Pro", price="600", rrp="1000", brand_name="Lenovo", merchant_id="1", merchant_name="Coolblue"),
        feed_row("E2", "Tablet Mini", price="180", rrp="200", brand_name="Apple", merchant_id="1", merchant_name="Coolblue"),
        feed_row("M1", "Jurk Maat S", price="20", rrp="80", merchant_category="Dameskleding", brand_name="Mooi", merchant_id="2", merchant_name="Zalando"),
        feed_row("M2", "Jurk Maat M", price="20", rrp="80", merchant_category="Dameskleding", brand_name="Mooi", merchant_id="2", merchant_name="Zalando"),
        feed_row("S1", "Tent", price="90", rrp="", merchant_category="Outdoor & Camping", brand_name="Vaude", merchant_id="3", merchant_name="Bever", description="Lichtgewicht tent voor twee"),
        feed_row("X1", "Oud ding", price="5", rrp="10", merchant_category="zzz", merchant_id="3", merchant_name="Bever"),
    ]
    index = category_index(db_session)
    upsert_products(db_session, [normalize_row(row, index, append_full_id=True) for row in rows])
    link_variants(db_session)
    db_session.execute(update(Product).where(Product.awin_product_id == "X1").values(is_active=False))
    refresh_counts(db_session)
    db_session.commit()
    db_session.expire_all()
    return rows


def _ids(items):
    return [p.awin_product_id for p in items]


@pytest.mark.integration
class TestListProducts:
    def test_only_active(self, db_session, products):
        page = catalog.list_products(db_session, ProductFilters())
        assert page.total_count == 5
        assert "X1" not in _ids(page.products)

    def test_search_is_case_insensitive_over_title_description_brand(self, db_session, products):
        assert _ids(catalog.list_products(db_session, ProductFilters(search="laptop")).products) == ["E1"]
        assert _ids(catalog.list_products(db_session, ProductFilters(search="LICHTGEWICHT")).products) == ["S1"]
        assert _ids(catalog.list_products(db_session, ProductFilters(search="apple")).products) == ["E2"]

    def test_category_filter(self, db_session, products):
        page = catalog.list_products(db_session, ProductFilters(category_slug="mode"))
        assert sorted(_ids(page.products)) == ["M1", "M2"]

    def test_price_and_discount_filters(self, db_session, products):
        page = catalog.list_products(db_session, ProductFilters(min_price=50, max_price=200))
        assert sorted(_ids(page.products)) == ["E2", "S1"]
        page = catalog.list_products(db_session, ProductFilters(min_discount=50))
        assert sorted(_ids(page.products)) == ["M1", "M2"]

    def test_advertiser_filter(self, db_session, products):
        coolblue = db_session.scalars(select(Advertiser).where(Advertiser.awin_id == "1")).one()
        page = catalog.list_products(db_session, ProductFilters(advertiser_ids=[coolblue.id]))
        assert sorted(_ids(page.products)) == ["E1", "E2"]

    @pytest.mark.parametrize(
        "sort_by,first",
        [("price_low", None), ("price_high", "E1"), ("discount", None)],
    )
    def test_sorting(self, db_session, products, sort_by, first):
        items = catalog.list_products(db_session, ProductFilters(sort_by=sort_by)).products
        prices = [p.sale_price for p in items]
        if sort_by == "price_low":
            assert prices == sorted(prices)
        elif sort_by == "price_high":
            assert _ids(items)[0] == first
        else:
            discounts = [p.discount_percentage for p in items if p.discount_percentage is not None]
            assert discounts == sorted(discounts, reverse=True)
            assert items[-1].discount_percentage is None

    def test_pagination(self, db_session, products):
        first = catalog.list_products(db_session, ProductFilters(page=1, limit=2, sort_by="price_low"))
        second = catalog.list_products(db_session, ProductFilters(page=2, limit=2, sort_by="price_low"))
        third = catalog.list_products(db_session, ProductFilters(page=3, limit=2, sort_by="price_low"))
        assert first.has_more is True
        assert third.has_more is False
        assert len(set(_ids(first.products)) | set(_ids(second.products)) | set(_ids(third.products))) == 5

    def test_limit_is_clamped(self):
        assert ProductFilters(limit=10_000).limit == 100
        assert ProductFilters(page=0).page == 1

    def test_unknown_sort(self, db_session, products):
        with pytest.raises(ValueError):
            catalog.list_products(db_session, ProductFilters(sort_by="popular"))


@pytest.mark.integration
class TestLookups:
    def test_by_slug(self, db_session, products):
        product = db_session.scalars(select(Product).where(Product.awin_product_id == "S1")).unique().one()
        found = catalog.get_product_by_slug(db_session, product.slug)
        assert found.id == product.id
        assert found.category.slug == "sport-vrije-tijd"
        assert catalog.get_product_by_slug(db_session, "bestaat-niet") is None

    def test_inactive_not_found_by_slug(self, db_session, products):
        product = db_session.scalars(select(Product).where(Product.awin_product_id == "X1")).unique().one()
        assert catalog.get_product_by_slug(db_session, product.slug) is None

    def test_variants(self, db_session, products):
        product = db_session.scalars(select(Product).where(Product.awin_product_id == "M2")).unique().one()
        assert sorted(_ids(catalog.get_variants(db_session, product))) == ["M1", "M2"]

    def test_top_deals_and_featured(self, db_session, products):
        top = catalog.top_deals(db_session, limit=2)
        assert set(_ids(top)) == {"M1", "M2"}
        assert set(_ids(catalog.featured_products(db_session))) == {"M1", "M2"}

    def test_recent(self, db_session, products):
        assert len(catalog.recent_products(db_session, limit=3)) == 3

    def test_categories_and_advertisers(self, db_session, products):
        counts = {c.slug: c.product_count for c in catalog.list_categories(db_session)}
        assert counts["elektronica"] == 2
        assert counts["overig"] == 0
        assert catalog.get_category_by_slug(db_session, "mode").name == "Mode"
        assert {a.awin_id for a in catalog.list_advertisers(db_session)} == {"1", "2", "3"}

    def test_stats(self, db_session, products):
        assert catalog.product_stats(db_session) == {
            "totalProducts": 5,
            "featuredProducts": 2,
            "inactiveProducts": 1,
            "totalAdvertisers": 3,
        }

    def test_diverse_page(self, db_session, products):
        page = catalog.diverse_page(db_session, ProductFilters(limit=5), rng=random.Random(1))
        assert sorted(_ids(page)) == ["E1", "E2", "M1", "M2", "S1"]
        categories = [p.category_id for p in page]
        assert all(a != b for a, b in zip(categories, categories[1:]))
