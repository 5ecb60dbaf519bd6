"""
Write side of the product store: category seeding, advertiser and product
upserts keyed by external id, and deactivation of products that left the feed.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from kortingdeal.models import Advertiser, Category, Product
from kortingdeal.normalization import NormalizedProduct

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: tuple[tuple[str, str, str], ...] = (
    ("elektronica", "Elektronica", "laptop"),
    ("mode", "Mode", "shirt"),
    ("huis-tuin", "Huis & Tuin", "home"),
    ("sport-vrije-tijd", "Sport & Vrije tijd", "bike"),
    ("beauty-gezondheid", "Beauty & Gezondheid", "sparkles"),
    ("speelgoed-games", "Speelgoed & Games", "gamepad"),
    ("eten-drinken", "Eten & Drinken", "utensils"),
    ("auto-motor", "Auto & Motor", "car"),
    ("reizen", "Reizen", "plane"),
    ("overig", "Overig", "tag"),
)

# Never overwritten on conflict: identity and linker-owned columns.
_STABLE_COLUMNS = {"id", "awin_product_id", "slug", "parent_product_id", "created_at"}


@dataclass(frozen=True)
class UpsertResult:
    upserted: int
    added: int
    updated: int


def _insert_for(session: Session):
    """Dialect insert with ON CONFLICT support (PostgreSQL in production, SQLite in tests)."""
    dialect = session.get_bind(mapper=Product.__mapper__).dialect.name
    if dialect == "sqlite":
        return sqlite.insert
    return postgresql.insert


def seed_categories(session: Session) -> int:
    existing = set(session.scalars(select(Category.slug)).all())
    created = 0
    for slug, name, icon in DEFAULT_CATEGORIES:
        if slug in existing:
            continue
        session.add(Category(slug=slug, name=name, icon=icon))
        created += 1
    if created:
        session.flush()
        logger.info(f"Seeded {created} categories")
    return created


def category_index(session: Session) -> dict[str, uuid.UUID]:
    return {slug: cat_id for slug, cat_id in session.execute(select(Category.slug, Category.id)).all()}


def upsert_advertisers(session: Session, products: Iterable[NormalizedProduct]) -> dict[str, uuid.UUID]:
    """Upsert merchants by Awin id and return ``{merchant_id: advertiser_id}``."""
    merchants: dict[str, str] = {}
    for p in products:
        if p.merchant_id:
            merchants[p.merchant_id] = p.merchant_name or p.merchant_id
    if not merchants:
        return {}

    insert = _insert_for(session)
    stmt = insert(Advertiser).values(
        [{"id": uuid.uuid4(), "awin_id": awin_id, "name": name, "is_active": True} for awin_id, name in merchants.items()]
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["awin_id"],
        set_={"name": stmt.excluded.name, "is_active": True},
    )
    session.execute(stmt)

    rows = session.execute(
        select(Advertiser.awin_id, Advertiser.id).where(Advertiser.awin_id.in_(list(merchants)))
    ).all()
    return {awin_id: adv_id for awin_id, adv_id in rows}


def upsert_products(session: Session, products: List[NormalizedProduct]) -> UpsertResult:
    """
    Insert-or-update one batch keyed on ``awin_product_id``.

    Duplicate ids inside the batch collapse to the last occurrence, since a
    single ON CONFLICT statement cannot touch the same row twice.
    """
    deduped: dict[str, NormalizedProduct] = {}
    for p in products:
        deduped[p.awin_product_id] = p
    if not deduped:
        return UpsertResult(upserted=0, added=0, updated=0)

    existing = set(
        session.scalars(
            select(Product.awin_product_id).where(Product.awin_product_id.in_(list(deduped)))
        ).all()
    )

    advertiser_ids = upsert_advertisers(session, deduped.values())

    values = []
    for p in deduped.values():
        row = p.to_row()
        row["id"] = uuid.uuid4()
        row["advertiser_id"] = advertiser_ids.get(p.merchant_id) if p.merchant_id else None
        values.append(row)

    insert = _insert_for(session)
    stmt = insert(Product).values(values)
    update_cols = [col for col in values[0] if col not in _STABLE_COLUMNS]
    stmt = stmt.on_conflict_do_update(
        index_elements=["awin_product_id"],
        set_={col: stmt.excluded[col] for col in update_cols} | {"updated_at": func.now()},
    )
    session.execute(stmt)

    added = len(deduped) - len(existing)
    return UpsertResult(upserted=len(deduped), added=added, updated=len(existing))


def deactivate_missing(session: Session, synced_before: datetime) -> int:
    """Mark active products not refreshed since ``synced_before`` as inactive. Never deletes."""
    result = session.execute(
        update(Product)
        .where(Product.is_active.is_(True))
        .where((Product.last_synced_at.is_(None)) | (Product.last_synced_at < synced_before))
        .values(is_active=False, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        logger.info(f"[SYNC] Deactivated {count} products missing from the feed")
    return count


def refresh_counts(session: Session) -> None:
    """Recompute denormalized product counts on categories and advertisers."""
    cat_counts = dict(
        session.execute(
            select(Product.category_id, func.count(Product.id))
            .where(Product.is_active.is_(True))
            .group_by(Product.category_id)
        ).all()
    )
    for category in session.scalars(select(Category)).all():
        category.product_count = cat_counts.get(category.id, 0)

    adv_counts = dict(
        session.execute(
            select(Product.advertiser_id, func.count(Product.id))
            .where(Product.is_active.is_(True), Product.advertiser_id.is_not(None))
            .group_by(Product.advertiser_id)
        ).all()
    )
    for advertiser in session.scalars(select(Advertiser)).all():
        advertiser.product_count = adv_counts.get(advertiser.id, 0)
    session.flush()
