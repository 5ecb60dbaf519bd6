import logging
from collections import defaultdict

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from kortingdeal.models import Product
from kortingdeal.normalization import split_variant

logger = logging.getLogger(__name__)


def variant_group_key(brand: str | None, title: str) -> str:
    base_title, _ = split_variant(title)
    return f"{brand or ''}-{base_title}".lower()


def link_variants(session: Session) -> int:
    """
    Link unlinked size variants to a parent sharing brand and base title.

    Only rows with a variant value and no parent take part. A row that is
    already a parent keeps that role; otherwise the oldest row of the group
    becomes the parent. Its own parent stays null, so running it again over
    the same state links nothing new.
    """
    rows = session.execute(
        select(Product.id, Product.brand, Product.original_title)
        .where(Product.variant_value.is_not(None))
        .where(Product.parent_product_id.is_(None))
        .order_by(Product.created_at, Product.id)
    ).all()
    existing_parents = set(
        session.scalars(select(Product.parent_product_id).where(Product.parent_product_id.is_not(None)).distinct()).all()
    )

    groups: dict[str, list] = defaultdict(list)
    for product_id, brand, title in rows:
        groups[variant_group_key(brand, title)].append(product_id)

    linked = 0
    linked_groups = 0
    for ids in groups.values():
        if len(ids) < 2:
            continue
        parent_id = next((i for i in ids if i in existing_parents), ids[0])
        for child_id in ids:
            if child_id == parent_id:
                continue
            session.execute(
                update(Product)
                .where(Product.id == child_id)
                .values(parent_product_id=parent_id)
                .execution_options(synchronize_session=False)
            )
            linked += 1
        linked_groups += 1

    session.flush()
    logger.info(f"[SYNC] Linked {linked} variants across {linked_groups} groups")
    return linked
