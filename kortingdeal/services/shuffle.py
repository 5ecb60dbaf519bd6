"""
Diversity-aware ordering for product listings.

Items are grouped by category and shuffled inside each group, then drawn one
at a time, always from the fullest remaining category that satisfies the
strongest still-possible rule:

1. different category and different brand than the previous item
2. different category
3. different brand
4. anything left
"""
from __future__ import annotations

import random
from typing import Any, Callable, Hashable, List, Optional, Sequence, TypeVar

T = TypeVar("T")

_NOTHING_YET = object()


def _default_category(item: Any) -> Hashable:
    return getattr(item, "category_id", None)


def _default_brand(item: Any) -> Hashable:
    return getattr(item, "advertiser_id", None) or getattr(item, "brand", None)


def shuffle_for_diversity(
    items: Sequence[T],
    rng: Optional[random.Random] = None,
    category_key: Callable[[T], Hashable] = _default_category,
    brand_key: Callable[[T], Hashable] = _default_brand,
) -> List[T]:
    """
    Return a permutation of ``items`` that avoids placing two items of the
    same category, and then of the same brand, next to each other.

    Items without a brand never count as a brand clash.
    """
    if len(items) <= 1:
        return list(items)

    rng = rng or random.Random()

    groups: dict = {}
    for item in items:
        groups.setdefault(category_key(item), []).append(item)
    for group in groups.values():
        rng.shuffle(group)

    result: List[T] = []
    last_category: Any = _NOTHING_YET
    last_brand: Any = _NOTHING_YET

    def brand_differs(item: T) -> bool:
        brand = brand_key(item)
        return brand is None or last_brand is _NOTHING_YET or brand != last_brand

    while len(result) < len(items):
        # fullest category first so the big groups do not pile up at the end
        ranked = sorted((c for c, g in groups.items() if g), key=lambda c: len(groups[c]), reverse=True)

        chosen = None
        for require_category, require_brand in ((True, True), (True, False), (False, True), (False, False)):
            for category in ranked:
                if require_category and category == last_category:
                    continue
                group = groups[category]
                if require_brand:
                    index = next((i for i, item in enumerate(group) if brand_differs(item)), None)
                    if index is None:
                        continue
                else:
                    index = 0
                chosen = (category, index)
                break
            if chosen is not None:
                break

        category, index = chosen
        item = groups[category].pop(index)
        result.append(item)
        last_category = category
        last_brand = brand_key(item)

    return result
