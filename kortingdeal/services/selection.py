"""
Row selection policies for a sync run.

``full_pass`` walks the whole feed chunk by chunk. ``top_discount`` and
``random_sample`` load one bounded snapshot and keep a subset of it: the
former favours the deepest discounts, the latter merchant/category variety.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import List, Protocol

from kortingdeal.normalization import NormalizedProduct
from kortingdeal.settings import SELECTION_POLICIES


class SelectionPolicy(Protocol):
    name: str
    chunked: bool
    deactivates_missing: bool

    def select(self, products: List[NormalizedProduct]) -> List[NormalizedProduct]:
        ...


@dataclass
class FullPassSelection:
    name: str = "full_pass"
    chunked: bool = True
    deactivates_missing: bool = True

    def select(self, products: List[NormalizedProduct]) -> List[NormalizedProduct]:
        return products


@dataclass
class TopDiscountSelection:
    limit: int = 5000
    name: str = "top_discount"
    chunked: bool = False
    deactivates_missing: bool = False

    def select(self, products: List[NormalizedProduct]) -> List[NormalizedProduct]:
        ranked = sorted(products, key=lambda p: p.discount_percentage or 0, reverse=True)
        return ranked[: self.limit]


@dataclass
class RandomSampleSelection:
    limit: int = 5000
    rng: random.Random = field(default_factory=random.Random)
    name: str = "random_sample"
    chunked: bool = False
    deactivates_missing: bool = False

    def select(self, products: List[NormalizedProduct]) -> List[NormalizedProduct]:
        if len(products) <= self.limit:
            return list(products)
        return self.rng.sample(products, self.limit)


def build_policy(name: str, limit: int) -> SelectionPolicy:
    if name == "full_pass":
        return FullPassSelection()
    if name == "top_discount":
        return TopDiscountSelection(limit=limit)
    if name == "random_sample":
        return RandomSampleSelection(limit=limit)
    raise ValueError(f"Unknown selection policy: {name} (expected one of {', '.join(SELECTION_POLICIES)})")
