from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from kortingdeal.models import FeedSettings
from kortingdeal.settings import Settings, settings as default_settings


@dataclass(frozen=True)
class FeedSyncConfig:
    """Everything a sync run needs, resolved once before the run starts."""
    feed_url: str
    seo_title_template: str
    seo_description_prefix: str
    default_currency: str = "EUR"
    slug_append_full_id: bool = True
    batch_size: int = 100
    chunk_size: int = 5000
    parse_max_rows: Optional[int] = None
    progress_every: int = 1
    selection_policy: str = "full_pass"
    selection_limit: int = 5000
    deactivate_missing: bool = True

    @classmethod
    def from_settings(cls, s: Settings) -> "FeedSyncConfig":
        return cls(
            feed_url=s.feed_url,
            seo_title_template=s.seo_title_template,
            seo_description_prefix=s.seo_description_prefix,
            default_currency=s.default_currency,
            slug_append_full_id=s.slug_append_full_id,
            batch_size=s.feed_batch_size,
            chunk_size=s.feed_chunk_size,
            parse_max_rows=s.feed_parse_max_rows or None,
            progress_every=s.feed_progress_every,
            selection_policy=s.feed_selection_policy,
            selection_limit=s.feed_selection_limit,
            deactivate_missing=s.feed_deactivate_missing,
        )

    def with_overrides(self, **changes) -> "FeedSyncConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def get_feed_settings(session: Session) -> FeedSettings | None:
    return session.scalars(select(FeedSettings).limit(1)).first()


def load_feed_config(session: Session, base: Settings | None = None, **overrides) -> FeedSyncConfig:
    """
    Build the run configuration: environment settings, then the admin-edited
    feed_settings row, then explicit overrides (e.g. a policy from the CLI).
    """
    config = FeedSyncConfig.from_settings(base or default_settings)
    row = get_feed_settings(session)
    if row is not None:
        config = config.with_overrides(feed_url=row.feed_url or None, seo_title_template=row.seo_title_template or None)
    return config.with_overrides(**overrides)
