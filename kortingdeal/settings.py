from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SELECTION_POLICIES = ("full_pass", "top_discount", "random_sample")


class Settings(BaseSettings):
    database_url: str = "postgresql+psycopg://kortingdeal@localhost:5432/kortingdeal"

    # Awin productdata feed (gzip CSV)
    feed_url: str = ""
    feed_timeout_seconds: float = 120.0
    feed_retry_count: int = 3  # tenacity retries for the download only
    feed_user_agent: str = "KortingDeal-Sync/1.0"

    feed_batch_size: int = 100  # upsert batch size
    feed_chunk_size: int = 5000  # feed lines per chunk (full_pass)
    feed_parse_max_rows: int = 0  # 0 = unbounded
    feed_progress_every: int = 1  # persist progress every N batches
    feed_selection_policy: str = "full_pass"
    feed_selection_limit: int = 5000  # top_discount / random_sample
    feed_deactivate_missing: bool = True

    seo_title_template: str = "[brand] [title] - [discount]% Korting | KortingDeal.nl"
    seo_description_prefix: str = "Bespaar {discount}% op {title}."
    default_currency: str = "EUR"
    slug_append_full_id: bool = True

    sync_stale_minutes: int = 60
    catalog_page_limit_max: int = 100
    shuffle_pool_factor: int = 3

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("database_url must start with 'postgresql' or 'sqlite'")
        return v

    @field_validator("feed_url")
    @classmethod
    def validate_feed_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("feed_url must start with 'http://' or 'https://'")
        return v

    @field_validator("feed_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= 1000:
            raise ValueError("feed_batch_size must be between 1 and 1000")
        return v

    @field_validator("feed_chunk_size", "feed_progress_every", "feed_selection_limit", "shuffle_pool_factor")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("feed_parse_max_rows")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("feed_parse_max_rows must be 0 or greater")
        return v

    @field_validator("feed_selection_policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in SELECTION_POLICIES:
            raise ValueError(f"feed_selection_policy must be one of {', '.join(SELECTION_POLICIES)}")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
