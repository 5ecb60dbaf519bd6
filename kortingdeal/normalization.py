import logging
import math
import re
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_SEO_TEMPLATE = "[brand] [title] - [discount]% Korting | KortingDeal.nl"
DEFAULT_DESCRIPTION_PREFIX = "Bespaar {discount}% op {title}."
FALLBACK_CATEGORY_SLUG = "overig"

SEO_TITLE_MAX = 150
SEO_DESCRIPTION_MAX = 160
DESCRIPTION_MAX = 5000
SLUG_BASE_MAX = 80
FEATURED_DISCOUNT = 50

# Order is the tie-break priority: "sport shoes" is fashion, not sport.
CATEGORY_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("elektronica", re.compile(
        r"elektron|electron|computer|laptop|notebook|\btablet|telefoon|phone|\btv\b|televisie|audio"
        r"|camera|printer|koptelefoon|headphone|speaker|hardware|software|\bsmart ?home"
    )),
    ("mode", re.compile(
        r"\bmode\b|fashion|kleding|clothing|apparel|schoen|shoe|sneaker|laars|boots?\b|\bjas\b|jassen|jurk|dress"
        r"|broek|shirt|\btas\b|tassen|\bbags?\b|sieraad|sieraden|jewel|horloge|lingerie|ondergoed|bikini|badmode"
    )),
    ("huis-tuin", re.compile(
        r"\bhuis|\bhome\b|tuin|garden|wonen|interieur|meubel|furniture|keuken|kitchen|badkamer|\bbed\b|beddengoed"
        r"|matras|decoratie|verlichting|lighting|klussen|\bdiy\b|gereedschap|\btools?\b"
    )),
    ("sport-vrije-tijd", re.compile(
        r"sport|fitness|outdoor|fiets|\bbikes?\b|cycling|camping|hardloop|running|yoga|voetbal|zwem|wandel|hiking"
    )),
    ("beauty-gezondheid", re.compile(
        r"beauty|gezondheid|health|cosmetic|cosmetica|parfum|perfume|fragrance|huidverzorging|skincare"
        r"|make-?up|\bhaar\b|haircare|verzorging|vitamine|supplement|drogist"
    )),
    ("speelgoed-games", re.compile(
        r"speelgoed|\btoys?\b|\bgames?\b|gaming|\bspel\b|spellen|puzzel|\blego\b|\bbaby|kinder|\bkids\b"
    )),
    ("eten-drinken", re.compile(
        r"\beten\b|drinken|\bfood|\bdrinks?\b|voeding|\bwijn|\bwine|\bbier\b|\bbeer\b|koffie|coffee|\bthee\b|\btea\b"
        r"|snack|boodschappen|groceries"
    )),
    ("auto-motor", re.compile(
        r"\bauto\b|\bauto-|\bcars?\b|motorfiets|motorcycle|\bmotor\b|automotive|autobanden|\bbanden\b|\btyres?\b|scooter"
    )),
    ("reizen", re.compile(
        r"\breis|travel|vakantie|holiday|hotel|vlucht|flights?\b|koffer|luggage"
    )),
)

_SIZE = r"(?:string\s+)?[XSML]{1,4}"
VARIANT_SUFFIX_RE = re.compile(
    rf"[\s,\-]*\bmaat\s+({_SIZE}(?:\s*,\s*top\s+{_SIZE})?)\s*$",
    re.IGNORECASE,
)

_RE_SLUG_STRIP = re.compile(r"[^a-z0-9\s-]")
_RE_SLUG_COLLAPSE = re.compile(r"[\s-]+")
_RE_LEFTOVER_TOKEN = re.compile(r"\[\w+\]")
_RE_WS = re.compile(r"\s+")
_RE_LEADING_DASH = re.compile(r"^\s*-\s*")
_RE_TRAILING_DASH = re.compile(r"\s*-\s*$")


@dataclass
class NormalizedProduct:
    awin_product_id: str
    slug: str
    original_title: str
    base_title: str
    seo_title: str
    description: Optional[str]
    seo_description: str
    image_url: Optional[str]
    original_price: Optional[float]
    sale_price: float
    discount_percentage: Optional[int]
    currency: str
    product_url: str
    affiliate_link: str
    brand: Optional[str]
    merchant_category: Optional[str]
    category_id: Optional[uuid.UUID]
    availability: str
    merchant_id: Optional[str]
    merchant_name: Optional[str]
    variant_value: Optional[str] = None
    parent_product_id: Optional[uuid.UUID] = None
    is_featured: bool = False
    is_active: bool = True
    last_synced_at: Optional[datetime] = None

    def to_row(self) -> dict:
        """Column values for the products table (merchant fields resolve to advertiser_id)."""
        row = asdict(self)
        for key in ("base_title", "merchant_id", "merchant_name"):
            row.pop(key)
        return row


def generate_slug(title: str, product_id: str, append_full_id: bool = False) -> str:
    slug = _RE_SLUG_STRIP.sub("", (title or "").lower())
    slug = _RE_SLUG_COLLAPSE.sub("-", slug)[:SLUG_BASE_MAX]
    suffix = product_id[:8]
    if append_full_id and len(product_id) > 8:
        suffix = f"{suffix}-{product_id}"
    return f"{slug}-{suffix}"


def parse_price(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    s = str(value).strip().replace("€", "").replace(" ", "")
    if not s:
        return None
    if "," in s and "." not in s:
        s = s.replace(",", ".")
    try:
        price = float(s)
    except ValueError:
        return None
    if price != price or price < 0:  # NaN
        return None
    return price


def calculate_discount(original_price: Optional[float], sale_price: Optional[float]) -> int:
    """Whole-percent saving; 0 when the reference price is missing or not above the sale price."""
    if not original_price or sale_price is None or original_price <= sale_price:
        return 0
    # half-up, so 12.5% shows as 13
    return int(math.floor(100 * (original_price - sale_price) / original_price + 0.5))


def split_variant(title: str) -> tuple[str, Optional[str]]:
    """
    Strip a trailing Dutch size suffix ("Maat M", "Maat string S, top M").

    Returns ``(base_title, variant_value)``; variant_value is None when no suffix.
    """
    title = (title or "").strip()
    m = VARIANT_SUFFIX_RE.search(title)
    if not m or m.start() == 0:
        return title, None
    return title[:m.start()].strip(), _RE_WS.sub(" ", m.group(1)).strip()


def classify_category(merchant_category: Optional[str], category_name: Optional[str] = None) -> str:
    text = f"{merchant_category or ''} {category_name or ''}".lower()
    if not text.strip():
        return FALLBACK_CATEGORY_SLUG
    for slug, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return slug
    return FALLBACK_CATEGORY_SLUG


def generate_seo_title(
    title: str,
    brand: Optional[str],
    merchant: Optional[str],
    discount: int,
    template: str = DEFAULT_SEO_TEMPLATE,
) -> str:
    seo_title = (
        (template or DEFAULT_SEO_TEMPLATE)
        .replace("[brand]", brand or merchant or "")
        .replace("[title]", title or "")
        .replace("[discount]", str(discount))
        .replace("[merchant]", merchant or "")
    )
    seo_title = _RE_LEFTOVER_TOKEN.sub("", seo_title)
    seo_title = _RE_WS.sub(" ", seo_title)
    seo_title = _RE_LEADING_DASH.sub("", seo_title)
    seo_title = _RE_TRAILING_DASH.sub("", seo_title)
    return seo_title.strip()[:SEO_TITLE_MAX]


def generate_seo_description(
    title: str,
    description: Optional[str],
    discount: int,
    prefix: str = DEFAULT_DESCRIPTION_PREFIX,
) -> str:
    desc = (description or "").strip() or title
    if discount > 0:
        desc = f"{prefix.format(discount=discount, title=title)} {desc}"
    return desc[:SEO_DESCRIPTION_MAX]


def has_required_fields(row: Mapping[str, str]) -> bool:
    return bool((row.get("aw_product_id") or "").strip() and (row.get("product_name") or "").strip())


def _first(row: Mapping[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def normalize_row(
    row: Mapping[str, str],
    category_index: Mapping[str, uuid.UUID],
    seo_template: str = DEFAULT_SEO_TEMPLATE,
    description_prefix: str = DEFAULT_DESCRIPTION_PREFIX,
    default_currency: str = "EUR",
    append_full_id: bool = False,
    synced_at: Optional[datetime] = None,
) -> NormalizedProduct:
    """
    Map one raw feed row onto the canonical product record.

    Pure apart from reading ``category_index`` (slug -> id). Raises ValueError
    for rows without product id or title.
    """
    if not has_required_fields(row):
        raise ValueError("feed row is missing aw_product_id or product_name")

    product_id = row["aw_product_id"].strip()
    title = row["product_name"].strip()
    brand = _first(row, "brand_name")
    merchant = _first(row, "merchant_name")

    sale_price = parse_price(row.get("search_price")) or 0.0
    original_price = parse_price(_first(row, "rrp_price", "store_price"))
    if original_price is not None and original_price <= 0:
        original_price = None
    discount = calculate_discount(original_price, sale_price)

    merchant_category = _first(row, "merchant_category")
    category_slug = classify_category(merchant_category, row.get("category_name"))
    category_id = category_index.get(category_slug) or category_index.get(FALLBACK_CATEGORY_SLUG)

    base_title, variant_value = split_variant(title)
    description = _first(row, "description")

    return NormalizedProduct(
        awin_product_id=product_id,
        slug=generate_slug(title, product_id, append_full_id=append_full_id),
        original_title=title,
        base_title=base_title,
        seo_title=generate_seo_title(title, brand, merchant, discount, seo_template),
        description=description[:DESCRIPTION_MAX] if description else None,
        seo_description=generate_seo_description(title, description, discount, description_prefix),
        image_url=_first(row, "aw_image_url", "merchant_image_url", "large_image"),
        original_price=original_price,
        sale_price=sale_price,
        discount_percentage=discount if discount > 0 else None,
        currency=_first(row, "currency") or default_currency,
        product_url=_first(row, "merchant_deep_link") or "",
        affiliate_link=_first(row, "aw_deep_link") or "",
        brand=brand,
        merchant_category=merchant_category,
        category_id=category_id,
        availability="in_stock" if (row.get("in_stock") or "").strip() == "1" else "out_of_stock",
        merchant_id=_first(row, "merchant_id"),
        merchant_name=merchant,
        variant_value=variant_value,
        is_featured=discount >= FEATURED_DISCOUNT,
        is_active=True,
        last_synced_at=synced_at or datetime.now(timezone.utc),
    )
