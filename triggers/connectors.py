"""
Lacquer — Catalog connectors
Pull product pages from external catalog sources and normalize them into
ProductRecords. Each connector is one thin httpx client; the ingestion worker
only ever calls pull(PullOptions) and never sees source-specific payloads.

Sources:
  - OpenBeautyFacts   (public dataset search API)
  - MakeupAPI         (product_type=nail_polish listing)
  - <Brand>Shopify    (any Shopify storefront's /products.json)
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import httpx

from models.catalog import ProductRecord

logger = logging.getLogger("lacquer.ingestion.connectors")

USER_AGENT = "Lacquer/connector-ingestion"
REQUEST_TIMEOUT = 20.0
SHOPIFY_PAGE_LIMIT = 250

_HEX_RE = re.compile(r"#?([0-9A-Fa-f]{6})\b")

# Search terms that mean "everything" rather than a text filter
_MATCH_ALL_TERMS = {"", "nail polish", "nail_polish", "nailpolish", "all", "*", "recent", "latest", "new"}
_RECENT_TERMS = {"recent", "latest", "new"}
DEFAULT_RECENT_DAYS = 120

SHOPIFY_STORES: Dict[str, str] = {
    "BeesKneesLacquerShopify": "https://www.beeskneeslacquer.com",
    "ChinaGlazeShopify": "https://chinaglaze.com",
    "ClionadhShopify": "https://clionadhcosmetics.com",
    "ColorClubShopify": "https://colorclub.com",
    "CrackedPolishShopify": "https://crackedpolish.com",
    "CupcakePolishShopify": "https://www.cupcakepolish.com",
    "DrunkFairyPolishShopify": "https://drunkfairypolish.com",
    "GardenPathLacquersShopify": "https://gardenpathlacquers.com",
    "GreatLakesLacquerShopify": "https://www.greatlakeslacquer.com",
    "HoloTacoShopify": "https://www.holotaco.com",
    "KathleenAndCoShopify": "https://kathleenandco.com",
    "LeMiniMacaronShopify": "https://www.leminimacaron.eu",
    "LightsLacquerShopify": "https://lightslacquer.com",
    "LoudBabbsShopify": "https://loudbabbs.com",
    "MooncatShopify": "https://www.mooncat.com",
    "OliveAvePolishShopify": "https://oliveavepolish.com",
    "OrlyShopify": "https://orlybeauty.com",
    "PaintItPrettyPolishShopify": "https://paintitprettypolish.com",
    "PotionPolishShopify": "https://www.potionpolish.com",
    "PrismParadeShopify": "https://prismparade.com",
    "RedEyedLacquerShopify": "https://redeyedlacquer.com",
    "RogueLacquerShopify": "https://roguelacquer.com",
    "RoylaleeShopify": "https://roylalee.com",
    "SassysaucePolishShopify": "https://sassysaucepolish.com",
    "StarrilyShopify": "https://www.starrily.com",
    "TylerStrinketsShopify": "https://tylerstrinkets.com",
    "ZombieClawPolishShopify": "https://zombieclawpolish.com",
}

SOURCE_OPEN_BEAUTY_FACTS = "OpenBeautyFacts"
SOURCE_MAKEUP_API = "MakeupAPI"

SUPPORTED_SOURCES: List[str] = sorted([SOURCE_OPEN_BEAUTY_FACTS, SOURCE_MAKEUP_API] + list(SHOPIFY_STORES))


class ConnectorError(RuntimeError):
    """A connector could not fetch or understand a page."""


@dataclass
class PullOptions:
    search_term: str
    page: int
    page_size: int
    max_records: int
    recent_days: Optional[int] = None


@dataclass
class PullResult:
    source: str
    records: List[ProductRecord] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)


def is_supported_source(source) -> bool:
    return isinstance(source, str) and source in SUPPORTED_SOURCES


def _text(value) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        return None
    value = " ".join(value.split())
    return value or None


def _extract_hex(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    m = _HEX_RE.search(value)
    return f"#{m.group(1).upper()}" if m else None


def _parse_ts(value) -> Optional[datetime]:
    text = _text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _HttpConnector:
    source: str = ""

    def __init__(self, base_url: str, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            timeout=REQUEST_TIMEOUT,
            follow_redirects=True,
        )

    def _get_json(self, path: str, params: dict = None):
        url = f"{self.base_url}{path}"
        try:
            resp = self._client.get(url, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.TimeoutException:
            raise ConnectorError(f"{self.source} request timed out")
        except httpx.HTTPStatusError as e:
            raise ConnectorError(f"{self.source} request failed: {e.response.status_code} {e.response.reason_phrase}")
        except (httpx.HTTPError, ValueError) as e:
            raise ConnectorError(f"{self.source} request failed: {e}")

    def pull(self, options: PullOptions) -> PullResult:
        raise NotImplementedError


# -------------------------------------------------------
# OpenBeautyFacts
# -------------------------------------------------------

class OpenBeautyFactsConnector(_HttpConnector):
    source = SOURCE_OPEN_BEAUTY_FACTS

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        super().__init__(base_url or "https://world.openbeautyfacts.org", client)

    def pull(self, options: PullOptions) -> PullResult:
        params = {
            "search_terms": options.search_term,
            "search_simple": "1",
            "action": "process",
            "json": "1",
            "page": str(options.page),
            "page_size": str(options.page_size),
        }
        payload = self._get_json("/cgi/search.pl", params)
        if not isinstance(payload, dict) or not isinstance(payload.get("products"), list):
            raise ConnectorError("OpenBeautyFacts search response missing products array")

        records = []
        for product in payload["products"]:
            if len(records) >= options.max_records:
                break
            if not isinstance(product, dict):
                continue
            code = _text(product.get("code"))
            if not code:
                continue
            brands = _text(product.get("brands"))
            records.append(ProductRecord(
                external_id=code,
                gtin=code,
                brand=brands.split(",")[0].strip() if brands else None,
                shade_name=_text(product.get("product_name")) or _text(product.get("generic_name")),
                product_name=_text(product.get("product_name")),
                image_url=_text(product.get("image_url")) or _text(product.get("image_front_url")),
                raw=product,
            ))
        return PullResult(self.source, records, {
            "requestUrl": f"{self.base_url}/cgi/search.pl",
            "responsePage": options.page,
            "responsePageSize": options.page_size,
            "sourceCount": payload.get("count"),
        })


# -------------------------------------------------------
# MakeupAPI
# -------------------------------------------------------

class MakeupApiConnector(_HttpConnector):
    source = SOURCE_MAKEUP_API

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        super().__init__(base_url or "https://makeup-api.herokuapp.com", client)

    def pull(self, options: PullOptions) -> PullResult:
        params = {"product_type": "nail_polish"}
        if options.search_term.strip().lower() not in _MATCH_ALL_TERMS:
            params["brand"] = options.search_term.strip()
        payload = self._get_json("/api/v1/products.json", params)
        if not isinstance(payload, list):
            raise ConnectorError("MakeupAPI response was not an array")

        all_records = []
        for product in payload:
            if not isinstance(product, dict):
                continue
            external_id = _text(product.get("id"))
            if not external_id:
                continue
            colors = [c for c in (product.get("product_colors") or []) if isinstance(c, dict)]
            vendor_hex = _extract_hex(_text(colors[0].get("hex_value"))) if len(colors) == 1 else None
            all_records.append(ProductRecord(
                external_id=external_id,
                brand=_text(product.get("brand")),
                shade_name=_text(product.get("name")),
                product_name=_text(product.get("name")),
                image_url=_text(product.get("image_link")),
                vendor_hex=vendor_hex,
                raw=product,
            ))

        offset = max(0, (options.page - 1) * options.page_size)
        records = all_records[offset:offset + options.page_size][:options.max_records]
        return PullResult(self.source, records, {
            "requestUrl": f"{self.base_url}/api/v1/products.json",
            "responsePage": options.page,
            "responsePageSize": options.page_size,
            "sourceCount": len(all_records),
        })


# -------------------------------------------------------
# Shopify storefronts
# -------------------------------------------------------

def _is_nail_polish(product_type: Optional[str], tags: List[str]) -> bool:
    if product_type and "nail" in product_type.lower():
        return True
    return any(k in t.lower() for t in tags for k in ("nail", "polish", "lacquer", "gel"))


def _shopify_tags(value) -> List[str]:
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    if isinstance(value, list):
        return [t for t in (_text(v) for v in value) if t]
    return []


class ShopifyConnector(_HttpConnector):
    """Any Shopify storefront's public products.json."""

    def __init__(self, source: str, base_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.source = source
        # "HoloTacoShopify" -> "Holo Taco"
        self.brand_name = re.sub(r"(?<!^)([A-Z])", r" \1", re.sub(r"Shopify$", "", source)).strip()
        super().__init__(base_url or SHOPIFY_STORES.get(source) or f"https://{source[:-7].lower()}.com", client)

    def _to_record(self, product: dict) -> Optional[ProductRecord]:
        external_id = _text(product.get("id"))
        title = _text(product.get("title"))
        if not external_id or not title:
            return None
        tags = _shopify_tags(product.get("tags"))
        if not _is_nail_polish(_text(product.get("product_type")), tags):
            return None
        if any(t.lower() in ("bundle", "bundle:product", "product-bundle") for t in tags):
            return None

        variants = [v for v in (product.get("variants") or []) if isinstance(v, dict)]
        vendor_hex = None
        gtin = None
        for v in variants:
            vendor_hex = vendor_hex or _extract_hex(_text(v.get("option1"))) or _extract_hex(_text(v.get("option2")))
            gtin = gtin or _text(v.get("barcode"))
        vendor_hex = vendor_hex or _extract_hex(title)

        image_url = None
        for img in product.get("images") or []:
            src = _text(img.get("src")) if isinstance(img, dict) else _text(img)
            if src:
                image_url = f"https:{src}" if src.startswith("//") else src
                break

        finishes = [t.split(":", 1)[1].strip() for t in tags if t.lower().startswith("finish:")]
        collections = [t.split(":", 1)[1].strip() for t in tags if t.lower().startswith("collection:")]
        return ProductRecord(
            external_id=external_id,
            brand=_text(product.get("vendor")) or self.brand_name,
            shade_name=_HEX_RE.sub("", title).strip() or title,
            gtin=gtin,
            product_name=title,
            image_url=image_url,
            vendor_hex=vendor_hex,
            finish=finishes[0] if finishes else None,
            collection=collections[0] if collections else None,
            raw=product,
        )

    def pull(self, options: PullOptions) -> PullResult:
        payload = self._get_json("/products.json", {"limit": str(SHOPIFY_PAGE_LIMIT), "page": str(options.page)})
        if not isinstance(payload, dict) or not isinstance(payload.get("products"), list):
            raise ConnectorError(f"{self.source} response missing products array")

        term = options.search_term.strip().lower()
        recent_days = options.recent_days
        if recent_days is None and term in _RECENT_TERMS:
            recent_days = DEFAULT_RECENT_DAYS
        cutoff = datetime.now(timezone.utc) - timedelta(days=recent_days) if recent_days else None

        records = []
        for product in payload["products"]:
            if not isinstance(product, dict):
                continue
            record = self._to_record(product)
            if record is None:
                continue
            if term not in _MATCH_ALL_TERMS:
                haystack = " ".join(filter(None, [record.product_name, record.brand, _text(product.get("handle"))])).lower()
                if term not in haystack:
                    continue
            if cutoff is not None:
                stamps = [_parse_ts(product.get(k)) for k in ("published_at", "created_at", "updated_at")]
                stamps = [s for s in stamps if s is not None]
                if not stamps or max(stamps) < cutoff:
                    continue
            records.append(record)

        return PullResult(self.source, records[:min(options.page_size, options.max_records)], {
            "requestUrl": f"{self.base_url}/products.json",
            "responsePage": options.page,
            "responsePageSize": options.page_size,
            "fetchedProductCount": len(payload["products"]),
            "sourceCount": len(records),
        })


def create_connector(source: str, base_url: Optional[str] = None,
                     client: Optional[httpx.Client] = None):
    if source == SOURCE_OPEN_BEAUTY_FACTS:
        return OpenBeautyFactsConnector(base_url, client)
    if source == SOURCE_MAKEUP_API:
        return MakeupApiConnector(base_url, client)
    if source in SHOPIFY_STORES:
        return ShopifyConnector(source, base_url, client)
    raise ConnectorError(f"Unsupported connector source: {source}")


def connector_factory(base_urls: Optional[Dict[str, str]] = None) -> Callable[[str], object]:
    """Build a source → connector factory honoring per-source base URL overrides."""
    base_urls = {k.lower(): v for k, v in (base_urls or {}).items()}

    def factory(source: str):
        return create_connector(source, base_urls.get(source.lower()))

    return factory
