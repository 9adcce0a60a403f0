"""
Lacquer — Catalog queries, inventory materialization, external product upserts.

Two callers:
  - the capture resolver binds a CatalogLookup to its transaction cursor and
    asks for match targets (exact GTIN → SKU, pg_trgm brand+shade similarity,
    shades carrying a hex colour); on a match it calls ensure_inventory_item()
  - the ingestion worker upserts fetched ProductRecords into external_product
    and optionally materializes them into brand/shade/sku/barcode + inventory

All functions take the cursor of an open transaction; nothing here commits.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from orchestrator.capture_types import (
    CatalogEntry,
    ENTITY_SHADE,
    ENTITY_SKU,
    normalize_gtin,
    normalize_hex,
)

logger = logging.getLogger("lacquer.models.catalog")

# Text similarity below this is not worth offering as a candidate
MIN_TEXT_SIMILARITY = 0.10

UPSERT_INSERTED = "inserted"
UPSERT_UPDATED = "updated"
UPSERT_SKIPPED = "skipped"


@dataclass
class ProductRecord:
    """One product as returned by a connector, before it touches the catalog."""
    external_id: Optional[str]
    brand: Optional[str] = None
    shade_name: Optional[str] = None
    gtin: Optional[str] = None
    product_name: Optional[str] = None
    image_url: Optional[str] = None
    vendor_hex: Optional[str] = None
    finish: Optional[str] = None
    collection: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def normalized(self) -> dict:
        return {
            "brand": self.brand,
            "shadeName": self.shade_name,
            "gtin": normalize_gtin(self.gtin),
            "productName": self.product_name,
            "imageUrl": self.image_url,
            "vendorHex": normalize_hex(self.vendor_hex),
            "finish": self.finish,
            "collection": self.collection,
        }


def _label(brand: Optional[str], shade: Optional[str]) -> str:
    return " - ".join(p for p in (brand, shade) if p)


# -------------------------------------------------------
# Match-target lookup (read side)
# -------------------------------------------------------

class CatalogLookup:
    """Catalog reads for the matcher, scoped to one transaction cursor."""

    def __init__(self, cur):
        self.cur = cur

    def find_by_gtin(self, gtin: str) -> Optional[CatalogEntry]:
        self.cur.execute(
            """
            SELECT k.sku_id, k.shade_id, b.name_canonical AS brand,
                   s.shade_name_canonical AS shade, k.product_name,
                   COALESCE(s.detected_hex, s.vendor_hex) AS hex
            FROM barcode bc
            JOIN sku k ON k.sku_id = bc.sku_id
            JOIN brand b ON b.brand_id = k.brand_id
            LEFT JOIN shade s ON s.shade_id = k.shade_id
            WHERE bc.gtin = %s
            ORDER BY bc.is_primary DESC, k.sku_id ASC
            LIMIT 1
            """,
            (gtin,),
        )
        row = self.cur.fetchone()
        if not row:
            return None
        return CatalogEntry(
            entity_type=ENTITY_SKU,
            entity_id=row["sku_id"],
            label=_label(row["brand"], row["shade"]) or (row.get("product_name") or ""),
            shade_id=row.get("shade_id"),
            hex=row.get("hex"),
        )

    def search_text(self, brand: Optional[str], shade_name: Optional[str],
                    limit: int = 10) -> List[Tuple[CatalogEntry, float]]:
        """Score = mean of brand and shade trigram similarity.

        A missing field contributes 0, so brand-only or shade-only evidence
        tops out at 0.5 and never clears the candidate threshold.
        """
        self.cur.execute(
            """
            SELECT * FROM (
                SELECT s.shade_id, b.name_canonical AS brand,
                       s.shade_name_canonical AS shade,
                       COALESCE(s.detected_hex, s.vendor_hex) AS hex,
                       (CASE WHEN %s::text IS NULL THEN 0
                             ELSE similarity(lower(b.name_canonical), lower(%s::text)) END
                      + CASE WHEN %s::text IS NULL THEN 0
                             ELSE similarity(lower(s.shade_name_canonical), lower(%s::text)) END
                       ) / 2.0 AS sim
                FROM shade s
                JOIN brand b ON b.brand_id = s.brand_id
            ) scored
            WHERE sim >= %s
            ORDER BY sim DESC, shade_id ASC
            LIMIT %s
            """,
            (brand, brand, shade_name, shade_name, MIN_TEXT_SIMILARITY, limit),
        )
        return [
            (
                CatalogEntry(
                    entity_type=ENTITY_SHADE,
                    entity_id=row["shade_id"],
                    label=_label(row["brand"], row["shade"]),
                    shade_id=row["shade_id"],
                    hex=row.get("hex"),
                ),
                float(row["sim"]),
            )
            for row in self.cur.fetchall()
        ]

    def color_entries(self, limit: int = 500) -> List[CatalogEntry]:
        self.cur.execute(
            """
            SELECT s.shade_id, b.name_canonical AS brand, s.shade_name_canonical AS shade,
                   COALESCE(s.detected_hex, s.vendor_hex) AS hex
            FROM shade s
            JOIN brand b ON b.brand_id = s.brand_id
            WHERE COALESCE(s.detected_hex, s.vendor_hex) IS NOT NULL
            ORDER BY s.shade_id ASC
            LIMIT %s
            """,
            (limit,),
        )
        return [
            CatalogEntry(
                entity_type=ENTITY_SHADE,
                entity_id=row["shade_id"],
                label=_label(row["brand"], row["shade"]),
                shade_id=row["shade_id"],
                hex=row["hex"],
            )
            for row in self.cur.fetchall()
        ]


# -------------------------------------------------------
# Write side
# -------------------------------------------------------

class Catalog:
    """Catalog writes shared by capture matching and ingestion."""

    def bind(self, cur) -> CatalogLookup:
        return CatalogLookup(cur)

    # -- inventory --

    def ensure_inventory_item(self, cur, user_id: int, entity_type: str, entity_id: int,
                              shade_id: Optional[int] = None) -> Tuple[int, bool]:
        """Return (inventory_item_id, created). Reuses an existing row for the same entity."""
        sku_id = entity_id if entity_type == ENTITY_SKU else None
        if entity_type == ENTITY_SHADE:
            shade_id = entity_id
        elif shade_id is None:
            cur.execute("SELECT shade_id FROM sku WHERE sku_id = %s", (sku_id,))
            row = cur.fetchone()
            shade_id = row["shade_id"] if row else None

        if shade_id is not None:
            cur.execute(
                "SELECT inventory_item_id FROM user_inventory_item WHERE user_id = %s AND shade_id = %s",
                (user_id, shade_id),
            )
        else:
            cur.execute(
                "SELECT inventory_item_id FROM user_inventory_item WHERE user_id = %s AND sku_id = %s",
                (user_id, sku_id),
            )
        row = cur.fetchone()
        if row:
            return row["inventory_item_id"], False

        cur.execute(
            """
            INSERT INTO user_inventory_item (user_id, sku_id, shade_id, quantity)
            VALUES (%s, %s, %s, 1)
            ON CONFLICT (user_id, shade_id) DO NOTHING
            RETURNING inventory_item_id
            """,
            (user_id, sku_id, shade_id),
        )
        row = cur.fetchone()
        if row:
            logger.info(f"Inventory item {row['inventory_item_id']} created for user {user_id} ({entity_type} {entity_id})")
            return row["inventory_item_id"], True

        # Lost an insert race on (user_id, shade_id)
        cur.execute(
            "SELECT inventory_item_id FROM user_inventory_item WHERE user_id = %s AND shade_id = %s",
            (user_id, shade_id),
        )
        return cur.fetchone()["inventory_item_id"], False

    # -- ingestion --

    def upsert_external_product(self, cur, source: str, record: ProductRecord) -> str:
        """Insert or refresh one external_product row. Unchanged payloads are skipped."""
        if not record.external_id:
            return UPSERT_SKIPPED
        cur.execute(
            """
            INSERT INTO external_product (source, external_id, gtin, raw_json, normalized_json)
            VALUES (%s, %s, %s, %s::jsonb, %s::jsonb)
            ON CONFLICT (source, external_id) DO UPDATE
                SET gtin = EXCLUDED.gtin,
                    raw_json = EXCLUDED.raw_json,
                    normalized_json = EXCLUDED.normalized_json,
                    fetched_at = NOW()
                WHERE external_product.raw_json IS DISTINCT FROM EXCLUDED.raw_json
            RETURNING (xmax = 0) AS inserted
            """,
            (
                source,
                str(record.external_id),
                normalize_gtin(record.gtin),
                json.dumps(record.raw, default=str),
                json.dumps(record.normalized(), default=str),
            ),
        )
        row = cur.fetchone()
        if not row:
            return UPSERT_SKIPPED
        return UPSERT_INSERTED if row["inserted"] else UPSERT_UPDATED

    def _ensure_brand(self, cur, name: str) -> Tuple[int, bool]:
        cur.execute(
            """
            INSERT INTO brand (name_canonical) VALUES (%s)
            ON CONFLICT (name_canonical) DO NOTHING
            RETURNING brand_id
            """,
            (name,),
        )
        row = cur.fetchone()
        if row:
            return row["brand_id"], True
        cur.execute("SELECT brand_id FROM brand WHERE name_canonical = %s", (name,))
        return cur.fetchone()["brand_id"], False

    def _ensure_shade(self, cur, brand_id: int, record: ProductRecord) -> Tuple[int, bool]:
        cur.execute(
            """
            SELECT shade_id FROM shade
            WHERE brand_id = %s AND lower(shade_name_canonical) = lower(%s)
            ORDER BY shade_id ASC
            LIMIT 1
            """,
            (brand_id, record.shade_name),
        )
        row = cur.fetchone()
        vendor_hex = normalize_hex(record.vendor_hex)
        if row:
            if vendor_hex:
                cur.execute(
                    "UPDATE shade SET vendor_hex = %s, updated_at = NOW() WHERE shade_id = %s AND vendor_hex IS NULL",
                    (vendor_hex, row["shade_id"]),
                )
            return row["shade_id"], False
        cur.execute(
            """
            INSERT INTO shade (brand_id, shade_name_canonical, finish, collection, vendor_hex)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING shade_id
            """,
            (brand_id, record.shade_name, record.finish, record.collection, vendor_hex),
        )
        return cur.fetchone()["shade_id"], True

    def _ensure_sku(self, cur, brand_id: int, shade_id: int, record: ProductRecord) -> Optional[int]:
        gtin = normalize_gtin(record.gtin)
        if not gtin:
            return None
        cur.execute("SELECT sku_id FROM barcode WHERE gtin = %s", (gtin,))
        row = cur.fetchone()
        if row:
            return row["sku_id"]
        cur.execute(
            "INSERT INTO sku (brand_id, shade_id, product_name) VALUES (%s, %s, %s) RETURNING sku_id",
            (brand_id, shade_id, record.product_name),
        )
        sku_id = cur.fetchone()["sku_id"]
        cur.execute(
            "INSERT INTO barcode (sku_id, gtin, barcode_type, is_primary) VALUES (%s, %s, %s, TRUE)",
            (sku_id, gtin, "EAN13" if len(gtin) == 13 else "UPC" if len(gtin) == 12 else None),
        )
        return sku_id

    def materialize_record(self, cur, user_id: int, record: ProductRecord) -> Optional[dict]:
        """Create brand/shade/sku/barcode as needed and an inventory row for the user.

        Returns None when the record lacks a brand or shade name.
        """
        if not record.brand or not record.shade_name:
            return None
        brand_id, brand_created = self._ensure_brand(cur, record.brand)
        shade_id, shade_created = self._ensure_shade(cur, brand_id, record)
        sku_id = self._ensure_sku(cur, brand_id, shade_id, record)
        item_id, item_created = self.ensure_inventory_item(cur, user_id, ENTITY_SHADE, shade_id)
        if not item_created:
            cur.execute(
                "UPDATE user_inventory_item SET updated_at = NOW(), sku_id = COALESCE(sku_id, %s) WHERE inventory_item_id = %s",
                (sku_id, item_id),
            )
        return {
            "brandId": brand_id,
            "shadeId": shade_id,
            "skuId": sku_id,
            "inventoryItemId": item_id,
            "brandCreated": brand_created,
            "shadeCreated": shade_created,
            "inventoryCreated": item_created,
        }

    def get_detected_hex(self, cur, shade_id: int) -> Optional[str]:
        cur.execute("SELECT detected_hex FROM shade WHERE shade_id = %s", (shade_id,))
        row = cur.fetchone()
        return row["detected_hex"] if row else None

    def update_detected_hex(self, cur, shade_id: int, hex_value: str):
        cur.execute(
            "UPDATE shade SET detected_hex = %s, updated_at = NOW() WHERE shade_id = %s",
            (hex_value, shade_id),
        )
