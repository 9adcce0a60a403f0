"""
Lacquer — PostgreSQL connection pool, transactions and schema bootstrap.

Tables:
  - catalog:    brand, shade, sku, barcode, user_inventory_item
  - capture:    image_asset, capture_session, capture_frame, capture_question, capture_answer
  - ingestion:  external_product, ingestion_job, ingestion_queue

Uses raw psycopg2 with CREATE TABLE IF NOT EXISTS.
Every multi-row write goes through transaction(): commit on success,
rollback + re-raise on any exception.
"""
import logging
from contextlib import contextmanager
from typing import Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool

from config.settings import config

logger = logging.getLogger("lacquer.models.db")


class StoreUnavailable(RuntimeError):
    """No database connection could be obtained."""


# ---------------------------------------------------------------------------
# Connection pool (shared by all stores in the process)
# ---------------------------------------------------------------------------

_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None


def _get_pool():
    global _pool
    if _pool is None:
        try:
            _pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=config.postgres.pool_min,
                maxconn=config.postgres.pool_max,
                **config.postgres.dsn_params,
            )
            logger.info("PostgreSQL pool initialised")
        except Exception as e:
            logger.warning(f"PostgreSQL pool init failed: {e}")
    return _pool


def get_conn():
    pool = _get_pool()
    if pool is None:
        return None
    try:
        return pool.getconn()
    except Exception as e:
        logger.warning(f"Could not get connection: {e}")
        return None


def put_conn(conn):
    pool = _get_pool()
    if pool and conn:
        try:
            pool.putconn(conn)
        except Exception as e:
            logger.warning(f"Could not return connection to pool: {e}")


def close_pool():
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
        logger.info("PostgreSQL pool closed")


@contextmanager
def transaction():
    """Yield a RealDictCursor inside one transaction.

    Commits when the block exits cleanly; rolls back and re-raises otherwise.
    """
    conn = get_conn()
    if not conn:
        raise StoreUnavailable("No database connection available")
    cur = None
    try:
        cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if cur is not None:
            cur.close()
        put_conn(conn)


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------

SCHEMA_STATEMENTS = [
    # pg_trgm powers brand/shade similarity; optional on locked-down hosts
    "CREATE EXTENSION IF NOT EXISTS pg_trgm",
    """
    CREATE TABLE IF NOT EXISTS brand (
        brand_id BIGSERIAL PRIMARY KEY,
        name_canonical TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shade (
        shade_id BIGSERIAL PRIMARY KEY,
        brand_id BIGINT NOT NULL REFERENCES brand(brand_id),
        shade_name_canonical TEXT NOT NULL,
        finish TEXT,
        collection TEXT,
        vendor_hex TEXT,
        detected_hex TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sku (
        sku_id BIGSERIAL PRIMARY KEY,
        brand_id BIGINT NOT NULL REFERENCES brand(brand_id),
        shade_id BIGINT REFERENCES shade(shade_id),
        product_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS barcode (
        barcode_id BIGSERIAL PRIMARY KEY,
        sku_id BIGINT NOT NULL REFERENCES sku(sku_id) ON DELETE CASCADE,
        gtin TEXT NOT NULL UNIQUE,
        barcode_type TEXT,
        is_primary BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_inventory_item (
        inventory_item_id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        sku_id BIGINT REFERENCES sku(sku_id),
        shade_id BIGINT REFERENCES shade(shade_id),
        quantity INT NOT NULL DEFAULT 1,
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT uq_user_inventory_shade UNIQUE (user_id, shade_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS image_asset (
        image_id BIGSERIAL PRIMARY KEY,
        owner_type TEXT NOT NULL,
        owner_id BIGINT NOT NULL,
        storage_url TEXT NOT NULL,
        checksum_sha256 TEXT,
        byte_size INT,
        mime_type TEXT,
        content BYTEA,
        captured_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS capture_session (
        capture_session_id BIGSERIAL PRIMARY KEY,
        capture_uuid UUID NOT NULL UNIQUE,
        user_id BIGINT NOT NULL,
        status TEXT NOT NULL DEFAULT 'processing',
        top_confidence NUMERIC(4,3),
        accepted_entity_type TEXT,
        accepted_entity_id BIGINT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS capture_frame (
        capture_frame_id BIGSERIAL PRIMARY KEY,
        capture_session_id BIGINT NOT NULL REFERENCES capture_session(capture_session_id) ON DELETE CASCADE,
        image_id BIGINT REFERENCES image_asset(image_id),
        frame_type TEXT NOT NULL,
        quality_json JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS capture_question (
        capture_question_id BIGSERIAL PRIMARY KEY,
        capture_session_id BIGINT NOT NULL REFERENCES capture_session(capture_session_id) ON DELETE CASCADE,
        question_key TEXT NOT NULL,
        prompt TEXT NOT NULL,
        question_type TEXT NOT NULL,
        options_json JSONB,
        status TEXT NOT NULL DEFAULT 'open',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    # At most one open question per session
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_capture_question_open
        ON capture_question (capture_session_id) WHERE status = 'open'
    """,
    """
    CREATE TABLE IF NOT EXISTS capture_answer (
        capture_answer_id BIGSERIAL PRIMARY KEY,
        capture_question_id BIGINT NOT NULL REFERENCES capture_question(capture_question_id) ON DELETE CASCADE,
        user_id BIGINT NOT NULL,
        answer_json JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS external_product (
        external_product_id BIGSERIAL PRIMARY KEY,
        source TEXT NOT NULL,
        external_id TEXT NOT NULL,
        gtin TEXT,
        raw_json JSONB,
        normalized_json JSONB,
        fetched_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (source, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingestion_job (
        ingestion_job_id BIGSERIAL PRIMARY KEY,
        source TEXT NOT NULL,
        job_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        finished_at TIMESTAMPTZ,
        metrics_json JSONB NOT NULL DEFAULT '{}'::jsonb,
        error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingestion_queue (
        message_id BIGSERIAL PRIMARY KEY,
        queue_name TEXT NOT NULL,
        body JSONB NOT NULL,
        enqueued_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        visible_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        dequeue_count INT NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ingestion_queue_visible ON ingestion_queue (queue_name, visible_at)",
    "CREATE INDEX IF NOT EXISTS idx_capture_frame_session ON capture_frame (capture_session_id)",
    "CREATE INDEX IF NOT EXISTS idx_ingestion_job_source ON ingestion_job (source, started_at DESC)",
]


def ensure_tables():
    """Create all tables if they don't exist. Logs and continues on failure."""
    conn = get_conn()
    if not conn:
        logger.warning("No DB connection — tables not verified")
        return
    try:
        for statement in SCHEMA_STATEMENTS:
            cur = conn.cursor()
            try:
                cur.execute(statement)
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.warning(f"Schema statement failed ({statement.split('(')[0].strip()[:60]}): {e}")
            finally:
                cur.close()
        logger.info("Tables verified (catalog, capture, ingestion)")
    finally:
        put_conn(conn)
