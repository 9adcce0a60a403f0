"""
Lacquer — Configuration
All secrets loaded from environment variables.
Copy .env.example → .env and fill in your credentials.

The HTTP app and the services take a LacquerConfig instance as an argument;
the module-level `config` is only for process entry points (cli, uvicorn).
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

# Load .env before any os.getenv() calls in dataclass defaults
_ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(_ENV_PATH, override=False)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_int_list(name: str) -> List[int]:
    out = []
    for part in os.getenv(name, "").split(","):
        part = part.strip()
        if part.isdigit():
            out.append(int(part))
    return out


@dataclass
class PostgresConfig:
    host: str = os.getenv("POSTGRES_HOST", "localhost")
    port: int = int(os.getenv("POSTGRES_PORT", "5432"))
    database: str = os.getenv("POSTGRES_DB", "lacquer")
    user: str = os.getenv("POSTGRES_USER", "lacquer")
    password: str = os.getenv("POSTGRES_PASSWORD", "")
    sslmode: str = os.getenv("POSTGRES_SSLMODE", "prefer")
    pool_min: int = int(os.getenv("POSTGRES_POOL_MIN", "1"))
    pool_max: int = int(os.getenv("POSTGRES_POOL_MAX", "8"))

    @property
    def connection_string(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}?sslmode={self.sslmode}"

    @property
    def dsn_params(self) -> dict:
        """Return connection params dict for psycopg2."""
        params = {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
        }
        if self.sslmode and self.sslmode != "disable":
            params["sslmode"] = self.sslmode
        return params


@dataclass
class CaptureConfig:
    # Confidence policy (see orchestrator/matcher.py for the named defaults)
    auto_match_threshold: float = float(os.getenv("CAPTURE_AUTO_MATCH_THRESHOLD", "0.90"))
    candidate_threshold: float = float(os.getenv("CAPTURE_CANDIDATE_THRESHOLD", "0.65"))
    max_candidate_options: int = int(os.getenv("CAPTURE_MAX_CANDIDATE_OPTIONS", "3"))
    # Guidance sent to clients on session start
    max_frames: int = 6
    recommended_frame_types: List[str] = field(default_factory=lambda: ["barcode", "label", "color"])
    # Same evidence evaluated this many times without a decision change → failed
    max_finalize_attempts: int = int(os.getenv("CAPTURE_MAX_FINALIZE_ATTEMPTS", "5"))
    # Client upload targets; empty means inline data URLs only
    upload_base_url: str = os.getenv("CAPTURE_UPLOAD_BASE_URL", "")
    max_inline_image_bytes: int = 10 * 1024 * 1024


@dataclass
class IngestionConfig:
    queue_name: str = os.getenv("INGESTION_QUEUE_NAME", "ingestion-jobs")
    # Seconds a received message stays invisible before redelivery
    visibility_timeout: int = int(os.getenv("INGESTION_VISIBILITY_TIMEOUT", "300"))
    max_dequeue_count: int = int(os.getenv("INGESTION_MAX_DEQUEUE_COUNT", "5"))
    drain_batch_size: int = 4
    poll_interval: int = int(os.getenv("INGESTION_POLL_INTERVAL", "15"))
    job_type: str = "connector_verify"
    default_search_term: str = "nail polish"
    default_page: int = 1
    max_page: int = 50
    default_page_size: int = 20
    max_page_size: int = 100
    default_max_records: int = 20
    max_records: int = 200
    default_recent_days: int = 120
    max_recent_days: int = 3650
    # Per-source base URL overrides, e.g. INGESTION_BASE_URL_HOLOTACOSHOPIFY
    base_urls: Dict[str, str] = field(default_factory=lambda: {
        k[len("INGESTION_BASE_URL_"):].lower(): v
        for k, v in os.environ.items()
        if k.startswith("INGESTION_BASE_URL_") and v
    })


@dataclass
class AuthConfig:
    # Accept "Bearer dev:<userId>" tokens. Never enable in production.
    dev_bypass: bool = _env_bool("AUTH_DEV_BYPASS")
    # Shared secret sent by the trusted gateway alongside X-User-Id
    api_key: str = os.getenv("LACQUER_API_KEY", "")
    admin_user_ids: List[int] = field(default_factory=lambda: _env_int_list("LACQUER_ADMIN_USER_IDS"))


@dataclass
class AIConfig:
    api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    hex_model: str = os.getenv("HEX_DETECTION_MODEL", "claude-sonnet-4-5")
    max_output_tokens: int = 200
    timeout_seconds: float = 30.0


@dataclass
class WorkerConfig:
    # Run the queue drain inside the API process (BackgroundScheduler)
    embedded_scheduler_enabled: bool = _env_bool("LACQUER_EMBEDDED_WORKER", "true")


@dataclass
class LacquerConfig:
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    debug: bool = _env_bool("LACQUER_DEBUG")


# Global config instance
config = LacquerConfig()
