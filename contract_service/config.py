"""contract-service configuration.

Every setting comes from an environment variable so the service runs locally,
in Docker or on EC2 without code changes. Defaults are for development.
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- MongoDB -----------------------------------------------------------------
MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB: str = os.getenv("MONGO_DB", "contracts_db")
MONGO_COLLECTION: str = os.getenv("MONGO_COLLECTION", "contracts")

# --- Kafka -------------------------------------------------------------------
KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")

# Destination for CONTRACT_CREATED notifications.
KAFKA_TOPIC: str = os.getenv("KAFKA_TOPIC", "contract-events")

# --- PDF storage -------------------------------------------------------------
# "local" writes to STORAGE_LOCAL_BASE_PATH, "s3" uploads to STORAGE_S3_BUCKET_NAME.
STORAGE_TYPE: str = os.getenv("STORAGE_TYPE", "local").lower()
STORAGE_LOCAL_BASE_PATH: str = os.getenv("STORAGE_LOCAL_BASE_PATH", "./contracts")
STORAGE_S3_BUCKET_NAME: str = os.getenv("STORAGE_S3_BUCKET_NAME", "")
AWS_REGION: str | None = os.getenv("AWS_REGION")

# Optional endpoint override (MinIO, localstack).
S3_ENDPOINT_URL: str | None = os.getenv("S3_ENDPOINT_URL")

# Render every mass order as its own key/value table instead of a summary.
RENDER_ORDER_DETAILS: bool = _env_bool("RENDER_ORDER_DETAILS", False)

# --- Outbox dispatcher -------------------------------------------------------
OUTBOX_ENABLED: bool = _env_bool("OUTBOX_ENABLED", True)
OUTBOX_POLL_INTERVAL_SECONDS: float = float(os.getenv("OUTBOX_POLL_INTERVAL_SECONDS", "5"))

# A notification still PENDING this long after its last attempt is republished.
OUTBOX_RETRY_AFTER_SECONDS: float = float(os.getenv("OUTBOX_RETRY_AFTER_SECONDS", "30"))
OUTBOX_MAX_ATTEMPTS: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_BATCH_SIZE: int = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))

# A contract left PENDING (saved, no PDF) this long is re-rendered.
RECONCILE_AFTER_SECONDS: float = float(os.getenv("RECONCILE_AFTER_SECONDS", "300"))
# Render attempts (the request's own included) before a contract is marked FAILED.
RECONCILE_MAX_ATTEMPTS: int = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "5"))

# --- Logging -----------------------------------------------------------------
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
