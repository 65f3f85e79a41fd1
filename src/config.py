"""Configuration settings for the blob ingestion service."""

import os


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", "6379"))
    return dict(host=host, port=port)


def get_redis_url():
    """Get Redis URL from environment variables."""
    redis_config = get_redis_host_and_port()
    return f"redis://{redis_config['host']}:{redis_config['port']}"


def get_minio_config():
    """Get MinIO connection configuration from environment variables."""
    host = os.environ.get("MINIO_HOST", "localhost")
    endpoint = f"{host}:9000"
    access_key = os.environ.get("MINIO_ACCESS_KEY", "minioadmin")
    secret_key = os.environ.get("MINIO_SECRET_KEY", "minioadmin123")
    secure = os.environ.get("MINIO_SECURE", "false").lower() == "true"
    part_size = int(os.environ.get("UPLOAD_PART_SIZE", str(10 * 1024 * 1024)))

    return dict(
        endpoint=endpoint,
        access_key=access_key,
        secret_key=secret_key,
        secure=secure,
        part_size=part_size,
    )


def get_api_url():
    """Get API URL from environment variables."""
    host = os.environ.get("API_HOST", "localhost")
    port = int(os.environ.get("API_PORT", "8000"))
    return f"http://{host}:{port}"


def _split_list(value):
    return [item.strip() for item in value.split(",") if item.strip()]


def get_pipeline_config():
    """Get ingestion pipeline settings from environment variables.

    Numeric values that cannot be parsed raise ValueError, so a bad
    deployment fails at startup instead of on the first event.
    """
    settings = dict(
        source_containers=_split_list(os.environ.get("SOURCE_CONTAINERS", "unprocessed-pdf")),
        destination_container=os.environ.get("DESTINATION_CONTAINER", "processed-pdf"),
        destination_prefix=os.environ.get("DESTINATION_PREFIX", "processed-"),
        destination_suffix=os.environ.get("DESTINATION_SUFFIX", ""),
        workers=int(os.environ.get("INGEST_WORKERS", "4")),
        queue_size=int(os.environ.get("INGEST_QUEUE_SIZE", "100")),
        retry_max_attempts=int(os.environ.get("RETRY_MAX_ATTEMPTS", "5")),
        retry_backoff_base=float(os.environ.get("RETRY_BACKOFF_BASE", "1.0")),
        retry_backoff_max=float(os.environ.get("RETRY_BACKOFF_MAX", "60.0")),
        retry_jitter=float(os.environ.get("RETRY_JITTER", "0.5")),
        run_timeout=float(os.environ.get("RUN_TIMEOUT_SECONDS", "300")),
        ledger_lease_margin=float(os.environ.get("LEDGER_LEASE_MARGIN_SECONDS", "60")),
        ledger_backend=os.environ.get("LEDGER_BACKEND", "redis").lower(),
        ledger_ttl_seconds=float(os.environ.get("LEDGER_TTL_SECONDS", "86400")),
        ledger_eviction_interval=float(os.environ.get("LEDGER_EVICTION_INTERVAL", "300")),
        ledger_prefix=os.environ.get("LEDGER_PREFIX", "blob-ingestion:ledger"),
        dead_letter_key=os.environ.get("DEAD_LETTER_KEY", "blob-ingestion:dead-letter"),
        outcomes_channel=os.environ.get("OUTCOMES_CHANNEL", "blob-ingestion:outcomes"),
        intake_list=os.environ.get("INTAKE_LIST", "blob-ingestion:intake"),
    )

    if settings["ledger_backend"] not in ("redis", "memory"):
        raise ValueError(f"Unknown LEDGER_BACKEND: {settings['ledger_backend']}")

    return settings
