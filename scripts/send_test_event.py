#!/usr/bin/env python3
"""
Upload a file to the source container and post its creation event to the webhook.

Usage:
    # Upload and notify once
    python scripts/send_test_event.py invoice.pdf

    # Notify twice with the same event id to watch the duplicate get skipped
    python scripts/send_test_event.py invoice.pdf --repeat 2
"""

import argparse
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

import requests
from minio import Minio

from config import get_api_url, get_minio_config


def upload(client: Minio, container: str, path: Path) -> int:
    """Upload a local file and return its size."""
    if not client.bucket_exists(bucket_name=container):
        client.make_bucket(bucket_name=container)
    size = path.stat().st_size
    client.fput_object(bucket_name=container, object_name=path.name, file_path=str(path))
    print(f"Uploaded {path.name} ({size} bytes) to {container}")
    return size


def send_event(api_url: str, event: dict) -> bool:
    """Post one blob creation event to the webhook."""
    try:
        response = requests.post(f"{api_url}/events", json=event, timeout=30)
    except requests.exceptions.RequestException as e:
        print(f"Request failed: {e}")
        return False

    if response.status_code == 200:
        print(f"Event accepted: {response.json()}")
        return True
    print(f"Failed: {response.status_code} - {response.text[:200]}")
    return False


def main():
    parser = argparse.ArgumentParser(description="Upload a blob and post its creation event")
    parser.add_argument("file", type=Path, help="Local file to upload")
    parser.add_argument(
        "--container",
        default=os.environ.get("SOURCE_CONTAINERS", "unprocessed-pdf").split(",")[0],
        help="Source container (default: first of SOURCE_CONTAINERS)",
    )
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same event this many times")
    parser.add_argument("--interval", type=float, default=0, help="Seconds between deliveries")
    args = parser.parse_args()

    minio_config = get_minio_config()
    client = Minio(
        endpoint=minio_config["endpoint"],
        access_key=minio_config["access_key"],
        secret_key=minio_config["secret_key"],
        secure=minio_config["secure"],
    )
    size = upload(client, args.container, args.file)

    event = {
        "event_id": str(uuid.uuid4()),
        "event_type": "blob.created",
        "object_key": args.file.name,
        "container": args.container,
        "size": size,
        "content_type": "application/octet-stream",
        "event_time": datetime.now(timezone.utc).isoformat(),
    }

    api_url = get_api_url()
    for i in range(args.repeat):
        send_event(api_url, event)
        if args.interval > 0 and i < args.repeat - 1:
            time.sleep(args.interval)


if __name__ == "__main__":
    main()
