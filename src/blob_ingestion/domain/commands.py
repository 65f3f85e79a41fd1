"""Commands for the blob ingestion service."""

from dataclasses import dataclass

from shared.domain.commands import Command
from blob_ingestion.domain.model import BlobEvent


@dataclass
class IngestBlob(Command):
    """Command to schedule a pipeline run for a parsed blob creation event."""
    event: BlobEvent


@dataclass
class EvictExpiredRecords(Command):
    """Command to purge finished ledger records older than the retention TTL."""
    ttl_seconds: float
