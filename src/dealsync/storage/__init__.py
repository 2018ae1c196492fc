"""Durable storage layer -- bucket access and sync state persistence.

- ObjectStore: abstract bucket interface (get/put/delete/list/ping)
- S3ObjectStore: boto3 implementation used for both source and state buckets
- CheckpointStore: processed history, progress checkpoints, chunk markers,
  dead letters, execution reports, and the invocation lease
"""

from src.dealsync.storage.checkpoints import CheckpointStore
from src.dealsync.storage.object_store import ObjectStore, S3ObjectStore

__all__ = [
    "CheckpointStore",
    "ObjectStore",
    "S3ObjectStore",
]
