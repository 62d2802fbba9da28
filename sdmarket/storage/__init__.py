"""Content-addressed (IPFS) and bulk (S3) storage clients."""

from .interface import ContentStore, ObjectLocation, ObjectStore, ObjectSummary, StoredObject
from .ipfs import IpfsStore
from .s3 import S3ObjectStore

__all__ = [
    "ContentStore",
    "IpfsStore",
    "ObjectLocation",
    "ObjectStore",
    "ObjectSummary",
    "S3ObjectStore",
    "StoredObject",
]
