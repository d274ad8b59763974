"""
  Rate limit infrastructure utilities.
     from catalog_sync.infrastructure.ratelimit import SharedCallBucket
"""
from .shared_call_bucket import SharedCallBucket

__all__ = ["SharedCallBucket"]
