"""Utility modules for the commerce kernel."""

from commerce_kernel.utils.hashing import canonicalize_json, hash_payload
from commerce_kernel.utils.locks import KeyedLock
from commerce_kernel.utils.retry import RetryPolicy, call_with_retry

__all__ = [
    "KeyedLock",
    "RetryPolicy",
    "call_with_retry",
    "canonicalize_json",
    "hash_payload",
]
