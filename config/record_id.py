"""
Centralized Record ID Generation

This module provides the deterministic identifiers used across the sync
pipeline. Every service that stores or looks up a listing, or that records a
duplicate pair, goes through these functions so keys stay consistent.

Record IDs are an MD5 hash of the provider id and the normalized MLS id:
1. Deterministic: the same listing always maps to the same row
2. Provider scoped: two providers may reuse an MLS number without colliding
3. Fixed length: always 16 hex characters plus the provider prefix
"""

import hashlib
import uuid


def normalize_mls_id(mls_id: str) -> str:
    """
    Normalize an MLS listing number for consistent hashing.

    Args:
        mls_id: Raw MLS id as returned by the provider

    Returns:
        Stripped, upper-cased id ('' for empty input)
    """
    if mls_id is None:
        return ""
    return str(mls_id).strip().upper()


def generate_record_id(provider_id: str, mls_id: str) -> str:
    """
    Generate the storage key for a listing.

    Format: {provider_id}_{md5_hash[:16]}

    Args:
        provider_id: Configured provider id
        mls_id: Provider's MLS listing number

    Returns:
        A deterministic record ID string
    """
    normalized = f"{provider_id.strip().lower()}:{normalize_mls_id(mls_id)}"
    record_hash = hashlib.md5(normalized.encode()).hexdigest()[:16]
    return f"{provider_id}_{record_hash}"


def generate_candidate_id(record_id_a: str, record_id_b: str) -> str:
    """
    Generate an order-independent ID for a duplicate pair.

    Detecting the same pair twice (in either order) yields the same ID.

    Args:
        record_id_a: Record ID of one side of the pair
        record_id_b: Record ID of the other side

    Returns:
        dup_{md5_hash[:16]}
    """
    first, second = sorted((record_id_a, record_id_b))
    pair_hash = hashlib.md5(f"{first}|{second}".encode()).hexdigest()[:16]
    return f"dup_{pair_hash}"


def generate_run_id(provider_id: str) -> str:
    """Generate a unique sync run ID"""
    return f"sync_{provider_id}_{uuid.uuid4().hex[:12]}"


def generate_error_id() -> str:
    """Generate a unique sync error ID"""
    return f"err_{uuid.uuid4().hex[:12]}"


__all__ = [
    'normalize_mls_id',
    'generate_record_id',
    'generate_candidate_id',
    'generate_run_id',
    'generate_error_id',
]
