"""Deterministic hash-based sharding.

A subject's bucket is derived from an MD5 digest of a salted key, so the
same (salt, subject) pair always lands in the same bucket:
- Consistency: same subject always sees the same variation
- Portability: every SDK computes the identical bucket for the same input
- No coordination: no shared state or lookups needed for assignment
"""

import hashlib
from collections.abc import Mapping
from typing import Protocol

from src.flags.models import Range, Shard


class Sharder(Protocol):
    def get_shard(self, input: str, total_shards: int) -> int: ...


class MD5Sharder:
    def get_shard(self, input: str, total_shards: int) -> int:
        """Map input to a bucket in [0, total_shards).

        Uses the first 4 bytes (8 hex characters) of the MD5 digest as an
        unsigned big-endian integer, then takes it modulo total_shards.
        """
        hash_output = hashlib.md5(input.encode("utf-8")).hexdigest()
        int_from_hash = int(hash_output[:8], 16)
        return int_from_hash % total_shards


class DeterministicSharder:
    """Sharder that returns preconfigured buckets. Unknown inputs get 0."""

    def __init__(self, lookup: Mapping[str, int] | None = None) -> None:
        self._lookup = dict(lookup or {})

    def get_shard(self, input: str, total_shards: int) -> int:
        return self._lookup.get(input, 0) % total_shards


def hash_key(salt: str, subject_key: str) -> str:
    return f"{salt}-{subject_key}"


def is_in_shard_range(shard: int, shard_range: Range) -> bool:
    return shard_range.start <= shard < shard_range.end


def matches_shard(
    shard: Shard, subject_key: str, total_shards: int, sharder: Sharder
) -> bool:
    assigned_shard = sharder.get_shard(hash_key(shard.salt, subject_key), total_shards)
    return any(is_in_shard_range(assigned_shard, r) for r in shard.ranges)
