"""Helpers for obfuscated ("CLIENT" format) configurations.

Obfuscated configurations key flags by the MD5 of the flag key and
base64-encode identifiers and values. Flags are decoded once when the
configuration is loaded; rule conditions stay obfuscated and are matched
by the rule evaluator in obfuscated mode.
"""

import base64
import hashlib
from datetime import datetime


def get_md5_hash(input: str) -> str:
    return hashlib.md5(input.encode("utf-8")).hexdigest()


def decode_base64(input: str) -> str:
    return base64.b64decode(input).decode("utf-8")


def encode_base64(input: str) -> str:
    return base64.b64encode(input.encode("utf-8")).decode("utf-8")


def decode_value(encoded_value: str, variation_type: str) -> object:
    decoded = decode_base64(encoded_value)
    if variation_type == "INTEGER":
        return int(decoded)
    if variation_type == "NUMERIC":
        return float(decoded)
    if variation_type == "BOOLEAN":
        return decoded == "true"
    return decoded


def decode_flag(flag: dict, flag_key: str) -> dict:
    """Decode a raw obfuscated flag into the plain wire shape.

    Rules are passed through untouched.
    """
    variation_type = flag["variationType"]
    variations = {}
    for variation in flag.get("variations", {}).values():
        key = decode_base64(variation["key"])
        variations[key] = {
            "key": key,
            "value": decode_value(variation["value"], variation_type),
        }
    return {
        **flag,
        "key": flag_key,
        "variations": variations,
        "allocations": [_decode_allocation(a) for a in flag.get("allocations", [])],
    }


def _decode_allocation(allocation: dict) -> dict:
    decoded = {
        **allocation,
        "key": decode_base64(allocation["key"]),
        "splits": [_decode_split(s) for s in allocation.get("splits", [])],
    }
    for field in ("startAt", "endAt"):
        if allocation.get(field):
            decoded[field] = datetime.fromisoformat(
                decode_base64(allocation[field]).replace("Z", "+00:00")
            )
    return decoded


def _decode_split(split: dict) -> dict:
    return {
        "variationKey": decode_base64(split["variationKey"]),
        "extraLogging": {
            decode_base64(k): decode_base64(v)
            for k, v in split.get("extraLogging", {}).items()
        },
        "shards": [
            {**shard, "salt": decode_base64(shard["salt"])}
            for shard in split.get("shards", [])
        ],
    }
