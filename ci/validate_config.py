"""CI validation: verify a flag (and bandit) configuration before publishing.

Parses the configuration exactly as the client would and asserts the
structural invariants evaluation relies on. If anything is wrong, it exits
non-zero and fails the build.

Usage:
    python ci/validate_config.py --flags config/flags.json
    python ci/validate_config.py --flags config/flags.json --bandits config/bandits.json
"""

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from src.bandits.models import BanditParameters
from src.flags.models import Flag, check_value_type_match
from src.flags.obfuscation import decode_flag

REQUIRED_TOP_KEYS = {"flags"}
OBFUSCATED_FORMAT = "CLIENT"


def validate(flags_data: dict, bandits_data: dict | None = None) -> list[str]:
    """Return a list of validation errors (empty = pass)."""
    errors = []

    # --- Top-level structure ---
    for key in REQUIRED_TOP_KEYS:
        if key not in flags_data:
            errors.append(f"Missing top-level key: {key}")

    if errors:
        return errors  # Can't continue without structure

    obfuscated = flags_data.get("format") == OBFUSCATED_FORMAT

    # --- Flags ---
    flags = {}
    for key, raw_flag in flags_data["flags"].items():
        try:
            if obfuscated:
                raw_flag = decode_flag(raw_flag, key)
            flag = Flag.model_validate(raw_flag)
        except (ValidationError, KeyError, ValueError) as err:
            errors.append(f"Flag {key} is malformed: {err}")
            continue
        flags[key] = flag
        errors.extend(_validate_flag(key, flag))

    # --- Bandits ---
    bandit_keys: set[str] = set()
    if bandits_data is not None:
        for key, raw_bandit in bandits_data.get("bandits", {}).items():
            try:
                BanditParameters.model_validate(raw_bandit)
            except ValidationError as err:
                errors.append(f"Bandit {key} is malformed: {err}")
                continue
            bandit_keys.add(key)

    for bandit_key, reference in flags_data.get("banditReferences", {}).items():
        if bandits_data is not None and bandit_key not in bandit_keys:
            errors.append(f"Bandit reference {bandit_key} has no bandit parameters")
        for variation in reference.get("flagVariations", []):
            flag_key = variation.get("flagKey")
            if not obfuscated and flag_key not in flags:
                errors.append(
                    f"Bandit reference {bandit_key} points at unknown flag {flag_key}"
                )

    return errors


def _validate_flag(key: str, flag: Flag) -> list[str]:
    errors = []

    for variation in flag.variations.values():
        if not check_value_type_match(flag.variation_type, variation.value):
            errors.append(
                f"Flag {key} variation {variation.key} value {variation.value!r} "
                f"is not {flag.variation_type.value}"
            )

    allocation_keys = [a.key for a in flag.allocations]
    if len(allocation_keys) != len(set(allocation_keys)):
        errors.append(f"Flag {key} has duplicate allocation keys")

    for allocation in flag.allocations:
        if (
            allocation.start_at is not None
            and allocation.end_at is not None
            and allocation.start_at > allocation.end_at
        ):
            errors.append(f"Flag {key} allocation {allocation.key} ends before it starts")

        for split in allocation.splits:
            if split.variation_key not in flag.variations:
                errors.append(
                    f"Flag {key} allocation {allocation.key} "
                    f"references unknown variation {split.variation_key}"
                )
            for shard in split.shards:
                for r in shard.ranges:
                    if not 0 <= r.start <= r.end <= flag.total_shards:
                        errors.append(
                            f"Flag {key} allocation {allocation.key} has invalid range "
                            f"[{r.start}, {r.end}) for {flag.total_shards} shards"
                        )
    return errors


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate a flag configuration")
    parser.add_argument(
        "--flags",
        default="config/flags.json",
        help="Path to the flag configuration JSON",
    )
    parser.add_argument(
        "--bandits",
        default=None,
        help="Path to the bandit parameters JSON",
    )
    opts = parser.parse_args()

    flags_path = Path(opts.flags)
    if not flags_path.exists():
        print(f"FAIL: {opts.flags} not found.")
        sys.exit(1)
    flags_data = json.loads(flags_path.read_text())

    bandits_data = None
    if opts.bandits is not None:
        bandits_path = Path(opts.bandits)
        if not bandits_path.exists():
            print(f"FAIL: {opts.bandits} not found.")
            sys.exit(1)
        bandits_data = json.loads(bandits_path.read_text())

    errors = validate(flags_data, bandits_data)

    if errors:
        print(f"FAIL: {len(errors)} validation error(s):")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)

    print("PASS: Flag configuration validated")
    print(f"  Flags: {len(flags_data['flags']):,}")
    if bandits_data is not None:
        print(f"  Bandits: {len(bandits_data.get('bandits', {})):,}")


if __name__ == "__main__":
    main()
