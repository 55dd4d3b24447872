"""Immutable configuration snapshots.

A Configuration is built once from the flag configuration response (and
optionally the bandit parameters response) and only read afterwards. To
pick up new configuration, build a new snapshot and swap it in.
"""

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from src.bandits.models import BanditParameters, BanditReference, BanditVariation
from src.flags.evaluator import ConfigDetails
from src.flags.models import Flag, WireModel
from src.flags.obfuscation import decode_flag, get_md5_hash

logger = logging.getLogger(__name__)

OBFUSCATED_FORMAT = "CLIENT"


class Environment(WireModel):
    name: str


class FlagsResponse(WireModel):
    created_at: str | None = None
    format: str = "SERVER"
    environment: Environment | None = None
    # Kept raw: obfuscated flags need decoding before they are valid Flags
    flags: dict[str, dict[str, Any]]
    bandit_references: dict[str, BanditReference] = {}


class BanditsResponse(WireModel):
    bandits: dict[str, BanditParameters] = {}


class Configuration:
    def __init__(
        self,
        flags: Mapping[str, Flag],
        details: ConfigDetails,
        obfuscated: bool = False,
        bandits: Mapping[str, BanditParameters] | None = None,
        bandit_variations: Mapping[str, list[BanditVariation]] | None = None,
    ) -> None:
        self._flags = MappingProxyType(dict(flags))
        self._bandits = MappingProxyType(dict(bandits or {}))
        self._bandit_variations = MappingProxyType(
            {k: tuple(v) for k, v in (bandit_variations or {}).items()}
        )
        self.details = details
        self.obfuscated = obfuscated

    @classmethod
    def empty(cls) -> "Configuration":
        return cls(
            flags={},
            details=ConfigDetails(
                config_fetched_at="",
                config_published_at="",
                environment_name="",
            ),
        )

    @classmethod
    def from_json(
        cls,
        flags_configuration: str | bytes,
        bandits_configuration: str | bytes | None = None,
        fetched_at: datetime | None = None,
    ) -> "Configuration":
        """Parse the flag (and optional bandit) configuration responses."""
        response = FlagsResponse.model_validate(json.loads(flags_configuration))
        obfuscated = response.format == OBFUSCATED_FORMAT

        flags = {}
        for key, raw_flag in response.flags.items():
            if obfuscated:
                # Keyed by MD5 of the real key, which the snapshot never learns
                raw_flag = decode_flag(raw_flag, key)
            flags[key] = Flag.model_validate(raw_flag)

        bandits: dict[str, BanditParameters] = {}
        if bandits_configuration is not None:
            bandits = BanditsResponse.model_validate(json.loads(bandits_configuration)).bandits

        bandit_variations: dict[str, list[BanditVariation]] = {}
        for reference in response.bandit_references.values():
            for variation in reference.flag_variations:
                bandit_variations.setdefault(variation.flag_key, []).append(variation)

        fetched_at = fetched_at or datetime.now(timezone.utc)
        details = ConfigDetails(
            config_fetched_at=fetched_at.isoformat(),
            config_published_at=response.created_at or "",
            environment_name=response.environment.name if response.environment else "",
            config_format=response.format,
        )
        logger.debug(
            "Loaded configuration with %d flags and %d bandits", len(flags), len(bandits)
        )
        return cls(
            flags=flags,
            details=details,
            obfuscated=obfuscated,
            bandits=bandits,
            bandit_variations=bandit_variations,
        )

    @property
    def flag_keys(self) -> set[str]:
        return set(self._flags)

    @property
    def bandit_keys(self) -> set[str]:
        return set(self._bandits)

    def get_flag(self, key: str) -> Flag | None:
        if not self.obfuscated:
            return self._flags.get(key)
        flag = self._flags.get(get_md5_hash(key))
        if flag is None:
            return None
        return flag.model_copy(update={"key": key})

    def get_bandit(self, key: str) -> BanditParameters | None:
        return self._bandits.get(key)

    def get_flag_bandit_variations(self, flag_key: str) -> tuple[BanditVariation, ...]:
        return self._bandit_variations.get(flag_key, ())

    def get_flag_variation_bandit(
        self, flag_key: str, variation_value: object
    ) -> BanditParameters | None:
        for variation in self.get_flag_bandit_variations(flag_key):
            if variation.variation_value == variation_value:
                return self.get_bandit(variation.key)
        return None
