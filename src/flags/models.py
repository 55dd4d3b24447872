"""Flag configuration models.

These mirror the universal flag configuration wire format: every field is
snake_case in Python and camelCase on the wire (``totalShards``,
``variationKey``, ``doLog``...). Models are frozen because a configuration
is a snapshot that evaluation only ever reads.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ValueType = bool | int | float | str
ConditionValueType = bool | int | float | str | list[str]


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        # Bandit models carry wire fields named model_name, model_version...
        protected_namespaces=(),
    )


class VariationType(str, Enum):
    STRING = "STRING"
    INTEGER = "INTEGER"
    NUMERIC = "NUMERIC"
    BOOLEAN = "BOOLEAN"
    JSON = "JSON"


class Variation(WireModel):
    key: str
    value: ValueType


class Range(WireModel):
    start: int
    end: int


class Shard(WireModel):
    salt: str
    ranges: list[Range]


class Split(WireModel):
    shards: list[Shard]
    variation_key: str
    extra_logging: dict[str, str] = {}


class Condition(WireModel):
    attribute: str
    # Plain operator name, or its MD5 hash in obfuscated configurations
    operator: str
    value: ConditionValueType


class Rule(WireModel):
    conditions: list[Condition]


class Allocation(WireModel):
    key: str
    rules: list[Rule] = []
    start_at: datetime | None = None
    end_at: datetime | None = None
    splits: list[Split]
    do_log: bool = True

    @field_validator("start_at", "end_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Flag(WireModel):
    key: str
    enabled: bool
    variation_type: VariationType
    variations: dict[str, Variation]
    allocations: list[Allocation]
    total_shards: int = Field(default=10_000, gt=0)


def check_value_type_match(
    expected_type: VariationType | None, value: object
) -> bool:
    """Return True if a variation's literal value fits the declared type.

    No expected type means the caller did not ask for one, so anything goes.
    JSON variations are carried as JSON-encoded strings.
    """
    if expected_type is None:
        return True
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected_type is VariationType.STRING or expected_type is VariationType.JSON:
        return isinstance(value, str)
    if expected_type is VariationType.BOOLEAN:
        return isinstance(value, bool)
    if expected_type is VariationType.INTEGER:
        return is_number and float(value).is_integer()
    if expected_type is VariationType.NUMERIC:
        return is_number
    return False
