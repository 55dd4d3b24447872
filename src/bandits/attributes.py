"""Subject and action context attributes.

Bandit models score numeric and categorical attributes differently, so
attributes are split once at the boundary and evaluation only ever sees
ContextAttributes.
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

AttributeValue = str | int | float | bool | None


@dataclass(frozen=True)
class ContextAttributes:
    numeric_attributes: Mapping[str, float] = field(default_factory=dict)
    categorical_attributes: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "ContextAttributes":
        return cls()

    @classmethod
    def from_dict(cls, attributes: Mapping[str, AttributeValue]) -> "ContextAttributes":
        """Split a flat attribute mapping by value type.

        Finite numbers become numeric attributes; strings and booleans become
        categorical ("true"/"false" for booleans); None values are dropped.
        """
        numeric: dict[str, float] = {}
        categorical: dict[str, str] = {}
        for key, value in attributes.items():
            if value is None:
                continue
            if isinstance(value, bool):
                categorical[key] = "true" if value else "false"
            elif isinstance(value, (int, float)):
                if math.isfinite(value):
                    numeric[key] = value
            else:
                categorical[key] = str(value)
        return cls(numeric_attributes=numeric, categorical_attributes=categorical)

    def to_dict(self) -> dict[str, AttributeValue]:
        """Merge back into a flat mapping, e.g. for flag targeting rules."""
        return {**self.numeric_attributes, **self.categorical_attributes}


def actions_from_dicts(
    actions: Sequence[tuple[str, Mapping[str, AttributeValue]]],
) -> list[tuple[str, ContextAttributes]]:
    """Normalize ordered (action_key, flat attributes) pairs."""
    return [(key, ContextAttributes.from_dict(attrs)) for key, attrs in actions]
