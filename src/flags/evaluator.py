"""Flag targeting evaluation.

Allocations are walked in declared order. The first allocation that is
inside its time window, whose rules match, and whose split shards contain
the subject wins; everything after it is left unevaluated.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.flags.details import (
    AllocationEvaluationCode,
    FlagEvaluationCode,
    FlagEvaluationDetails,
    FlagEvaluationDetailsBuilder,
)
from src.flags.errors import FlagEvaluationError
from src.flags.models import (
    Allocation,
    Flag,
    Shard,
    Split,
    Variation,
    VariationType,
    check_value_type_match,
)
from src.flags.rules import matches_rules
from src.flags.sharder import MD5Sharder, Sharder, matches_shard


@dataclass(frozen=True)
class ConfigDetails:
    config_fetched_at: str
    config_published_at: str
    environment_name: str
    config_format: str = "SERVER"


@dataclass(frozen=True)
class FlagEvaluation:
    flag_key: str
    format: str
    subject_key: str
    subject_attributes: Mapping[str, Any]
    allocation_key: str | None
    variation: Variation | None
    flag_evaluation_details: FlagEvaluationDetails
    extra_logging: Mapping[str, str] = field(default_factory=dict)
    # Whether an assignment event should be logged
    do_log: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Evaluator:
    def __init__(
        self,
        sharder: Sharder | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sharder = sharder if sharder is not None else MD5Sharder()
        self.clock = clock if clock is not None else _utc_now

    def evaluate_flag(
        self,
        flag: Flag,
        config_details: ConfigDetails,
        subject_key: str,
        subject_attributes: Mapping[str, Any],
        obfuscated: bool = False,
        expected_variation_type: VariationType | None = None,
    ) -> FlagEvaluation:
        """Evaluate a flag for a subject.

        Raises FlagEvaluationError (carrying partial details) if evaluation
        fails; re-raises the original error if not even partial details
        can be built.
        """
        builder = FlagEvaluationDetailsBuilder(
            config_details.environment_name,
            flag.allocations,
            config_details.config_fetched_at,
            config_details.config_published_at,
        )
        try:
            if not flag.enabled:
                return none_result(
                    flag.key,
                    subject_key,
                    subject_attributes,
                    builder.build_for_none_result(
                        FlagEvaluationCode.FLAG_UNRECOGNIZED_OR_DISABLED,
                        f"Unrecognized or disabled flag: {flag.key}",
                    ),
                    config_details.config_format,
                )

            # Read once so every allocation sees the same instant
            now = self.clock()
            targeting_attributes = {"id": subject_key, **subject_attributes}
            for i, allocation in enumerate(flag.allocations):
                order_position = i + 1
                if allocation.start_at is not None and now < allocation.start_at:
                    builder.add_unmatched_allocation(
                        allocation, AllocationEvaluationCode.BEFORE_START_TIME, order_position
                    )
                    continue
                if allocation.end_at is not None and now >= allocation.end_at:
                    builder.add_unmatched_allocation(
                        allocation, AllocationEvaluationCode.AFTER_END_TIME, order_position
                    )
                    continue

                matched, matched_rule = matches_rules(
                    allocation.rules, targeting_attributes, obfuscated
                )
                if not matched:
                    builder.add_unmatched_allocation(
                        allocation, AllocationEvaluationCode.FAILING_RULE, order_position
                    )
                    continue

                split = self._find_split(allocation, subject_key, flag.total_shards)
                if split is None:
                    # Rules matched, but the subject is outside the traffic range
                    builder.add_unmatched_allocation(
                        allocation,
                        AllocationEvaluationCode.TRAFFIC_EXPOSURE_MISS,
                        order_position,
                    )
                    continue

                variation = flag.variations.get(split.variation_key)
                if variation is None:
                    raise ValueError(
                        f"Variation {split.variation_key} not found for flag {flag.key}"
                    )
                code, description = _matched_code_and_description(
                    variation, allocation, split, subject_key, expected_variation_type
                )
                details = builder.set_match(i, variation, allocation, matched_rule).build(
                    code, description
                )
                return FlagEvaluation(
                    flag_key=flag.key,
                    format=config_details.config_format,
                    subject_key=subject_key,
                    subject_attributes=subject_attributes,
                    allocation_key=allocation.key,
                    variation=variation,
                    flag_evaluation_details=details,
                    extra_logging=split.extra_logging,
                    do_log=allocation.do_log,
                )

            return none_result(
                flag.key,
                subject_key,
                subject_attributes,
                builder.build_for_none_result(
                    FlagEvaluationCode.DEFAULT_ALLOCATION_NULL,
                    'No allocations matched. Falling back to "Default Allocation", serving NULL',
                ),
                config_details.config_format,
            )
        except Exception as err:
            details = builder.graceful_build(
                FlagEvaluationCode.ASSIGNMENT_ERROR, f"Assignment Error: {err}"
            )
            if details is None:
                raise
            raise FlagEvaluationError(str(err), details) from err

    def matches_shard(self, shard: Shard, subject_key: str, total_shards: int) -> bool:
        return matches_shard(shard, subject_key, total_shards, self.sharder)

    def _find_split(
        self, allocation: Allocation, subject_key: str, total_shards: int
    ) -> Split | None:
        for split in allocation.splits:
            if all(
                self.matches_shard(shard, subject_key, total_shards)
                for shard in split.shards
            ):
                return split
        return None


def none_result(
    flag_key: str,
    subject_key: str,
    subject_attributes: Mapping[str, Any],
    flag_evaluation_details: FlagEvaluationDetails,
    format: str,
) -> FlagEvaluation:
    return FlagEvaluation(
        flag_key=flag_key,
        format=format,
        subject_key=subject_key,
        subject_attributes=subject_attributes,
        allocation_key=None,
        variation=None,
        flag_evaluation_details=flag_evaluation_details,
        extra_logging={},
        do_log=False,
    )


def _matched_code_and_description(
    variation: Variation,
    allocation: Allocation,
    split: Split,
    subject_key: str,
    expected_variation_type: VariationType | None,
) -> tuple[FlagEvaluationCode, str]:
    if not check_value_type_match(expected_variation_type, variation.value):
        return (
            FlagEvaluationCode.ASSIGNMENT_ERROR,
            f"Variation ({variation.key}) is configured for type "
            f"{expected_variation_type.value}, but is set to incompatible value "
            f"({variation.value})",
        )

    has_rules = bool(allocation.rules)
    is_experiment_or_partial_rollout = len(allocation.splits) > 1 or len(split.shards) > 1
    if has_rules and is_experiment_or_partial_rollout:
        description = (
            f'Supplied attributes match rules defined in allocation "{allocation.key}" '
            f'and {subject_key} belongs to the range of traffic assigned to '
            f'"{split.variation_key}".'
        )
    elif has_rules:
        description = (
            f'Supplied attributes match rules defined in allocation "{allocation.key}".'
        )
    else:
        description = (
            f'{subject_key} belongs to the range of traffic assigned to '
            f'"{split.variation_key}" defined in allocation "{allocation.key}".'
        )
    return FlagEvaluationCode.MATCH, description
