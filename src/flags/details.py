"""Structured evaluation details.

Details explain why a subject received (or did not receive) a variation:
which allocation matched, which were skipped and why, and which were never
reached. Code names and their order are shared with every other SDK and
must not change.
"""

import logging
from enum import Enum

from src.flags.models import Allocation, Rule, ValueType, Variation, WireModel

logger = logging.getLogger(__name__)


class AllocationEvaluationCode(str, Enum):
    MATCH = "MATCH"
    BEFORE_START_TIME = "BEFORE_START_TIME"
    AFTER_END_TIME = "AFTER_END_TIME"
    FAILING_RULE = "FAILING_RULE"
    TRAFFIC_EXPOSURE_MISS = "TRAFFIC_EXPOSURE_MISS"
    UNEVALUATED = "UNEVALUATED"


class FlagEvaluationCode(str, Enum):
    MATCH = "MATCH"
    FLAG_UNRECOGNIZED_OR_DISABLED = "FLAG_UNRECOGNIZED_OR_DISABLED"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    ASSIGNMENT_ERROR = "ASSIGNMENT_ERROR"
    DEFAULT_ALLOCATION_NULL = "DEFAULT_ALLOCATION_NULL"
    BANDIT_ERROR = "BANDIT_ERROR"


class AllocationEvaluation(WireModel):
    key: str
    allocation_evaluation_code: AllocationEvaluationCode
    order_position: int  # 1-based


class FlagEvaluationDetails(WireModel):
    environment_name: str
    flag_evaluation_code: FlagEvaluationCode
    flag_evaluation_description: str
    variation_key: str | None = None
    variation_value: ValueType | None = None
    bandit_key: str | None = None
    bandit_action: str | None = None
    config_fetched_at: str
    config_published_at: str
    matched_rule: Rule | None = None
    matched_allocation: AllocationEvaluation | None = None
    unmatched_allocations: list[AllocationEvaluation] = []
    unevaluated_allocations: list[AllocationEvaluation] = []


class FlagEvaluationDetailsBuilder:
    """Accumulates per-allocation outcomes during a single evaluation."""

    def __init__(
        self,
        environment_name: str,
        allocations: list[Allocation],
        config_fetched_at: str,
        config_published_at: str,
    ) -> None:
        self.environment_name = environment_name
        self.allocations = allocations
        self.config_fetched_at = config_fetched_at
        self.config_published_at = config_published_at
        self.variation_key: str | None = None
        self.variation_value: ValueType | None = None
        self.matched_rule: Rule | None = None
        self.matched_allocation: AllocationEvaluation | None = None
        self.unmatched_allocations: list[AllocationEvaluation] = []
        self.unevaluated_allocations: list[AllocationEvaluation] = []

    def add_unmatched_allocation(
        self, allocation: Allocation, code: AllocationEvaluationCode, order_position: int
    ) -> "FlagEvaluationDetailsBuilder":
        self.unmatched_allocations.append(
            AllocationEvaluation(
                key=allocation.key,
                allocation_evaluation_code=code,
                order_position=order_position,
            )
        )
        return self

    def set_none(self) -> "FlagEvaluationDetailsBuilder":
        """Clear the match; whatever was not evaluated is listed as such."""
        self.variation_key = None
        self.variation_value = None
        self.matched_rule = None
        self.matched_allocation = None
        seen = {a.order_position for a in self.unmatched_allocations}
        self.unevaluated_allocations = [
            _unevaluated(allocation, i + 1)
            for i, allocation in enumerate(self.allocations)
            if i + 1 not in seen
        ]
        return self

    def set_match(
        self,
        index: int,
        variation: Variation,
        allocation: Allocation,
        matched_rule: Rule | None,
    ) -> "FlagEvaluationDetailsBuilder":
        self.variation_key = variation.key
        self.variation_value = variation.value
        self.matched_rule = matched_rule
        self.matched_allocation = AllocationEvaluation(
            key=allocation.key,
            allocation_evaluation_code=AllocationEvaluationCode.MATCH,
            order_position=index + 1,
        )
        self.unevaluated_allocations = [
            _unevaluated(a, i + 1)
            for i, a in enumerate(self.allocations)
            if i > index
        ]
        return self

    def build(
        self, code: FlagEvaluationCode, description: str
    ) -> FlagEvaluationDetails:
        return FlagEvaluationDetails(
            environment_name=self.environment_name,
            flag_evaluation_code=code,
            flag_evaluation_description=description,
            variation_key=self.variation_key,
            variation_value=self.variation_value,
            config_fetched_at=self.config_fetched_at,
            config_published_at=self.config_published_at,
            matched_rule=self.matched_rule,
            matched_allocation=self.matched_allocation,
            unmatched_allocations=list(self.unmatched_allocations),
            unevaluated_allocations=list(self.unevaluated_allocations),
        )

    def build_for_none_result(
        self, code: FlagEvaluationCode, description: str
    ) -> FlagEvaluationDetails:
        return self.set_none().build(code, description)

    def graceful_build(
        self, code: FlagEvaluationCode, description: str
    ) -> FlagEvaluationDetails | None:
        """Build details, or return None if the partial state cannot be built."""
        try:
            return self.build(code, description)
        except Exception:
            logger.debug("Unable to build flag evaluation details", exc_info=True)
            return None


def _unevaluated(allocation: Allocation, order_position: int) -> AllocationEvaluation:
    return AllocationEvaluation(
        key=allocation.key,
        allocation_evaluation_code=AllocationEvaluationCode.UNEVALUATED,
        order_position=order_position,
    )
