"""Assignment and bandit-action event shapes and the logger interface.

Events are handed to a caller-supplied AssignmentLogger as JSON-ready dicts
with camelCase keys. Delivery, batching and deduplication are the logger's
business.
"""

from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import Field

from src.bandits.evaluator import BanditEvaluation
from src.flags.details import FlagEvaluationDetails
from src.flags.evaluator import FlagEvaluation
from src.flags.models import WireModel


class AssignmentLogger(Protocol):
    def log_assignment(self, event: dict[str, Any]) -> None: ...

    def log_bandit_action(self, event: dict[str, Any]) -> None: ...


class NoOpAssignmentLogger:
    def log_assignment(self, event: dict[str, Any]) -> None:
        pass

    def log_bandit_action(self, event: dict[str, Any]) -> None:
        pass


class EventMetadata(WireModel):
    obfuscated: bool
    sdk_name: str
    sdk_version: str


class AssignmentEvent(WireModel):
    allocation: str
    experiment: str
    feature_flag: str
    format: str
    variation: str
    subject: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    subject_attributes: dict[str, Any]
    meta_data: EventMetadata
    evaluation_details: FlagEvaluationDetails | None = None


class BanditEvent(WireModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    feature_flag: str
    bandit: str
    subject: str
    action: str
    action_probability: float
    optimality_gap: float
    model_version: str
    subject_numeric_attributes: dict[str, float]
    subject_categorical_attributes: dict[str, str]
    action_numeric_attributes: dict[str, float]
    action_categorical_attributes: dict[str, str]
    meta_data: EventMetadata
    evaluation_details: FlagEvaluationDetails | None = None


def build_assignment_event(
    evaluation: FlagEvaluation, meta_data: EventMetadata
) -> dict[str, Any]:
    event = AssignmentEvent(
        allocation=evaluation.allocation_key,
        experiment=f"{evaluation.flag_key}-{evaluation.allocation_key}",
        feature_flag=evaluation.flag_key,
        format=evaluation.format,
        variation=evaluation.variation.key,
        subject=evaluation.subject_key,
        subject_attributes=dict(evaluation.subject_attributes),
        meta_data=meta_data,
        evaluation_details=evaluation.flag_evaluation_details,
    )
    # Split extra logging is flattened into the event but never replaces its fields
    return {**evaluation.extra_logging, **event.model_dump(mode="json", by_alias=True)}


def build_bandit_event(
    evaluation: BanditEvaluation,
    bandit_key: str,
    model_version: str,
    meta_data: EventMetadata,
    evaluation_details: FlagEvaluationDetails | None = None,
) -> dict[str, Any]:
    event = BanditEvent(
        feature_flag=evaluation.flag_key,
        bandit=bandit_key,
        subject=evaluation.subject_key,
        action=evaluation.action_key,
        action_probability=evaluation.action_weight,
        optimality_gap=evaluation.optimality_gap,
        model_version=model_version,
        subject_numeric_attributes=dict(evaluation.subject_attributes.numeric_attributes),
        subject_categorical_attributes=dict(
            evaluation.subject_attributes.categorical_attributes
        ),
        action_numeric_attributes=dict(evaluation.action_attributes.numeric_attributes),
        action_categorical_attributes=dict(
            evaluation.action_attributes.categorical_attributes
        ),
        meta_data=meta_data,
        evaluation_details=evaluation_details,
    )
    return event.model_dump(mode="json", by_alias=True)
