"""Contextual bandit evaluation.

Each candidate action gets a linear score from subject and action
attributes. Scores become selection weights through inverse gap weighting
(the "Falcon" exploration scheme): the best action keeps most of the
probability mass while every other action keeps a share inversely
proportional to how far its score trails the best, never below the
probability floor. The action is then picked by hashing the subject, so
the same subject and weights always yield the same action.
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from src.bandits.attributes import ContextAttributes
from src.bandits.models import (
    BanditCategoricalAttributeCoefficient,
    BanditCoefficients,
    BanditModelData,
    BanditNumericAttributeCoefficient,
)
from src.flags.errors import BanditEvaluationError
from src.flags.sharder import MD5Sharder, Sharder

BANDIT_TOTAL_SHARDS = 10_000


@dataclass(frozen=True)
class BanditEvaluation:
    flag_key: str
    subject_key: str
    subject_attributes: ContextAttributes
    action_key: str
    action_attributes: ContextAttributes
    action_score: float
    action_weight: float
    gamma: float
    optimality_gap: float


class BanditEvaluator:
    def __init__(
        self,
        sharder: Sharder | None = None,
        total_shards: int = BANDIT_TOTAL_SHARDS,
    ) -> None:
        self.sharder = sharder if sharder is not None else MD5Sharder()
        self.total_shards = total_shards

    def evaluate_bandit(
        self,
        flag_key: str,
        subject_key: str,
        subject_attributes: ContextAttributes,
        actions: Sequence[tuple[str, ContextAttributes]],
        model: BanditModelData,
    ) -> BanditEvaluation:
        if not actions:
            raise BanditEvaluationError(f"No actions provided for bandit flag {flag_key}")

        action_scores = score_actions(
            subject_attributes, actions, model.coefficients, model.default_action_score
        )
        action_weights = weigh_actions(
            action_scores, model.gamma, model.action_probability_floor
        )
        action_key = self.select_action(flag_key, subject_key, action_weights)

        scores = dict(action_scores)
        best_score = max(scores.values())
        return BanditEvaluation(
            flag_key=flag_key,
            subject_key=subject_key,
            subject_attributes=subject_attributes,
            action_key=action_key,
            action_attributes=dict(actions)[action_key],
            action_score=scores[action_key],
            action_weight=dict(action_weights)[action_key],
            gamma=model.gamma,
            optimality_gap=best_score - scores[action_key],
        )

    def evaluate_best_bandit_action(
        self,
        subject_attributes: ContextAttributes,
        actions: Sequence[tuple[str, ContextAttributes]],
        model: BanditModelData,
    ) -> str | None:
        """Return the highest-scoring action without exploration.

        Ties go to the first action in input order.
        """
        if not actions:
            return None
        action_scores = score_actions(
            subject_attributes, actions, model.coefficients, model.default_action_score
        )
        return _best_action(action_scores)[0]

    def select_action(
        self,
        flag_key: str,
        subject_key: str,
        action_weights: Sequence[tuple[str, float]],
    ) -> str:
        """Deterministically pick an action for a subject from its weights.

        Actions are first put in a per-subject pseudo-random order, so that
        when weights shift, the subjects near a boundary do not all move to
        the same neighbouring action.
        """
        shuffled = sorted(
            action_weights,
            key=lambda item: (
                self.sharder.get_shard(
                    f"{flag_key}-{subject_key}-{item[0]}", self.total_shards
                ),
                item[0],
            ),
        )
        shard = self.sharder.get_shard(f"{flag_key}-{subject_key}", self.total_shards)
        threshold = shard / self.total_shards

        cumulative_weight = 0.0
        for action_key, weight in shuffled:
            cumulative_weight += weight
            if cumulative_weight > threshold:
                return action_key
        raise BanditEvaluationError(
            f"No action selected for flag {flag_key} subject {subject_key}"
        )


def score_actions(
    subject_attributes: ContextAttributes,
    actions: Sequence[tuple[str, ContextAttributes]],
    coefficients: Mapping[str, BanditCoefficients],
    default_action_score: float,
) -> list[tuple[str, float]]:
    scores = []
    for action_key, action_attributes in actions:
        action_coefficients = coefficients.get(action_key)
        if action_coefficients is None:
            # Cold start: the model has not learned anything about this action
            scores.append((action_key, default_action_score))
        else:
            scores.append(
                (action_key, score_action(subject_attributes, action_attributes, action_coefficients))
            )
    return scores


def score_action(
    subject_attributes: ContextAttributes,
    action_attributes: ContextAttributes,
    coefficients: BanditCoefficients,
) -> float:
    score = coefficients.intercept
    score += score_numeric_attributes(
        coefficients.subject_numeric_coefficients, subject_attributes.numeric_attributes
    )
    score += score_categorical_attributes(
        coefficients.subject_categorical_coefficients,
        subject_attributes.categorical_attributes,
    )
    score += score_numeric_attributes(
        coefficients.action_numeric_coefficients, action_attributes.numeric_attributes
    )
    score += score_categorical_attributes(
        coefficients.action_categorical_coefficients,
        action_attributes.categorical_attributes,
    )
    return score


def score_numeric_attributes(
    coefficients: Sequence[BanditNumericAttributeCoefficient],
    attributes: Mapping[str, float],
) -> float:
    score = 0.0
    for coefficient in coefficients:
        value = attributes.get(coefficient.attribute_key)
        if _is_finite_number(value):
            score += value * coefficient.coefficient
        else:
            score += coefficient.missing_value_coefficient
    return score


def score_categorical_attributes(
    coefficients: Sequence[BanditCategoricalAttributeCoefficient],
    attributes: Mapping[str, str],
) -> float:
    score = 0.0
    for coefficient in coefficients:
        value = attributes.get(coefficient.attribute_key)
        # Unrecognized categories score the same as a missing attribute
        if value is not None and str(value) in coefficient.value_coefficients:
            score += coefficient.value_coefficients[str(value)]
        else:
            score += coefficient.missing_value_coefficient
    return score


def weigh_actions(
    action_scores: Sequence[tuple[str, float]],
    gamma: float,
    action_probability_floor: float,
) -> list[tuple[str, float]]:
    """Turn scores into selection weights that sum to 1.

    Every non-best action gets 1 / (K + gamma * gap), raised to at least
    floor / K. The best action absorbs the remainder.
    """
    if not action_scores:
        return []

    best_action, best_score = _best_action(action_scores)
    num_actions = len(action_scores)
    min_probability = action_probability_floor / num_actions

    weights: dict[str, float] = {}
    for action_key, score in action_scores:
        if action_key == best_action:
            continue
        weight = 1 / (num_actions + gamma * (best_score - score))
        weights[action_key] = max(weight, min_probability)

    remaining = 1 - sum(weights.values())
    return [
        (action_key, remaining if action_key == best_action else weights[action_key])
        for action_key, _ in action_scores
    ]


def _best_action(action_scores: Sequence[tuple[str, float]]) -> tuple[str, float]:
    best_action, best_score = action_scores[0]
    for action_key, score in action_scores[1:]:
        if score > best_score:
            best_action, best_score = action_key, score
    return best_action, best_score


def _is_finite_number(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )
