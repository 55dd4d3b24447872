"""Assignment client.

The client reads one configuration snapshot per call, runs the targeting
evaluator (and the bandit evaluator for bandit-backed variations), logs
events, and applies the error policy: in graceful mode any failure returns
the caller's default along with the best evaluation details available; in
strict mode the error propagates.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from src.bandits.attributes import ContextAttributes
from src.bandits.evaluator import BanditEvaluation, BanditEvaluator
from src.client.config import ClientConfig
from src.client.configuration import Configuration
from src.client.logger import EventMetadata, build_assignment_event, build_bandit_event
from src.flags.details import (
    FlagEvaluationCode,
    FlagEvaluationDetails,
    FlagEvaluationDetailsBuilder,
)
from src.flags.errors import FlagEvaluationError
from src.flags.evaluator import Evaluator, FlagEvaluation, none_result
from src.flags.models import Flag, VariationType

logger = logging.getLogger(__name__)


class ConfigurationStore:
    """Holds the current snapshot.

    Replacing it is a single reference assignment and each client call reads
    the reference once, so no lock is taken on either side.
    """

    def __init__(self, configuration: Configuration | None = None) -> None:
        self._configuration = configuration or Configuration.empty()

    def get_configuration(self) -> Configuration:
        return self._configuration

    def set_configuration(self, configuration: Configuration) -> None:
        self._configuration = configuration


@dataclass(frozen=True)
class AssignmentDetails:
    variation: Any
    action: str | None
    evaluation_details: FlagEvaluationDetails


class AssignmentClient:
    def __init__(
        self,
        store: ConfigurationStore,
        config: ClientConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or ClientConfig()
        self._evaluator = Evaluator(self._config.sharder)
        self._bandit_evaluator = BanditEvaluator(
            self._config.sharder, self._config.bandit_total_shards
        )

    @property
    def is_graceful_mode(self) -> bool:
        return self._config.is_graceful_mode

    # --- Typed assignments ---

    def get_string_assignment(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: str
    ) -> str:
        return self.get_string_assignment_details(
            flag_key, subject_key, subject_attributes, default
        ).variation

    def get_integer_assignment(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: int
    ) -> int:
        return self.get_integer_assignment_details(
            flag_key, subject_key, subject_attributes, default
        ).variation

    def get_numeric_assignment(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: float
    ) -> float:
        return self.get_numeric_assignment_details(
            flag_key, subject_key, subject_attributes, default
        ).variation

    def get_boolean_assignment(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: bool
    ) -> bool:
        return self.get_boolean_assignment_details(
            flag_key, subject_key, subject_attributes, default
        ).variation

    def get_json_assignment(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: Any
    ) -> Any:
        return self.get_json_assignment_details(
            flag_key, subject_key, subject_attributes, default
        ).variation

    def get_string_assignment_details(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: str
    ) -> AssignmentDetails:
        return self._get_assignment_details(
            self._store.get_configuration(),
            flag_key, subject_key, subject_attributes, default, VariationType.STRING,
        )

    def get_integer_assignment_details(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: int
    ) -> AssignmentDetails:
        return self._get_assignment_details(
            self._store.get_configuration(),
            flag_key, subject_key, subject_attributes, default, VariationType.INTEGER,
        )

    def get_numeric_assignment_details(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: float
    ) -> AssignmentDetails:
        return self._get_assignment_details(
            self._store.get_configuration(),
            flag_key, subject_key, subject_attributes, default, VariationType.NUMERIC,
        )

    def get_boolean_assignment_details(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: bool
    ) -> AssignmentDetails:
        return self._get_assignment_details(
            self._store.get_configuration(),
            flag_key, subject_key, subject_attributes, default, VariationType.BOOLEAN,
        )

    def get_json_assignment_details(
        self, flag_key: str, subject_key: str, subject_attributes: Mapping[str, Any], default: Any
    ) -> AssignmentDetails:
        return self._get_assignment_details(
            self._store.get_configuration(),
            flag_key, subject_key, subject_attributes, default, VariationType.JSON,
        )

    # --- Bandits ---

    def get_bandit_action(
        self,
        flag_key: str,
        subject_key: str,
        subject_context: ContextAttributes,
        actions: Sequence[tuple[str, ContextAttributes]],
        default: str,
    ) -> tuple[str, str | None]:
        """Return the (variation, action) pair; see get_bandit_action_details."""
        details = self.get_bandit_action_details(
            flag_key, subject_key, subject_context, actions, default
        )
        return details.variation, details.action

    def get_bandit_action_details(
        self,
        flag_key: str,
        subject_key: str,
        subject_context: ContextAttributes,
        actions: Sequence[tuple[str, ContextAttributes]],
        default: str,
    ) -> AssignmentDetails:
        """Assign a variation and, if it is bandit-backed, pick an action.

        A bandit failure never takes the variation away: in graceful mode
        the variation is kept, no action is returned, and the evaluation
        code becomes BANDIT_ERROR.
        """
        configuration = self._store.get_configuration()
        assignment = self._get_assignment_details(
            configuration,
            flag_key,
            subject_key,
            subject_context.to_dict(),
            default,
            VariationType.STRING,
        )
        variation = assignment.variation
        details = assignment.evaluation_details

        bandit = configuration.get_flag_variation_bandit(flag_key, variation)
        if bandit is None or not actions:
            return assignment

        try:
            evaluation = self._bandit_evaluator.evaluate_bandit(
                flag_key, subject_key, subject_context, actions, bandit.model_data
            )
        except Exception as err:
            if not self.is_graceful_mode:
                raise
            logger.exception("Error evaluating bandit %s for flag %s", bandit.bandit_key, flag_key)
            details = details.model_copy(
                update={
                    "flag_evaluation_code": FlagEvaluationCode.BANDIT_ERROR,
                    "flag_evaluation_description": f"Error evaluating bandit action: {err}",
                    "bandit_key": bandit.bandit_key,
                }
            )
            return AssignmentDetails(variation, None, details)

        details = details.model_copy(
            update={"bandit_key": bandit.bandit_key, "bandit_action": evaluation.action_key}
        )
        self._log_bandit_action(evaluation, bandit.bandit_key, bandit.model_version, configuration, details)
        return AssignmentDetails(variation, evaluation.action_key, details)

    def get_best_bandit_action(
        self,
        flag_key: str,
        subject_context: ContextAttributes,
        actions: Sequence[tuple[str, ContextAttributes]],
        variation_value: str,
    ) -> str | None:
        """Highest-scoring action for a variation's bandit. Not logged."""
        bandit = self._store.get_configuration().get_flag_variation_bandit(
            flag_key, variation_value
        )
        if bandit is None:
            return None
        return self._bandit_evaluator.evaluate_best_bandit_action(
            subject_context, actions, bandit.model_data
        )

    # --- Internals ---

    def _get_assignment_details(
        self,
        configuration: Configuration,
        flag_key: str,
        subject_key: str,
        subject_attributes: Mapping[str, Any],
        default: Any,
        expected_variation_type: VariationType,
    ) -> AssignmentDetails:
        if not flag_key:
            raise ValueError("Invalid argument: flag_key cannot be blank")
        if not subject_key:
            raise ValueError("Invalid argument: subject_key cannot be blank")

        flag = configuration.get_flag(flag_key)
        try:
            evaluation = self._evaluate(
                configuration, flag, flag_key, subject_key, subject_attributes,
                expected_variation_type,
            )
            details = evaluation.flag_evaluation_details
            if evaluation.variation is None:
                return AssignmentDetails(default, None, details)
            if details.flag_evaluation_code is FlagEvaluationCode.ASSIGNMENT_ERROR:
                raise FlagEvaluationError(details.flag_evaluation_description, details)
            value = _typed_value(expected_variation_type, evaluation.variation.value)
        except Exception as err:
            if not self.is_graceful_mode:
                raise
            logger.exception("Error evaluating flag %s", flag_key)
            if isinstance(err, FlagEvaluationError) and err.flag_evaluation_details:
                details = err.flag_evaluation_details
            else:
                details = self._details_builder(configuration, flag).build_for_none_result(
                    FlagEvaluationCode.ASSIGNMENT_ERROR, f"Assignment Error: {err}"
                )
            return AssignmentDetails(default, None, details)

        if evaluation.do_log:
            self._log_assignment(evaluation, configuration)
        return AssignmentDetails(value, None, details)

    def _evaluate(
        self,
        configuration: Configuration,
        flag: Flag | None,
        flag_key: str,
        subject_key: str,
        subject_attributes: Mapping[str, Any],
        expected_variation_type: VariationType,
    ) -> FlagEvaluation:
        builder = self._details_builder(configuration, flag)
        if flag is None:
            logger.warning("No configuration found for flag %s", flag_key)
            return none_result(
                flag_key, subject_key, subject_attributes,
                builder.build_for_none_result(
                    FlagEvaluationCode.FLAG_UNRECOGNIZED_OR_DISABLED,
                    f"Unrecognized or disabled flag: {flag_key}",
                ),
                configuration.details.config_format,
            )

        if flag.variation_type is not expected_variation_type:
            message = (
                "Variation value does not have the correct type. "
                f"Found {flag.variation_type.value}, but expected "
                f"{expected_variation_type.value} for flag {flag_key}"
            )
            if not self.is_graceful_mode:
                raise TypeError(message)
            logger.warning(message)
            return none_result(
                flag_key, subject_key, subject_attributes,
                builder.build_for_none_result(FlagEvaluationCode.TYPE_MISMATCH, message),
                configuration.details.config_format,
            )

        return self._evaluator.evaluate_flag(
            flag,
            configuration.details,
            subject_key,
            subject_attributes,
            configuration.obfuscated,
            expected_variation_type,
        )

    def _details_builder(
        self, configuration: Configuration, flag: Flag | None
    ) -> FlagEvaluationDetailsBuilder:
        return FlagEvaluationDetailsBuilder(
            configuration.details.environment_name,
            flag.allocations if flag is not None else [],
            configuration.details.config_fetched_at,
            configuration.details.config_published_at,
        )

    def _meta_data(self, configuration: Configuration) -> EventMetadata:
        return EventMetadata(
            obfuscated=configuration.obfuscated,
            sdk_name=self._config.sdk_name,
            sdk_version=self._config.sdk_version,
        )

    def _log_assignment(self, evaluation: FlagEvaluation, configuration: Configuration) -> None:
        try:
            event = build_assignment_event(evaluation, self._meta_data(configuration))
            self._config.assignment_logger.log_assignment(event)
        except Exception:
            logger.exception("Error logging assignment event for flag %s", evaluation.flag_key)

    def _log_bandit_action(
        self,
        evaluation: BanditEvaluation,
        bandit_key: str,
        model_version: str,
        configuration: Configuration,
        details: FlagEvaluationDetails,
    ) -> None:
        try:
            event = build_bandit_event(
                evaluation, bandit_key, model_version, self._meta_data(configuration), details
            )
            self._config.assignment_logger.log_bandit_action(event)
        except Exception:
            logger.exception("Error logging bandit event for flag %s", evaluation.flag_key)


def _typed_value(variation_type: VariationType, value: Any) -> Any:
    if variation_type is VariationType.INTEGER:
        # 3.0 on the wire is still an integer variation
        return int(value)
    if variation_type is VariationType.JSON:
        return json.loads(value)
    return value
