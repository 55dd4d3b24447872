"""Errors raised by flag and bandit evaluation."""

from src.flags.details import FlagEvaluationDetails


class FlagEvaluationError(Exception):
    """Evaluation failed; carries whatever details were gathered before it did."""

    def __init__(
        self,
        message: str,
        flag_evaluation_details: FlagEvaluationDetails | None = None,
    ) -> None:
        super().__init__(message)
        self.flag_evaluation_details = flag_evaluation_details


class BanditEvaluationError(Exception):
    """Scoring, weighing or selecting a bandit action failed."""
