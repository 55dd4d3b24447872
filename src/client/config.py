"""Client settings.

Settings are resolved once when the client is built. A client never changes
its error policy or sharder afterwards; build a new client instead.
"""

from dataclasses import dataclass, field

from src.bandits.evaluator import BANDIT_TOTAL_SHARDS
from src.client.logger import AssignmentLogger, NoOpAssignmentLogger
from src.flags.sharder import MD5Sharder, Sharder


@dataclass(frozen=True)
class ClientConfig:
    # Return the caller's default instead of raising on evaluation errors
    is_graceful_mode: bool = True
    sharder: Sharder = field(default_factory=MD5Sharder)
    bandit_total_shards: int = BANDIT_TOTAL_SHARDS
    assignment_logger: AssignmentLogger = field(default_factory=NoOpAssignmentLogger)

    # Reported in event metadata
    sdk_name: str = "python-assignment-engine"
    sdk_version: str = "0.1.0"

    def __post_init__(self):
        if self.bandit_total_shards <= 0:
            raise ValueError(
                f"bandit_total_shards must be positive, got {self.bandit_total_shards}"
            )
