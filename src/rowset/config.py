"""
Rowset Evaluator Configuration.

Configuration dataclass with environment variable support.
"""

from dataclasses import dataclass, field
import os


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_MAX_RECURSION = 100
MAX_RECURSION_CEILING = 32767  # 0 disables the ceiling
DEFAULT_MAX_WORKERS = 4
DEFAULT_PARALLEL_MIN_PARTITIONS = 8


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


@dataclass
class EvaluatorConfig:
    """Configuration for grouping, window and recursive evaluation.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a value-object.
    ::: This is stateless.

    Supports environment variables:
    - ROWSET_MAX_RECURSION: Recursion ceiling (default: 100, 0 = unlimited)
    - ROWSET_MAX_WORKERS: Worker threads for partition processing (default: 4)
    - ROWSET_PARALLEL_MIN_PARTITIONS: Partition count below which work stays
      on the calling thread (default: 8)
    - ROWSET_VALIDATE_TYPES: Check every input value against its schema (default: true)
    - ROWSET_LAST_VALUE_FULL_PARTITION: Evaluate LAST_VALUE without an explicit
      frame over the whole partition (default: false)
    """

    max_recursion: int = field(default_factory=lambda: int(os.environ.get(
        "ROWSET_MAX_RECURSION", DEFAULT_MAX_RECURSION
    )))
    max_workers: int = field(default_factory=lambda: int(os.environ.get(
        "ROWSET_MAX_WORKERS", DEFAULT_MAX_WORKERS
    )))
    parallel_min_partitions: int = field(default_factory=lambda: int(os.environ.get(
        "ROWSET_PARALLEL_MIN_PARTITIONS", DEFAULT_PARALLEL_MIN_PARTITIONS
    )))
    validate_types: bool = field(default_factory=lambda: _env_bool("ROWSET_VALIDATE_TYPES", "true"))
    last_value_full_partition: bool = field(default_factory=lambda: _env_bool(
        "ROWSET_LAST_VALUE_FULL_PARTITION", "false"
    ))

    def validate(self) -> list[str]:
        """Validate configuration and return list of warnings."""
        warnings = []

        if not 0 <= self.max_recursion <= MAX_RECURSION_CEILING:
            warnings.append(
                f"max_recursion {self.max_recursion} is outside 0..{MAX_RECURSION_CEILING}"
            )

        if self.max_recursion == 0:
            warnings.append("max_recursion is 0 - recursive evaluation has no ceiling")

        if self.max_workers < 1:
            warnings.append(f"max_workers {self.max_workers} is less than 1 - partitions run inline")

        if self.parallel_min_partitions < 1:
            warnings.append("parallel_min_partitions below 1 forces the worker pool for every call")

        return warnings

    @property
    def parallel_enabled(self) -> bool:
        return self.max_workers > 1

    @classmethod
    def from_env(cls) -> "EvaluatorConfig":
        """Create configuration from environment variables."""
        return cls()

    @classmethod
    def for_testing(cls, max_recursion: int = DEFAULT_MAX_RECURSION,
                    max_workers: int = 1) -> "EvaluatorConfig":
        """Create a deterministic configuration for tests (no worker pool by default)."""
        return cls(
            max_recursion=max_recursion,
            max_workers=max_workers,
            parallel_min_partitions=1,
            validate_types=True,
            last_value_full_partition=False,
        )
