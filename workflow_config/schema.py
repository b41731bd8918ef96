"""
Engine settings schema.

``EngineSettings`` is the typed form of the settings YAML.  The loader
parses YAML into it; the services read it.  Nothing else in the engine
reads configuration files.
"""

from __future__ import annotations

from dataclasses import dataclass

from workflow_kernel.domain.approval import RejectionPolicy


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings for the approval workflow engine."""

    database_url: str = "sqlite:///workflow.db"
    echo_sql: bool = False
    pool_size: int = 20
    default_timeout_days: int = 3
    escalation_reason: str = "Timeout escalation"
    workflow_code_prefix: str = "WF"
    code_sequence_width: int = 5
    rejection_policy: RejectionPolicy = RejectionPolicy.VETO
    sweep_batch_size: int = 100
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.default_timeout_days < 0:
            raise ValueError(
                f"default_timeout_days must be >= 0, got {self.default_timeout_days}"
            )
        if not 1 <= self.code_sequence_width <= 12:
            raise ValueError(
                f"code_sequence_width must be between 1 and 12, "
                f"got {self.code_sequence_width}"
            )
        if self.sweep_batch_size < 1:
            raise ValueError(
                f"sweep_batch_size must be >= 1, got {self.sweep_batch_size}"
            )
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {self.pool_size}")
        if not self.workflow_code_prefix:
            raise ValueError("workflow_code_prefix must not be empty")
