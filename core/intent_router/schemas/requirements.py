"""
Execution configuration and quality/safety requirements.

ExecutionConfig is supplied per ``execute_graph`` call and persisted with the
execution state so a later resume runs under the same settings.
"""

from enum import StrEnum

from pydantic import BaseModel, Field

from intent_router.schemas.graph import RetryPolicy


class RerunStrategy(StrEnum):
    """What to re-execute after a failed quality check."""

    NONE = "none"  # Accept the result as-is
    PARTIAL = "partial"  # Only the flagged nodes and their downstream closure
    FULL = "full"  # The whole graph
    ADAPTIVE = "adaptive"  # Let the quality gate pick partial or full


class QualityRequirements(BaseModel):
    """Post-execution quality validation settings."""

    enabled: bool = False
    required_fields: list[str] = Field(default_factory=list)
    accuracy_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    completeness_required: bool = True
    rerun_strategy: RerunStrategy = RerunStrategy.ADAPTIVE
    max_rerun_attempts: int = Field(default=2, ge=0)

    model_config = {"extra": "allow"}


class InputValidationRules(BaseModel):
    max_size_bytes: int = 1_000_000
    required_fields: list[str] = Field(default_factory=list)
    sanitize_input: bool = False

    model_config = {"extra": "allow"}


class OutputValidationRules(BaseModel):
    mask_pii: bool = False
    sanitize_output: bool = False
    required_fields: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class SafetyRequirements(BaseModel):
    """Pre/post execution safety hooks."""

    enabled: bool = False
    compliance_standards: list[str] = Field(default_factory=list)
    input_validation: InputValidationRules | None = None
    output_validation: OutputValidationRules | None = None
    audit_logging: bool = False

    model_config = {"extra": "allow"}


class ExecutionConfig(BaseModel):
    """Per-execution settings."""

    max_parallel: int = Field(default=5, ge=1)
    default_timeout_ms: int = Field(default=300_000, gt=0)  # Used when a node has no timeout_ms
    enable_hitl: bool = True
    store_state: bool = True  # Incremental snapshots; pauses always persist

    default_retry_policy: RetryPolicy | None = None
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=30_000, ge=0)

    cancel_grace_seconds: float = Field(default=5.0, ge=0.0)

    quality_requirements: QualityRequirements = Field(default_factory=QualityRequirements)
    safety_requirements: SafetyRequirements = Field(default_factory=SafetyRequirements)

    model_config = {"extra": "allow"}
