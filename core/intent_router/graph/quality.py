"""
Quality and safety hooks around an execution.

- Pre-execution: SafetyValidator.validate_input may veto the run.
- Post-execution: SafetyValidator.sanitize_output may rewrite results.
- After each pass: QualityGate scores the results and may ask for a rerun;
  ``plan_rerun`` turns that verdict into the set of nodes to re-enqueue.

The bundled CompletenessQualityGate and BasicSafetyValidator are simple
defaults. Services with a real scoring model or compliance engine plug in
their own implementations of the protocols.
"""

import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from intent_router.schemas.execution import ErrorKind, ExecutionState
from intent_router.schemas.graph import IntentGraph
from intent_router.schemas.requirements import (
    QualityRequirements,
    RerunStrategy,
    SafetyRequirements,
)

logger = logging.getLogger(__name__)


# === QUALITY ===


class QualityCriteria(BaseModel):
    """The subset of QualityRequirements a gate scores against."""

    accuracy_threshold: float = 0.85
    completeness_required: bool = True
    required_fields: list[str] = Field(default_factory=list)

    @classmethod
    def from_requirements(cls, requirements: QualityRequirements) -> "QualityCriteria":
        return cls(
            accuracy_threshold=requirements.accuracy_threshold,
            completeness_required=requirements.completeness_required,
            required_fields=list(requirements.required_fields),
        )


class QualityRequest(BaseModel):
    """Everything a gate sees about one finished pass."""

    execution_result: dict[str, Any]
    quality_criteria: QualityCriteria
    intent_graph: IntentGraph

    @classmethod
    def from_state(cls, state: ExecutionState, criteria: QualityCriteria) -> "QualityRequest":
        return cls(
            execution_result={
                "execution_id": state.execution_id,
                "results": state.result_values(),
                "completed_nodes": list(state.completed_nodes),
                "failed_nodes": list(state.failed_nodes),
                "skipped_nodes": list(state.skipped_nodes),
                "upstream_failed_nodes": [
                    node_id
                    for node_id, result in state.results.items()
                    if result.error_kind == ErrorKind.UPSTREAM_FAILURE
                ],
                "errors": {
                    node_id: result.error
                    for node_id, result in state.results.items()
                    if not result.success and result.error_kind != ErrorKind.SKIPPED
                },
                "context": dict(state.context),
                "attempt_count": state.attempt_count,
            },
            quality_criteria=criteria,
            intent_graph=state.graph,
        )


class QualityVerdict(BaseModel):
    """A gate's judgement of one pass."""

    quality_score: float = Field(ge=0.0, le=1.0)
    is_acceptable: bool
    rerun_required: bool = False
    rerun_nodes: list[str] = Field(default_factory=list)
    strategy: RerunStrategy | None = None
    issues: list[dict[str, Any]] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @classmethod
    def gate_error(cls, error: Exception) -> "QualityVerdict":
        """Verdict used when the gate itself failed: unacceptable, no rerun."""
        return cls(
            quality_score=0.0,
            is_acceptable=False,
            rerun_required=False,
            issues=[{"type": "validation_error", "message": str(error)}],
        )


@runtime_checkable
class QualityGate(Protocol):
    """Scores a finished pass and recommends a rerun strategy."""

    async def evaluate(self, request: QualityRequest) -> QualityVerdict: ...


class CompletenessQualityGate:
    """
    Scores a pass by required-field coverage and node success rate.

    score = 0.4 * completeness + 0.4 * success_rate + 0.2

    Required fields are looked up in the merged dict results of all
    successful nodes (later nodes win) and among node ids. Rerun candidates
    are the nodes that failed on their own, not through UpstreamFailure.
    """

    async def evaluate(self, request: QualityRequest) -> QualityVerdict:
        result = request.execution_result
        criteria = request.quality_criteria
        values: dict[str, Any] = result.get("results", {})
        issues: list[dict[str, Any]] = []

        merged: dict[str, Any] = {}
        for value in values.values():
            if isinstance(value, dict):
                merged.update(value)

        missing = [
            name
            for name in criteria.required_fields
            if merged.get(name) in (None, "", [], {}) and not values.get(name)
        ]
        for name in missing:
            issues.append(
                {
                    "type": "missing_field",
                    "field": name,
                    "message": f"Required field '{name}' is missing",
                }
            )

        required = criteria.required_fields
        completeness = 1.0 - len(missing) / len(required) if required else 1.0

        completed = result.get("completed_nodes", [])
        failed = result.get("failed_nodes", [])
        attempted = len(completed) + len(failed)
        success_rate = len(completed) / attempted if attempted else 1.0

        score = round(completeness * 0.4 + success_rate * 0.4 + 0.2, 4)
        acceptable = score >= criteria.accuracy_threshold
        if criteria.completeness_required and missing:
            acceptable = False

        errors: dict[str, str] = result.get("errors", {})
        upstream = set(result.get("upstream_failed_nodes", []))
        rerun_nodes = [node_id for node_id in failed if node_id not in upstream]
        for node_id in rerun_nodes:
            issues.append(
                {"type": "node_failed", "node_id": node_id, "message": errors.get(node_id)}
            )

        return QualityVerdict(
            quality_score=min(max(score, 0.0), 1.0),
            is_acceptable=acceptable,
            rerun_required=not acceptable,
            rerun_nodes=rerun_nodes if not acceptable else [],
            strategy=(RerunStrategy.PARTIAL if rerun_nodes else RerunStrategy.FULL)
            if not acceptable
            else RerunStrategy.NONE,
            issues=issues,
        )


# === RERUN PLANNING ===


@dataclass
class RerunPlan:
    """Which nodes the next pass re-executes."""

    strategy: RerunStrategy
    nodes: set[str] = field(default_factory=set)

    @property
    def is_rerun(self) -> bool:
        return self.strategy in (RerunStrategy.PARTIAL, RerunStrategy.FULL)


def is_effectively_acceptable(verdict: QualityVerdict, requirements: QualityRequirements) -> bool:
    return verdict.is_acceptable and verdict.quality_score >= requirements.accuracy_threshold


def choose_strategy(verdict: QualityVerdict, configured: RerunStrategy) -> RerunStrategy:
    """Resolve ``adaptive`` into partial or full; other strategies pass through."""
    if configured != RerunStrategy.ADAPTIVE:
        return configured
    if verdict.strategy in (RerunStrategy.PARTIAL, RerunStrategy.FULL):
        return verdict.strategy
    return RerunStrategy.PARTIAL if verdict.rerun_nodes else RerunStrategy.FULL


def plan_rerun(
    verdict: QualityVerdict,
    requirements: QualityRequirements,
    graph: IntentGraph,
    downstream_closure: Callable[[Iterable[str]], set[str]],
) -> RerunPlan:
    """
    Turn a verdict into a concrete rerun.

    Args:
        verdict: The gate's verdict for the pass just finished
        requirements: Quality settings for this execution
        graph: The executing graph
        downstream_closure: Callable mapping node ids to themselves plus all
            transitive dependents (``Scheduler.downstream_closure``)
    """
    if not verdict.rerun_required:
        return RerunPlan(strategy=RerunStrategy.NONE)

    strategy = choose_strategy(verdict, requirements.rerun_strategy)
    if strategy == RerunStrategy.NONE:
        return RerunPlan(strategy=RerunStrategy.NONE)

    all_nodes = set(graph.node_ids)
    if strategy == RerunStrategy.PARTIAL:
        known = [node_id for node_id in verdict.rerun_nodes if node_id in all_nodes]
        unknown = [node_id for node_id in verdict.rerun_nodes if node_id not in all_nodes]
        if unknown:
            logger.warning(f"Ignoring unknown rerun nodes: {unknown}")
        if known:
            return RerunPlan(strategy=RerunStrategy.PARTIAL, nodes=downstream_closure(known))
        logger.info("Partial rerun requested without known nodes; rerunning the full graph")

    return RerunPlan(strategy=RerunStrategy.FULL, nodes=all_nodes)


# === SAFETY ===


@dataclass
class SafetyCheck:
    """Outcome of pre-execution input validation."""

    passed: bool
    errors: list[str] = field(default_factory=list)


@runtime_checkable
class SafetyValidator(Protocol):
    """Pre/post execution safety hooks."""

    async def validate_input(
        self, input_data: dict[str, Any], rules: SafetyRequirements
    ) -> SafetyCheck: ...

    async def sanitize_output(
        self, output: dict[str, Any], rules: SafetyRequirements
    ) -> dict[str, Any]: ...


EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
PHONE_PATTERN = re.compile(r"(?<!\w)(?:\+?\d{1,2}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def mask_pii(text: str) -> str:
    text = EMAIL_PATTERN.sub("[EMAIL_REDACTED]", text)
    text = SSN_PATTERN.sub("[SSN_REDACTED]", text)
    return PHONE_PATTERN.sub("[PHONE_REDACTED]", text)


def _map_strings(value: Any, transform) -> Any:
    if isinstance(value, str):
        return transform(value)
    if isinstance(value, list):
        return [_map_strings(item, transform) for item in value]
    if isinstance(value, dict):
        return {key: _map_strings(item, transform) for key, item in value.items()}
    return value


class BasicSafetyValidator:
    """
    Size and required-field checks on input; PII masking on output.

    Compliance standards are recorded for audit but not evaluated here.
    """

    async def validate_input(
        self, input_data: dict[str, Any], rules: SafetyRequirements
    ) -> SafetyCheck:
        errors: list[str] = []
        validation = rules.input_validation
        if validation is not None:
            size = len(json.dumps(input_data, default=str).encode("utf-8"))
            if size > validation.max_size_bytes:
                errors.append(
                    f"Input size {size} bytes exceeds maximum {validation.max_size_bytes} bytes"
                )
            for name in validation.required_fields:
                if not input_data.get(name):
                    errors.append(f"Required input field missing: {name}")

        if rules.compliance_standards:
            logger.debug(f"Compliance standards requested: {rules.compliance_standards}")

        return SafetyCheck(passed=not errors, errors=errors)

    async def sanitize_output(
        self, output: dict[str, Any], rules: SafetyRequirements
    ) -> dict[str, Any]:
        validation = rules.output_validation
        if validation is None:
            return output

        sanitized = output
        if validation.sanitize_output:
            sanitized = _map_strings(sanitized, lambda s: CONTROL_CHARS.sub("", s))
        if validation.mask_pii:
            sanitized = _map_strings(sanitized, mask_pii)
        return sanitized
