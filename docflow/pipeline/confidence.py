"""Overall document confidence.

Stage scores are combined with fixed weights (extraction dominates),
validation issues subtract penalties, and a few edge cases cap the result:
an empty extraction scores 0, a failed correction is capped at 0.30 and a
failed validation that was never corrected is multiplied by 0.70.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

STAGE_WEIGHTS = {
    "classification": 0.10,
    "extraction": 0.50,
    "validation": 0.30,
    "correction": 0.10,
}

ERROR_PENALTY = 0.15
WARNING_PENALTY = 0.05
MAX_ERROR_PENALTY = 0.75
MAX_WARNING_PENALTY = 0.20
UNCORRECTED_FAILURE_MULTIPLIER = 0.70
CORRECTION_FAILED_CAP = 0.30


@dataclass
class ConfidenceBreakdown:
    overall: float
    stage_scores: Dict[str, float] = field(default_factory=dict)
    error_count: int = 0
    warning_count: int = 0
    error_penalty: float = 0.0
    warning_penalty: float = 0.0
    global_penalty: float = 0.0
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "stage_scores": self.stage_scores,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "error_penalty": self.error_penalty,
            "warning_penalty": self.warning_penalty,
            "global_penalty": self.global_penalty,
            "reason": self.reason,
        }


def sanitize_confidence(value: Any, stage: str = "") -> float:
    """Clamp to [0, 1]; NaN, infinities and non-numbers become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        LOGGER.error(f"Non-finite {stage} confidence {value!r}, defaulting to 0")
        return 0.0
    return min(1.0, max(0.0, number))


def _count(issues: Iterable[Dict[str, Any]], severity: str) -> int:
    return sum(1 for issue in issues if issue.get("severity") == severity)


def calculate_overall_confidence(
    classification_confidence: Optional[float],
    extraction_confidence: Optional[float],
    fields_extracted: int,
    validation_confidence: Optional[float],
    is_valid: bool,
    issues: Iterable[Dict[str, Any]] = (),
    correction_confidence: Optional[float] = None,
    correction_applied: bool = False,
    correction_failed: bool = False,
) -> ConfidenceBreakdown:
    """Weighted overall confidence in [0, 1].

    Weights are renormalized over the stages that contributed, so a clean
    document that never needed correction can still reach 1.0.
    """
    if fields_extracted == 0:
        LOGGER.warning("Empty extraction detected - no fields extracted")
        return ConfidenceBreakdown(overall=0.0, reason="No fields extracted from document")

    issues = list(issues)
    scores = {
        "classification": sanitize_confidence(classification_confidence, "classification"),
        "extraction": sanitize_confidence(extraction_confidence, "extraction"),
    }
    validation = sanitize_confidence(validation_confidence, "validation")

    error_count = _count(issues, "error")
    warning_count = _count(issues, "warning")
    error_penalty = min(error_count * ERROR_PENALTY, MAX_ERROR_PENALTY)
    warning_penalty = min(warning_count * WARNING_PENALTY, MAX_WARNING_PENALTY)
    if not is_valid:
        validation = max(0.0, validation - error_penalty - warning_penalty)
    scores["validation"] = validation

    if correction_applied and not correction_failed:
        scores["correction"] = sanitize_confidence(correction_confidence, "correction")

    used_weight = sum(STAGE_WEIGHTS[stage] for stage in scores)
    score = sum(STAGE_WEIGHTS[stage] * value for stage, value in scores.items()) / used_weight

    reason = None
    global_penalty = 0.0
    if correction_failed:
        LOGGER.warning(f"Correction failed - capping confidence {score:.3f} at {CORRECTION_FAILED_CAP}")
        score = min(score, CORRECTION_FAILED_CAP)
        reason = "Correction failed with known validation errors"
    elif not is_valid and not correction_applied:
        penalized = score * UNCORRECTED_FAILURE_MULTIPLIER
        global_penalty = score - penalized
        score = penalized
        reason = "Validation failed without correction applied"

    return ConfidenceBreakdown(
        overall=round(min(1.0, max(0.0, score)), 6),
        stage_scores=scores,
        error_count=error_count,
        warning_count=warning_count,
        error_penalty=error_penalty,
        warning_penalty=warning_penalty,
        global_penalty=global_penalty,
        reason=reason,
    )


def adjust_for_business_rules(confidence: float, issues: Iterable[Dict[str, Any]]) -> float:
    """Scale an LLM validation confidence down for deterministic rule violations.

    Any error costs a flat 25% plus 15% per error (up to 55%), warnings cost
    5% each (up to 20%), and the total penalty never exceeds 80%.
    """
    issues = list(issues)
    errors = _count(issues, "error")
    warnings = _count(issues, "warning")
    if errors == 0 and warnings == 0:
        return confidence

    base = 0.25 if errors else 0.0
    per_error = min(errors * 0.15, 0.55)
    per_warning = min(warnings * 0.05, 0.2)
    penalty = min(0.8, base + per_error + per_warning)
    return max(0.0, confidence * (1 - penalty))
