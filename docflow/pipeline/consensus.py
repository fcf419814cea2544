"""Cross-provider agreement scoring and payload merging.

Agreement is field based. Each result is projected onto a flat mapping of
field name to a normalized value, and for every field in the union of all
projections we count the share of provider pairs holding equivalent values.
The agreement level is the mean of those shares:

* one provider, or all providers identical: 1.0
* every additional disputed field lowers the score
* no successful provider: 0.0

Values are normalized before comparison: ``{"value": x, "confidence": c}``
wrappers are unwrapped, strings are case-folded with whitespace collapsed,
numbers and numeric strings compare with a small tolerance, and nested
objects or lists compare by their canonical JSON form.
"""

import itertools
import json
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from docflow.schemas.pipeline import SEVERITY_ORDER, ConsensusResult, ProviderCallResult
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_NUMERIC_RE = re.compile(r"^[+-]?\d[\d,]*(\.\d+)?$")
_WS_RE = re.compile(r"\s+")
_MISSING = object()


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict) and "value" in value and set(value) <= {"value", "confidence", "type", "name"}:
        return value["value"]
    return value


def normalize_value(value: Any) -> Any:
    """Comparable form of a provider value."""
    value = _unwrap(value)
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = _WS_RE.sub(" ", value).strip().casefold()
        if _NUMERIC_RE.match(text):
            return float(text.replace(",", ""))
        return text
    if isinstance(value, dict):
        return json.dumps({k: normalize_value(v) for k, v in value.items()}, sort_keys=True, default=str)
    if isinstance(value, (list, tuple)):
        return json.dumps([normalize_value(v) for v in value], sort_keys=True, default=str)
    return str(value)


def values_equivalent(left: Any, right: Any, rel_tol: float = 1e-3, abs_tol: float = 0.01) -> bool:
    if isinstance(left, float) and isinstance(right, float):
        return math.isclose(left, right, rel_tol=rel_tol, abs_tol=abs_tol)
    return left == right


def _sanitize(confidence: Optional[float]) -> float:
    if confidence is None or not math.isfinite(confidence):
        return 0.0
    return min(1.0, max(0.0, confidence))


class ConsensusScorer:
    """Scores one consensus round.

    Args:
        provider_weights: Trust weight per provider name (``"openai"``) or
            per ``"provider/model"`` label; the label wins when both exist.
        default_weight: Weight for providers absent from the mapping
        validity_threshold: Weighted share of ``is_valid`` votes needed for
            a merged validation verdict to be valid
    """

    def __init__(
        self,
        provider_weights: Optional[Dict[str, float]] = None,
        default_weight: float = 0.5,
        validity_threshold: float = 0.6,
    ):
        self.provider_weights = provider_weights or {}
        self.default_weight = default_weight
        self.validity_threshold = validity_threshold

    def score(
        self,
        results: Sequence[ProviderCallResult],
        validation: bool = False,
        fields: Optional[Iterable[str]] = None,
    ) -> ConsensusResult:
        """Score and merge one round.

        ``fields`` limits agreement to those keys, so free-text fields such as
        a classification's ``reasoning`` do not count as disagreement. The
        merged payload still carries every field.
        """
        successes = [r for r in results if r.succeeded]
        if not successes:
            return ConsensusResult(agreement_level=0.0, merged_data={}, confidence=0.0)

        weights = self.normalized_weights(successes)
        ranked = sorted(
            successes,
            key=lambda r: (-weights[_label(r)], -_sanitize(r.confidence), _label(r)),
        )

        project = self._project_validation if validation else self._project_fields
        projections = [project(r.extracted_data) for r in ranked]
        if fields is not None:
            keep = set(fields)
            projections = [{k: v for k, v in p.items() if k in keep} for p in projections]
        agreement = self.agreement(projections)

        if validation:
            merged = self._merge_validation(ranked, weights)
        else:
            merged = self._merge_fields(ranked)

        confidence = sum(weights[_label(r)] * _sanitize(r.confidence) for r in ranked)

        result = ConsensusResult(
            agreement_level=round(min(1.0, max(0.0, agreement)), 6),
            merged_data=merged,
            confidence=round(min(1.0, max(0.0, confidence)), 6),
            provider_weights=weights,
            winner=_label(ranked[0]),
        )
        LOGGER.debug(
            "Consensus round scored",
            extra={
                "providers": [_label(r) for r in ranked],
                "agreement_level": result.agreement_level,
                "confidence": result.confidence,
            },
        )
        return result

    def normalized_weights(self, results: Sequence[ProviderCallResult]) -> Dict[str, float]:
        """Weights of the given providers rescaled to sum to 1."""
        raw = {_label(r): self._raw_weight(r) for r in results}
        total = sum(raw.values())
        if total <= 0:
            return {label: 1.0 / len(raw) for label in raw}
        return {label: weight / total for label, weight in raw.items()}

    def _raw_weight(self, result: ProviderCallResult) -> float:
        weight = self.provider_weights.get(_label(result))
        if weight is None:
            weight = self.provider_weights.get(result.provider, self.default_weight)
        return max(0.0, float(weight))

    @staticmethod
    def agreement(projections: List[Dict[str, Any]]) -> float:
        if len(projections) < 2:
            return 1.0

        fields = set().union(*projections)
        if not fields:
            return 1.0

        pairs = list(itertools.combinations(projections, 2))
        total = 0.0
        for field in fields:
            agreeing = sum(
                1
                for left, right in pairs
                if _field_agrees(left.get(field, _MISSING), right.get(field, _MISSING))
            )
            total += agreeing / len(pairs)
        return total / len(fields)

    @staticmethod
    def _project_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        return {key: normalize_value(value) for key, value in data.items()}

    @staticmethod
    def _project_validation(data: Dict[str, Any]) -> Dict[str, Any]:
        """``is_valid`` plus the most severe issue per field."""
        projection: Dict[str, Any] = {"is_valid": bool(data.get("is_valid"))}
        for issue in data.get("issues") or []:
            field = f"issue:{str(issue.get('field', '')).strip().casefold()}"
            severity = issue.get("severity", "warning")
            current = projection.get(field)
            if current is None or SEVERITY_ORDER.get(severity, 9) < SEVERITY_ORDER.get(current, 9):
                projection[field] = severity
        return projection

    @staticmethod
    def _merge_fields(ranked: Sequence[ProviderCallResult]) -> Dict[str, Any]:
        """Each field from the best-ranked provider that supplied it."""
        merged: Dict[str, Any] = {}
        for result in ranked:
            for key, value in result.extracted_data.items():
                if key not in merged or merged[key] is None:
                    merged[key] = value
        return merged

    def _merge_validation(
        self, ranked: Sequence[ProviderCallResult], weights: Dict[str, float]
    ) -> Dict[str, Any]:
        valid_share = sum(weights[_label(r)] for r in ranked if r.extracted_data.get("is_valid"))

        seen: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        for result in ranked:
            for issue in result.extracted_data.get("issues") or []:
                key = (
                    str(issue.get("field", "")).strip().casefold(),
                    str(issue.get("issue", "")).strip().casefold(),
                    issue.get("severity", "warning"),
                )
                seen.setdefault(key, dict(issue))

        issues = sorted(
            seen.values(),
            key=lambda i: (SEVERITY_ORDER.get(i.get("severity", "warning"), 9), str(i.get("field", ""))),
        )
        return {"is_valid": valid_share >= self.validity_threshold, "issues": issues}


def _label(result: ProviderCallResult) -> str:
    return f"{result.provider}/{result.model}"


def _field_agrees(left: Any, right: Any) -> bool:
    if left is _MISSING or right is _MISSING:
        return left is right
    return values_equivalent(left, right)
