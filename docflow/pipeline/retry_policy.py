"""Outcome classification: proceed, branch, retry or fail."""

import enum
import random
from dataclasses import dataclass
from typing import Optional, Sequence

from docflow.config import PipelineSettings
from docflow.database.enums import PipelineStage
from docflow.pipeline.stages import VALIDATION_STAGES
from docflow.schemas.pipeline import ConsensusResult, ProviderCallResult
from docflow.utils.exceptions import (
    ConfigurationError,
    PermanentProviderError,
    ProviderError,
    StorageError,
    TransientProviderError,
)

PERMANENT_KINDS = frozenset({"permanent"})


class Decision(str, enum.Enum):
    PROCEED = "PROCEED"
    BRANCH = "BRANCH"
    RETRY = "RETRY"
    FAIL = "FAIL"


@dataclass
class PolicyDecision:
    decision: Decision
    reason: str
    retry_count: int
    delay_seconds: Optional[float] = None
    exhausted: bool = False


class RetryPolicy:
    """Turns round outcomes and errors into a ``PolicyDecision``.

    ``retry_count`` counts failed attempts across the whole job. The
    attempt that brings it to ``max_retries`` fails the job instead of
    scheduling another try, so the stored count never exceeds the maximum.
    """

    def __init__(
        self,
        max_retries: int = 3,
        max_correction_cycles: int = 2,
        confidence_threshold: float = 0.8,
        agreement_threshold: float = 0.7,
        base_delay_seconds: float = 2.0,
        max_delay_seconds: float = 60.0,
        jitter: float = 0.2,
        rng: Optional[random.Random] = None,
    ):
        self.max_retries = max_retries
        self.max_correction_cycles = max_correction_cycles
        self.confidence_threshold = confidence_threshold
        self.agreement_threshold = agreement_threshold
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(cls, pipeline: PipelineSettings, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            max_retries=pipeline.max_retries,
            max_correction_cycles=pipeline.max_correction_cycles,
            confidence_threshold=pipeline.proceed_confidence_threshold,
            agreement_threshold=pipeline.proceed_agreement_threshold,
            base_delay_seconds=pipeline.retry_base_delay_seconds,
            max_delay_seconds=pipeline.retry_max_delay_seconds,
            jitter=pipeline.retry_jitter,
            rng=rng,
        )

    @staticmethod
    def is_transient(error: BaseException) -> bool:
        if isinstance(error, StorageError):
            return error.transient
        if isinstance(error, (PermanentProviderError, ConfigurationError)):
            return False
        return isinstance(error, (TransientProviderError, ProviderError))

    @staticmethod
    def round_is_transient(results: Sequence[ProviderCallResult]) -> bool:
        """A fully failed round is worth retrying unless every failure was permanent."""
        return any(r.error_kind not in PERMANENT_KINDS for r in results)

    def on_round(
        self,
        stage: PipelineStage,
        consensus: ConsensusResult,
        retry_count: int,
        is_valid: bool = True,
    ) -> PolicyDecision:
        """Decide after a round with at least one successful provider.

        Only validation rounds can branch: low agreement or confidence, or
        an invalid verdict, sends the document to CORRECTION. Other stages
        proceed and their scores travel on to the review gate.
        """
        if stage not in VALIDATION_STAGES:
            return PolicyDecision(Decision.PROCEED, "round succeeded", retry_count)

        reasons = []
        if consensus.agreement_level < self.agreement_threshold:
            reasons.append(f"agreement {consensus.agreement_level:.2f} < {self.agreement_threshold:.2f}")
        if consensus.confidence < self.confidence_threshold:
            reasons.append(f"confidence {consensus.confidence:.2f} < {self.confidence_threshold:.2f}")
        if not is_valid:
            reasons.append("data reported invalid")

        if reasons:
            return PolicyDecision(Decision.BRANCH, "; ".join(reasons), retry_count)
        return PolicyDecision(Decision.PROCEED, "validation passed", retry_count)

    def on_failure(self, error_message: str, retry_count: int, transient: bool) -> PolicyDecision:
        """Decide after a failed round or a stage error."""
        if not transient:
            return PolicyDecision(Decision.FAIL, error_message, retry_count)

        attempts = min(retry_count + 1, self.max_retries)
        if attempts >= self.max_retries:
            return PolicyDecision(
                Decision.FAIL,
                f"{error_message} (retries exhausted after {attempts} attempts)",
                attempts,
                exhausted=True,
            )
        return PolicyDecision(Decision.RETRY, error_message, attempts, delay_seconds=self.backoff(attempts))

    def backoff(self, attempt: int) -> float:
        """Exponential delay for the ``attempt``-th retry with +/- jitter."""
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))
        if self.jitter:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return round(max(0.0, delay), 3)

    def corrections_exhausted(self, correction_cycles: int) -> bool:
        return correction_cycles >= self.max_correction_cycles
