"""Pipeline state machine: allowed transitions and stage metadata."""

import uuid
from typing import Dict, FrozenSet, Optional

from docflow.database.enums import DocumentStatus, PipelineStage, PromptCategory
from docflow.utils.exceptions import InvalidTransitionError

S = PipelineStage

TRANSITIONS: Dict[PipelineStage, FrozenSet[PipelineStage]] = {
    S.UPLOAD: frozenset({S.CLASSIFICATION, S.FAILED}),
    S.CLASSIFICATION: frozenset({S.EXTRACTION, S.FAILED}),
    S.EXTRACTION: frozenset({S.VALIDATION, S.FAILED}),
    S.VALIDATION: frozenset({S.FINALIZE, S.CORRECTION, S.FAILED}),
    S.CORRECTION: frozenset({S.REVALIDATION, S.FAILED}),
    S.REVALIDATION: frozenset({S.FINALIZE, S.CORRECTION, S.NEEDS_REVIEW, S.FAILED}),
    S.FINALIZE: frozenset({S.DONE, S.FAILED}),
    S.DONE: frozenset(),
    S.NEEDS_REVIEW: frozenset(),
    S.FAILED: frozenset(),
}

# Stages that call LLM providers, with the prompt category they render
PROMPT_CATEGORIES: Dict[PipelineStage, PromptCategory] = {
    S.CLASSIFICATION: PromptCategory.CLASSIFICATION,
    S.EXTRACTION: PromptCategory.EXTRACTION,
    S.VALIDATION: PromptCategory.VALIDATION,
    S.CORRECTION: PromptCategory.CORRECTION,
    S.REVALIDATION: PromptCategory.VALIDATION,
}

VALIDATION_STAGES = frozenset({S.VALIDATION, S.REVALIDATION})

# Namespace for deterministic follow-up attempt ids
ATTEMPT_NAMESPACE = uuid.UUID("6b0f5d0e-4f4e-4d8a-9a51-3f1f2f7c9e10")


def check_transition(current: PipelineStage, target: PipelineStage) -> None:
    """Raise unless ``current -> target`` is in the table.

    Staying on the same active stage (a retry) is always allowed.
    """
    if target == current and not current.is_terminal:
        return
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(f"Transition {current.value} -> {target.value} is not allowed")


def prompt_category(stage: PipelineStage) -> Optional[PromptCategory]:
    return PROMPT_CATEGORIES.get(stage)


def document_status_for(stage: PipelineStage) -> DocumentStatus:
    """Document status implied by a job stage."""
    if stage == S.DONE:
        return DocumentStatus.COMPLETED
    if stage == S.NEEDS_REVIEW:
        return DocumentStatus.NEEDS_REVIEW
    if stage == S.FAILED:
        return DocumentStatus.FAILED
    return DocumentStatus.PROCESSING


def attempt_id_for(document_id: str, stage: PipelineStage, correction_cycles: int, retry_count: int) -> str:
    """Deterministic attempt id for the command that runs ``stage`` next.

    The same job state always yields the same id, so a follow-up emitted
    twice is recognised as one command.
    """
    name = f"{document_id}:{stage.value}:{correction_cycles}:{retry_count}"
    return str(uuid.uuid5(ATTEMPT_NAMESPACE, name))
