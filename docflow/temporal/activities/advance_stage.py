"""Activity applying one run-stage command through the stage engine."""

from typing import Optional

from temporalio import activity
from temporalio.exceptions import ApplicationError

from docflow.pipeline.engine import StageTransitionEngine, create_stage_engine
from docflow.schemas.pipeline import AdvanceResult, RunStageCommand
from docflow.utils.exceptions import DocumentNotFoundError, PersistenceClaimConflictError
from docflow.utils.logging import get_logger

logger = get_logger(__name__)

_engine: Optional[StageTransitionEngine] = None


def get_engine() -> StageTransitionEngine:
    """One engine per worker process, so the LLM semaphore is shared."""
    global _engine
    if _engine is None:
        _engine = create_stage_engine()
    return _engine


@activity.defn
async def advance_document_stage(command: dict) -> dict:
    """Advance a document by one stage.

    Args:
        command: Serialized ``RunStageCommand``

    Returns:
        Serialized ``AdvanceResult``. A lease held by another worker comes
        back with ``claim_conflict`` set and the same command as
        ``next_command``, for the workflow to redeliver later.
    """
    cmd = RunStageCommand.model_validate(command)
    activity.logger.info(
        f"Advancing document {cmd.document_id} at {cmd.stage.value}",
        extra={"document_id": cmd.document_id, "attempt_id": cmd.attempt_id},
    )

    try:
        result = await get_engine().advance(
            cmd.document_id, cmd.stage, cmd.attempt_id, cmd.external_event_id
        )
    except PersistenceClaimConflictError as e:
        result = AdvanceResult(
            document_id=cmd.document_id,
            new_stage=cmd.stage,
            new_document_status=e.document_status,
            decision="CLAIM_CONFLICT",
            next_command=cmd,
            claim_conflict=True,
        )
    except DocumentNotFoundError as e:
        logger.error(f"Document {cmd.document_id} not found, dropping command")
        raise ApplicationError(e.message, type="DocumentNotFoundError", non_retryable=True) from e

    return result.model_dump(mode="json")
