"""Workflow dispatching pipeline commands until the document is terminal.

Each iteration runs the ``advance_document_stage`` activity with the
current command and follows the ``next_command`` it returns. Retry delays
chosen by the engine become durable timers; a command whose job lease is
held elsewhere is redelivered after a short wait.
"""

from datetime import timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

# Longer than the engine's stage deadline plus storage and database work
ACTIVITY_TIMEOUT = timedelta(minutes=10)
CLAIM_CONFLICT_WAIT = timedelta(seconds=30)
MAX_STEPS = 100


@workflow.defn
class DocumentPipelineWorkflow:
    """Drives one document from UPLOAD to a terminal stage."""

    def __init__(self):
        self._stage: Optional[str] = None
        self._document_status: Optional[str] = None
        self._steps = 0

    @workflow.query
    def get_status(self) -> dict:
        """Query handler for real-time status updates."""
        return {
            "stage": self._stage,
            "document_status": self._document_status,
            "steps": self._steps,
        }

    @workflow.run
    async def run(self, command: dict) -> dict:
        workflow.logger.info(f"Starting pipeline for document: {command['document_id']}")
        result: dict = {}

        while command is not None and self._steps < MAX_STEPS:
            self._steps += 1
            self._stage = command["stage"]

            result = await workflow.execute_activity(
                "advance_document_stage",
                command,
                start_to_close_timeout=ACTIVITY_TIMEOUT,
                retry_policy=RetryPolicy(
                    maximum_attempts=5,
                    initial_interval=timedelta(seconds=5),
                    maximum_interval=timedelta(seconds=60),
                    backoff_coefficient=2.0,
                    non_retryable_error_types=["DocumentNotFoundError"],
                ),
            )
            self._stage = result["new_stage"]
            if result.get("new_document_status"):
                self._document_status = result["new_document_status"]

            if result.get("claim_conflict"):
                await workflow.sleep(CLAIM_CONFLICT_WAIT)
            elif result.get("retry_delay_seconds"):
                workflow.logger.info(
                    f"Retrying {result['new_stage']} in {result['retry_delay_seconds']}s"
                )
                await workflow.sleep(timedelta(seconds=result["retry_delay_seconds"]))

            command = result.get("next_command")

        if command is not None:
            workflow.logger.error(f"Pipeline stopped after {MAX_STEPS} steps at {self._stage}")

        workflow.logger.info(
            f"Pipeline finished at {self._stage} with status {self._document_status}"
        )
        return result
