"""Temporal worker service for the document pipeline.

This worker:
- Connects to the configured Temporal server
- Registers the pipeline workflow and the stage activity
- Polls the pipeline task queue
"""

import asyncio

from temporalio.worker import Worker

from docflow.config import settings
from docflow.database import close_database, init_database
from docflow.temporal.activities import advance_document_stage
from docflow.temporal.client import get_temporal_client
from docflow.temporal.workflows import DocumentPipelineWorkflow
from docflow.utils.logging import get_logger

logger = get_logger(__name__)


async def main():
    """Start the Temporal worker."""
    logger.info(f"Connecting to Temporal server at {settings.temporal_host}:{settings.temporal_port}")
    client = await get_temporal_client()
    await init_database()

    max_activities = settings.pipeline.max_concurrent_llm_calls
    worker = Worker(
        client,
        task_queue=settings.temporal_task_queue,
        workflows=[DocumentPipelineWorkflow],
        activities=[advance_document_stage],
        max_concurrent_activities=max_activities,
        max_concurrent_workflow_tasks=10,
    )

    logger.info("=" * 60)
    logger.info("Temporal Worker Started Successfully")
    logger.info(f"Task Queue: {settings.temporal_task_queue}")
    logger.info(f"Max Concurrent Activities: {max_activities}")
    logger.info("=" * 60)

    try:
        await worker.run()
    finally:
        await close_database()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        raise
