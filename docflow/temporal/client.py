"""Temporal client configuration and connection management."""

from temporalio.client import Client as TemporalClient
from temporalio.client import WorkflowHandle

from docflow.config import settings
from docflow.schemas.pipeline import RunStageCommand
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

PIPELINE_WORKFLOW = "DocumentPipelineWorkflow"


class TemporalClientManager:
    """Manages Temporal client connection."""

    _client: TemporalClient | None = None

    async def get_client(self) -> TemporalClient:
        """Get or create Temporal client instance.

        Returns:
            TemporalClient: Connected Temporal client
        """
        if self._client is None:
            self._client = await TemporalClient.connect(
                f"{settings.temporal_host}:{settings.temporal_port}",
                namespace=settings.temporal_namespace,
            )
        return self._client

    async def close(self) -> None:
        """Forget the client; the SDK closes its connection on garbage collection."""
        self._client = None


_temporal_manager = TemporalClientManager()


async def get_temporal_client() -> TemporalClient:
    """Get Temporal client instance.

    Returns:
        TemporalClient: Connected Temporal client
    """
    return await _temporal_manager.get_client()


async def close_temporal_client() -> None:
    """Close Temporal client connection."""
    await _temporal_manager.close()


def pipeline_workflow_id(document_id: str) -> str:
    return f"document-pipeline-{document_id}"


async def start_document_pipeline(command: RunStageCommand) -> WorkflowHandle:
    """Start the pipeline workflow that dispatches ``command`` and its follow-ups.

    The workflow id is derived from the document, so starting twice for the
    same document fails instead of running two dispatch loops.
    """
    client = await get_temporal_client()
    handle = await client.start_workflow(
        PIPELINE_WORKFLOW,
        command.model_dump(mode="json"),
        id=pipeline_workflow_id(command.document_id),
        task_queue=settings.temporal_task_queue,
    )
    LOGGER.info(
        "Document pipeline workflow started",
        extra={"document_id": command.document_id, "workflow_id": handle.id},
    )
    return handle
