"""Temporal workflows for document processing."""

from .document_pipeline import DocumentPipelineWorkflow

__all__ = [
    "DocumentPipelineWorkflow",
]
