"""Temporal activities for document processing."""

from .advance_stage import advance_document_stage

__all__ = [
    "advance_document_stage",
]
