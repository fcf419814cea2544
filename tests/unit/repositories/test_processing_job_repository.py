"""Unit tests for processing job and document repositories."""

import uuid
from datetime import timedelta

import pytest

from docflow.database.base import utcnow
from docflow.database.enums import DocumentStatus, DocumentType, PipelineStage
from docflow.repositories.document_repository import DocumentRepository
from docflow.repositories.processing_job_repository import ProcessingJobRepository


async def make_job(session, key="user-1/a.pdf", user_id="user-1"):
    document = await DocumentRepository(session).create(
        user_id=user_id,
        original_filename="a.pdf",
        storage_bucket="documents",
        storage_key=key,
        status=DocumentStatus.PROCESSING,
    )
    job = await ProcessingJobRepository(session).create(
        document_id=document.id,
        external_job_id=f"docflow-{document.id}",
        current_stage=PipelineStage.UPLOAD,
        stage_context={},
    )
    await session.commit()
    return document, job


class TestLease:
    """Tests for claim and release."""

    @pytest.mark.asyncio
    async def test_claim_free_job(self, db_session):
        document, _ = await make_job(db_session)
        jobs = ProcessingJobRepository(db_session)

        assert await jobs.claim(document.id, "worker-a", lease_seconds=60) is True
        await db_session.commit()

        job = await jobs.get_by_document_id(document.id)
        await db_session.refresh(job)
        assert job.lease_owner == "worker-a"
        assert job.lease_expires_at is not None

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(self, db_session):
        document, _ = await make_job(db_session)
        jobs = ProcessingJobRepository(db_session)

        assert await jobs.claim(document.id, "worker-a", 60)
        await db_session.commit()
        assert await jobs.claim(document.id, "worker-b", 60) is False

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, db_session):
        document, _ = await make_job(db_session)
        jobs = ProcessingJobRepository(db_session)
        now = utcnow()

        assert await jobs.claim(document.id, "worker-a", 60, now=now)
        await db_session.commit()
        assert await jobs.claim(document.id, "worker-b", 60, now=now + timedelta(seconds=61))

    @pytest.mark.asyncio
    async def test_release_only_by_owner(self, db_session):
        document, _ = await make_job(db_session)
        jobs = ProcessingJobRepository(db_session)
        await jobs.claim(document.id, "worker-a", 60)
        await db_session.commit()

        assert await jobs.release(document.id, "worker-b") is False
        assert await jobs.release(document.id, "worker-a") is True
        await db_session.commit()
        assert await jobs.claim(document.id, "worker-b", 60) is True

    @pytest.mark.asyncio
    async def test_lookup_by_external_id(self, db_session):
        document, job = await make_job(db_session)
        found = await ProcessingJobRepository(db_session).get_by_external_id(f"docflow-{document.id}")
        assert found.id == job.id


class TestDocumentRepository:
    """Tests for document listing and archiving."""

    @pytest.mark.asyncio
    async def test_list_for_user_hides_archived(self, db_session):
        first, _ = await make_job(db_session, key="user-1/a.pdf")
        second, _ = await make_job(db_session, key="user-1/b.pdf")
        await make_job(db_session, key="user-2/c.pdf", user_id="user-2")
        documents = DocumentRepository(db_session)

        await documents.archive(first.id)
        await db_session.commit()

        listed = await documents.list_for_user("user-1")
        assert [d.id for d in listed] == [second.id]

        archived = await documents.list_for_user("user-1", status=DocumentStatus.ARCHIVED)
        assert [d.id for d in archived] == [first.id]
        assert archived[0].archived_at is not None

    @pytest.mark.asyncio
    async def test_list_filters_by_type(self, db_session):
        document, _ = await make_job(db_session)
        document.document_type = DocumentType.RECEIPT
        await db_session.commit()
        documents = DocumentRepository(db_session)

        assert len(await documents.list_for_user("user-1", document_type=DocumentType.RECEIPT)) == 1
        assert await documents.list_for_user("user-1", document_type=DocumentType.INVOICE) == []

    @pytest.mark.asyncio
    async def test_get_by_storage_key(self, db_session):
        document, _ = await make_job(db_session)
        found = await DocumentRepository(db_session).get_by_storage_key("user-1/a.pdf")
        assert found.id == document.id

    @pytest.mark.asyncio
    async def test_archive_unknown_document(self, db_session):
        assert await DocumentRepository(db_session).archive(uuid.uuid4()) is None
