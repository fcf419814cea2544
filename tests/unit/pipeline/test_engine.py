"""Tests for the stage transition engine.

Covers the full happy path, the consensus branches into correction, the
retry and failure paths, and at-least-once delivery (duplicates, stale
commands, lease conflicts).
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from docflow.database.base import utcnow
from docflow.database.enums import DocumentStatus, DocumentType, PipelineStage, StageStatus
from docflow.database.models import AuditLog, Document, ProcessingJob, PromptTemplate
from docflow.pipeline.engine import StageTransitionEngine
from docflow.pipeline.retry_policy import RetryPolicy
from docflow.schemas.pipeline import RunStageCommand
from docflow.utils.exceptions import (
    AuditLogImmutableError,
    DocumentNotFoundError,
    PermanentProviderError,
    PersistenceClaimConflictError,
    ProviderTimeoutError,
    StorageError,
)
from tests.conftest import response

S = PipelineStage

CLASSIFIED = {"document_type": "INVOICE", "reasoning": "Has an invoice number and totals"}
VALID = {"is_valid": True, "issues": []}
INVALID = {
    "is_valid": False,
    "issues": [{"field": "total", "issue": "Total does not match line items", "severity": "error"}],
}


@pytest.fixture
def make_engine(session_factory, registry, storage, pipeline_settings, seeded_templates):
    """Engine factory for tests that need different pipeline settings."""

    def build(**overrides) -> StageTransitionEngine:
        tuned = pipeline_settings.model_copy(update=overrides)
        return StageTransitionEngine(
            session_factory=session_factory,
            registry=registry,
            storage=storage,
            pipeline_settings=tuned,
            semaphore=asyncio.Semaphore(4),
            policy=RetryPolicy.from_settings(tuned),
            worker_id="worker-test",
        )

    return build


async def register(engine) -> RunStageCommand:
    return await engine.register_upload(
        user_id="user-1",
        original_filename="invoice.pdf",
        storage_bucket="documents",
        storage_key="user-1/invoice.pdf",
        mime_type="application/pdf",
    )


async def send(engine, command: RunStageCommand):
    return await engine.advance(
        command.document_id, command.stage, command.attempt_id, command.external_event_id
    )


async def run_until(engine, command: RunStageCommand, stage: PipelineStage):
    """Follow next commands until ``stage`` is the next one to run; returns that command."""
    while command is not None and command.stage != stage:
        result = await send(engine, command)
        command = result.next_command
    assert command is not None, f"pipeline ended before reaching {stage.value}"
    return command


async def load(session_factory, document_id):
    doc_id = uuid.UUID(str(document_id))
    async with session_factory() as session:
        document = await session.get(Document, doc_id)
        job = (
            await session.execute(select(ProcessingJob).where(ProcessingJob.document_id == doc_id))
        ).scalar_one()
        audits = list(
            (await session.execute(select(AuditLog).where(AuditLog.document_id == doc_id))).scalars()
        )
        return document, job, audits


def script_happy_path(openai_provider, anthropic_provider, invoice):
    openai_provider.script("CLASSIFICATION", response(CLASSIFIED, 0.95))
    openai_provider.script("EXTRACTION", response(invoice, 0.95))
    openai_provider.script("VALIDATION", response(VALID, 0.9))
    anthropic_provider.script("VALIDATION", response(VALID, 0.9))


class TestHappyPath:
    """Test suite for a document that goes straight through."""

    @pytest.mark.asyncio
    async def test_register_upload_creates_document_and_job(self, stage_engine, session_factory):
        command = await register(stage_engine)

        assert command.stage == S.UPLOAD
        document, job, audits = await load(session_factory, command.document_id)
        assert document.status == DocumentStatus.UPLOADING
        assert job.current_stage == S.UPLOAD
        assert job.stage_status == StageStatus.PENDING
        assert job.next_attempt_id == command.attempt_id
        assert audits == []

    @pytest.mark.asyncio
    async def test_upload_checks_storage_and_moves_to_classification(
        self, stage_engine, session_factory, storage
    ):
        command = await register(stage_engine)

        result = await send(stage_engine, command)

        assert result.new_stage == S.CLASSIFICATION
        assert result.new_document_status == DocumentStatus.PROCESSING
        assert result.next_command.stage == S.CLASSIFICATION
        assert storage.calls == ["documents/user-1/invoice.pdf"]
        document, job, _ = await load(session_factory, command.document_id)
        assert document.file_size == len(b"%PDF-1.4 invoice")
        assert job.lease_owner is None

    @pytest.mark.asyncio
    async def test_full_pipeline_completes(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        command = await register(stage_engine)

        stages = []
        result = None
        while command is not None:
            stages.append(command.stage)
            result = await send(stage_engine, command)
            command = result.next_command

        assert stages == [S.UPLOAD, S.CLASSIFICATION, S.EXTRACTION, S.VALIDATION, S.FINALIZE]
        assert result.new_stage == S.DONE
        assert result.new_document_status == DocumentStatus.COMPLETED

        document, job, audits = await load(session_factory, result.document_id)
        assert document.status == DocumentStatus.COMPLETED
        assert document.document_type == DocumentType.INVOICE
        assert document.needs_review is False
        assert document.completed_at is not None
        assert document.parsed_data["invoice_number"] == "INV-2024-001"
        assert document.parsed_data["total"] == 120.0
        assert 0.8 <= document.confidence <= 1.0
        assert job.current_stage == S.DONE
        assert job.stage_status == StageStatus.SUCCESS
        assert job.retry_count == 0
        assert job.next_attempt_id is None
        # classification 1 + extraction 1 + validation 2
        assert len(audits) == 4
        assert all(0.0 <= row.agreement_level <= 1.0 for row in audits)

    @pytest.mark.asyncio
    async def test_single_provider_extraction_proceeds_to_validation(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        """One provider at 0.95 on EXTRACTION moves on without flagging review."""
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        command = await run_until(stage_engine, await register(stage_engine), S.EXTRACTION)

        result = await send(stage_engine, command)

        assert result.new_stage == S.VALIDATION
        assert result.decision == "PROCEED"
        document, job, audits = await load(session_factory, result.document_id)
        assert document.needs_review is False
        assert document.status == DocumentStatus.PROCESSING
        extraction_rows = [row for row in audits if row.stage == S.EXTRACTION]
        assert len(extraction_rows) == 1
        assert extraction_rows[0].confidence == pytest.approx(0.95)
        assert extraction_rows[0].agreement_level == pytest.approx(1.0)
        assert extraction_rows[0].sensitive is True
        assert extraction_rows[0].prompt_template == "document-extraction"
        assert extraction_rows[0].attempt_id == command.attempt_id
        assert job.stage_context["EXTRACTION"]["confidence"] == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_prompts_carry_document_context(
        self, stage_engine, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        command = await run_until(stage_engine, await register(stage_engine), S.FINALIZE)

        assert command.stage == S.FINALIZE
        extraction_prompt = openai_provider.prompts[1]
        assert "INVOICE" in extraction_prompt
        validation_prompt = anthropic_provider.prompts[0]
        assert "INV-2024-001" in validation_prompt
        assert "Business Rules for INVOICE" in validation_prompt
        # File content goes to classification and extraction, not validation
        assert openai_provider.calls[0].content == b"%PDF-1.4 invoice"
        assert anthropic_provider.calls[0].content is None

    @pytest.mark.asyncio
    async def test_classifiers_agreeing_on_type_are_not_flagged(
        self, make_engine, pipeline_settings, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        """Different reasoning for the same label is still full agreement."""
        engine = make_engine(
            stage_providers={
                **pipeline_settings.stage_providers,
                "CLASSIFICATION": ["openai/gpt-4o-mini", "anthropic/claude-3-5-haiku-latest"],
            }
        )
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        anthropic_provider.script(
            "CLASSIFICATION", response({"document_type": "INVOICE", "reasoning": "Vendor, due date and VAT lines"}, 0.9)
        )

        command = await register(engine)
        result = None
        while command is not None:
            result = await send(engine, command)
            command = result.next_command

        assert result.new_document_status == DocumentStatus.COMPLETED
        document, job, audits = await load(session_factory, result.document_id)
        assert document.needs_review is False
        assert job.stage_context["CLASSIFICATION"]["agreement"] == pytest.approx(1.0)
        classification_rows = [row for row in audits if row.stage == S.CLASSIFICATION]
        assert len(classification_rows) == 2
        assert all(row.agreement_level == pytest.approx(1.0) for row in classification_rows)
        assert job.stage_context["finalize"]["review_reasons"] == []


class TestConsensusBranches:
    """Test suite for validation outcomes that route through correction."""

    @pytest.mark.asyncio
    async def test_disagreeing_validators_branch_to_correction(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        openai_provider.scripts["VALIDATION"].clear()
        anthropic_provider.scripts["VALIDATION"].clear()
        openai_provider.script(
            "VALIDATION",
            response(
                {
                    "is_valid": False,
                    "issues": [
                        {"field": "total", "issue": "Mismatch", "severity": "error"},
                        {"field": "tax", "issue": "Rate looks odd", "severity": "warning"},
                        {"field": "vendor", "issue": "Abbreviated", "severity": "warning"},
                    ],
                },
                0.9,
            ),
        )
        anthropic_provider.script(
            "VALIDATION",
            response(
                {
                    "is_valid": False,
                    "issues": [
                        {"field": "total", "issue": "Mismatch", "severity": "error"},
                        {"field": "due_date", "issue": "Too far out", "severity": "warning"},
                    ],
                },
                0.9,
            ),
        )
        command = await run_until(stage_engine, await register(stage_engine), S.VALIDATION)

        result = await send(stage_engine, command)

        assert result.new_stage == S.CORRECTION
        assert result.decision == "BRANCH"
        document, job, audits = await load(session_factory, result.document_id)
        assert job.retry_count == 0
        assert document.status == DocumentStatus.PROCESSING
        validation_rows = [row for row in audits if row.stage == S.VALIDATION]
        assert len(validation_rows) == 2
        assert all(row.agreement_level == pytest.approx(0.4) for row in validation_rows)
        assert {row.attempt_id for row in validation_rows} == {command.attempt_id}

    @pytest.mark.asyncio
    async def test_correction_then_successful_revalidation_finalizes(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        for provider in (openai_provider, anthropic_provider):
            provider.scripts["VALIDATION"].clear()
            provider.script("VALIDATION", response(INVALID, 0.9))
            provider.script("REVALIDATION", response(VALID, 0.92))
        corrected = {**sample_invoice, "vendor": "Acme Supplies Ltd"}
        openai_provider.script(
            "CORRECTION", response({"corrected_data": corrected, "changes": ["Expanded vendor"]}, 0.85)
        )

        command = await register(stage_engine)
        stages = []
        result = None
        while command is not None:
            stages.append(command.stage)
            result = await send(stage_engine, command)
            command = result.next_command

        assert stages == [
            S.UPLOAD,
            S.CLASSIFICATION,
            S.EXTRACTION,
            S.VALIDATION,
            S.CORRECTION,
            S.REVALIDATION,
            S.FINALIZE,
        ]
        document, job, _ = await load(session_factory, result.document_id)
        assert result.new_stage == S.DONE
        assert document.parsed_data["vendor"] == "Acme Supplies Ltd"
        assert job.correction_cycles == 1
        assert job.stage_context["CORRECTION"]["changes"] == ["Expanded vendor"]
        correction_prompt = next(
            prompt
            for call, prompt in zip(openai_provider.calls, openai_provider.prompts)
            if call.stage == S.CORRECTION
        )
        assert "Total does not match line items" in correction_prompt

    @pytest.mark.asyncio
    async def test_revalidation_failing_after_max_cycles_needs_review(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        for provider in (openai_provider, anthropic_provider):
            provider.scripts["VALIDATION"].clear()
            provider.script("VALIDATION", response(INVALID, 0.9))
            provider.script("REVALIDATION", response(INVALID, 0.9))
        openai_provider.script(
            "CORRECTION", response({"corrected_data": sample_invoice, "changes": []}, 0.7)
        )

        command = await register(stage_engine)
        stages = []
        result = None
        while command is not None:
            stages.append(command.stage)
            result = await send(stage_engine, command)
            command = result.next_command

        assert stages[-4:] == [S.CORRECTION, S.REVALIDATION, S.CORRECTION, S.REVALIDATION]
        assert result.new_stage == S.NEEDS_REVIEW
        assert result.new_document_status == DocumentStatus.NEEDS_REVIEW
        document, job, _ = await load(session_factory, result.document_id)
        assert document.needs_review is True
        assert document.status == DocumentStatus.NEEDS_REVIEW
        assert document.confidence <= 0.3
        assert job.correction_cycles == 2
        assert job.retry_count == 0

    @pytest.mark.asyncio
    async def test_business_rule_errors_invalidate_a_passing_validation(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        broken = {**sample_invoice, "total": 150.0}
        script_happy_path(openai_provider, anthropic_provider, broken)
        command = await run_until(stage_engine, await register(stage_engine), S.VALIDATION)

        result = await send(stage_engine, command)

        assert result.new_stage == S.CORRECTION
        _, job, _ = await load(session_factory, result.document_id)
        validation = job.stage_context["VALIDATION"]
        assert validation["is_valid"] is False
        assert any(issue["field"] == "total" for issue in validation["issues"])
        assert validation["confidence"] < validation["llm_confidence"]

    @pytest.mark.asyncio
    async def test_low_confidence_finalize_flags_review(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        openai_provider.scripts["EXTRACTION"].clear()
        openai_provider.script("EXTRACTION", response(sample_invoice, 0.4))

        command = await run_until(stage_engine, await register(stage_engine), S.FINALIZE)
        result = await send(stage_engine, command)

        assert result.new_stage == S.DONE
        assert result.new_document_status == DocumentStatus.NEEDS_REVIEW
        document, job, _ = await load(session_factory, result.document_id)
        assert document.needs_review is True
        assert document.completed_at is None
        assert job.stage_context["finalize"]["review_reasons"]

    @pytest.mark.asyncio
    async def test_empty_extraction_proceeds_with_low_confidence(
        self, stage_engine, session_factory, openai_provider, anthropic_provider
    ):
        """An extraction with no fields still validates and then lands in review."""
        openai_provider.script("CLASSIFICATION", response({"document_type": "OTHER"}, 0.95))
        openai_provider.script("EXTRACTION", response({}, 0.9))
        openai_provider.script("VALIDATION", response(VALID, 0.9))
        anthropic_provider.script("VALIDATION", response(VALID, 0.9))
        command = await run_until(stage_engine, await register(stage_engine), S.EXTRACTION)

        extraction = await send(stage_engine, command)

        assert extraction.new_stage == S.VALIDATION
        assert extraction.decision == "PROCEED"
        _, job, _ = await load(session_factory, command.document_id)
        assert job.stage_context["EXTRACTION"]["fields_extracted"] == 0
        assert job.stage_context["EXTRACTION"]["confidence"] == pytest.approx(0.05)

        command = extraction.next_command
        result = None
        while command is not None:
            result = await send(stage_engine, command)
            command = result.next_command

        assert "{}" in anthropic_provider.prompts[0]
        assert result.new_stage == S.DONE
        assert result.new_document_status == DocumentStatus.NEEDS_REVIEW
        document, _, _ = await load(session_factory, result.document_id)
        assert document.needs_review is True
        assert document.confidence == 0.0


class TestUploadChecks:
    """Test suite for size and type checks on the stored object."""

    @pytest.mark.asyncio
    async def test_unsupported_type_fails_without_calling_providers(
        self, stage_engine, session_factory, storage, openai_provider
    ):
        storage.objects["user-1/notes.txt"] = b"hello"
        command = await stage_engine.register_upload(
            user_id="user-1",
            original_filename="notes.txt",
            storage_bucket="documents",
            storage_key="user-1/notes.txt",
            mime_type="text/plain",
        )

        result = await send(stage_engine, command)

        assert result.new_stage == S.FAILED
        assert result.decision == "FAIL"
        document, job, _ = await load(session_factory, command.document_id)
        assert document.status == DocumentStatus.FAILED
        assert "File type 'text/plain' is not supported" in job.error_message
        assert openai_provider.calls == []

    @pytest.mark.asyncio
    async def test_oversized_object_fails(self, make_engine, session_factory):
        engine = make_engine(max_file_size_bytes=8)
        command = await register(engine)

        result = await send(engine, command)

        assert result.new_stage == S.FAILED
        _, job, _ = await load(session_factory, command.document_id)
        assert "exceeds maximum allowed size" in job.error_message
        assert job.retry_count == 0

    @pytest.mark.asyncio
    async def test_empty_object_fails(self, stage_engine, session_factory, storage):
        storage.objects["user-1/invoice.pdf"] = b""
        command = await register(stage_engine)

        result = await send(stage_engine, command)

        assert result.new_stage == S.FAILED
        document, job, _ = await load(session_factory, command.document_id)
        assert document.file_size == 0
        assert "File is empty" in job.error_message

    @pytest.mark.asyncio
    async def test_missing_mime_type_is_inferred_from_filename(self, stage_engine, session_factory):
        command = await stage_engine.register_upload(
            user_id="user-1",
            original_filename="invoice.pdf",
            storage_bucket="documents",
            storage_key="user-1/invoice.pdf",
        )

        result = await send(stage_engine, command)

        assert result.new_stage == S.CLASSIFICATION
        document, _, _ = await load(session_factory, command.document_id)
        assert document.mime_type == "application/pdf"


class TestFailures:
    """Test suite for retries, permanent failures and exhaustion."""

    @pytest.mark.asyncio
    async def test_timeouts_retry_then_fail_when_exhausted(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        async def never_answers():
            await asyncio.sleep(5)

        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        openai_provider.scripts["EXTRACTION"].clear()
        openai_provider.script("EXTRACTION", never_answers)
        command = await run_until(stage_engine, await register(stage_engine), S.EXTRACTION)

        first = await send(stage_engine, command)
        assert first.decision == "RETRY"
        assert first.new_stage == S.EXTRACTION
        assert first.retry_delay_seconds == pytest.approx(2.0)
        assert first.next_command.attempt_id != command.attempt_id

        second = await send(stage_engine, first.next_command)
        assert second.decision == "RETRY"
        assert second.retry_delay_seconds == pytest.approx(4.0)

        third = await send(stage_engine, second.next_command)
        assert third.decision == "FAIL"
        assert third.new_stage == S.FAILED
        assert third.next_command is None

        document, job, audits = await load(session_factory, command.document_id)
        assert document.status == DocumentStatus.FAILED
        assert document.needs_review is True
        assert job.stage_status == StageStatus.FAILED
        assert job.retry_count == 3
        assert job.error_message.startswith("EXTRACTION")
        extraction_rows = [row for row in audits if row.stage == S.EXTRACTION]
        assert len(extraction_rows) == 3
        assert {row.error_kind for row in extraction_rows} == {"timeout"}
        assert len({row.attempt_id for row in extraction_rows}) == 3

    @pytest.mark.asyncio
    async def test_retry_count_never_decreases(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        openai_provider.scripts["CLASSIFICATION"].clear()
        openai_provider.script(
            "CLASSIFICATION",
            ProviderTimeoutError("timed out", provider="openai", model="gpt-4o-mini"),
            response(CLASSIFIED, 0.95),
        )
        command = await run_until(stage_engine, await register(stage_engine), S.CLASSIFICATION)

        counts = []
        while command is not None:
            result = await send(stage_engine, command)
            _, job, _ = await load(session_factory, command.document_id)
            counts.append(job.retry_count)
            command = result.next_command

        assert counts == sorted(counts)
        assert counts[-1] == 1
        assert result.new_stage == S.DONE

    @pytest.mark.asyncio
    async def test_permanent_error_fails_immediately(
        self, stage_engine, session_factory, openai_provider
    ):
        openai_provider.script(
            "CLASSIFICATION",
            PermanentProviderError("client error 401", provider="openai", model="gpt-4o-mini"),
        )
        command = await run_until(stage_engine, await register(stage_engine), S.CLASSIFICATION)

        result = await send(stage_engine, command)

        assert result.new_stage == S.FAILED
        document, job, audits = await load(session_factory, command.document_id)
        assert document.status == DocumentStatus.FAILED
        assert document.needs_review is False
        assert job.retry_count == 0
        assert "client error 401" in job.error_message
        assert audits[0].error_kind == "permanent"

    @pytest.mark.asyncio
    async def test_malformed_payload_from_every_provider_retries(
        self, stage_engine, session_factory, openai_provider
    ):
        openai_provider.script("CLASSIFICATION", response({"label": "invoice"}, 0.9))
        command = await run_until(stage_engine, await register(stage_engine), S.CLASSIFICATION)

        result = await send(stage_engine, command)

        assert result.decision == "RETRY"
        _, _, audits = await load(session_factory, command.document_id)
        assert audits[0].error_kind == "malformed_output"

    @pytest.mark.asyncio
    async def test_missing_template_fails_stage(
        self, stage_engine, session_factory, openai_provider
    ):
        openai_provider.script("CLASSIFICATION", response(CLASSIFIED, 0.95))
        async with session_factory() as session:
            await session.execute(update(PromptTemplate).values(is_active=False))
            await session.commit()
        command = await run_until(stage_engine, await register(stage_engine), S.CLASSIFICATION)

        result = await send(stage_engine, command)

        assert result.new_stage == S.FAILED
        _, job, audits = await load(session_factory, command.document_id)
        assert "No active prompt template" in job.error_message
        assert audits == []
        assert openai_provider.calls == []

    @pytest.mark.asyncio
    async def test_missing_object_fails_upload(self, stage_engine, session_factory):
        command = await stage_engine.register_upload(
            user_id="user-1",
            original_filename="gone.pdf",
            storage_bucket="documents",
            storage_key="user-1/gone.pdf",
        )

        result = await send(stage_engine, command)

        assert result.new_stage == S.FAILED
        document, job, _ = await load(session_factory, command.document_id)
        assert document.status == DocumentStatus.FAILED
        assert job.error_message.startswith("UPLOAD")

    @pytest.mark.asyncio
    async def test_transient_storage_error_retries_upload(self, stage_engine, storage):
        storage.errors.append(StorageError("connection reset", transient=True))
        command = await register(stage_engine)

        result = await send(stage_engine, command)

        assert result.decision == "RETRY"
        assert result.new_stage == S.UPLOAD
        retried = await send(stage_engine, result.next_command)
        assert retried.new_stage == S.CLASSIFICATION


class TestDelivery:
    """Test suite for duplicate, stale and concurrent deliveries."""

    @pytest.mark.asyncio
    async def test_duplicate_command_returns_cached_outcome(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        command = await run_until(stage_engine, await register(stage_engine), S.CLASSIFICATION)
        first = await send(stage_engine, command)
        _, _, audits_before = await load(session_factory, command.document_id)

        again = await send(stage_engine, command)

        _, job, audits_after = await load(session_factory, command.document_id)
        assert again.duplicate is True
        assert again.new_stage == first.new_stage
        assert again.next_command == first.next_command
        assert len(audits_after) == len(audits_before)
        assert len(openai_provider.calls) == 1
        assert job.current_stage == S.EXTRACTION

    @pytest.mark.asyncio
    async def test_older_command_replays_its_own_outcome(
        self, stage_engine, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        upload = await register(stage_engine)
        upload_result = await send(stage_engine, upload)
        await run_until(stage_engine, upload_result.next_command, S.VALIDATION)

        replay = await send(stage_engine, upload)

        assert replay.duplicate is True
        assert replay.new_stage == S.CLASSIFICATION

    @pytest.mark.asyncio
    async def test_unknown_attempt_is_stale(self, stage_engine, session_factory, storage):
        command = await register(stage_engine)
        bogus = command.model_copy(update={"attempt_id": str(uuid.uuid4())})

        result = await send(stage_engine, bogus)

        assert result.duplicate is True
        assert result.decision == "STALE"
        assert result.new_stage == S.UPLOAD
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_wrong_stage_is_stale(self, stage_engine):
        command = await register(stage_engine)
        wrong = command.model_copy(update={"stage": S.EXTRACTION})

        result = await send(stage_engine, wrong)

        assert result.decision == "STALE"
        assert result.next_command is None

    @pytest.mark.asyncio
    async def test_archived_document_is_not_processed(self, stage_engine, session_factory, storage):
        command = await register(stage_engine)
        async with session_factory() as session:
            await session.execute(
                update(Document)
                .where(Document.id == uuid.UUID(command.document_id))
                .values(status=DocumentStatus.ARCHIVED)
            )
            await session.commit()

        result = await send(stage_engine, command)

        assert result.decision == "STALE"
        assert result.new_document_status == DocumentStatus.ARCHIVED
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_claim_conflict_when_lease_is_held(self, stage_engine, session_factory, storage):
        command = await register(stage_engine)
        async with session_factory() as session:
            await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.document_id == uuid.UUID(command.document_id))
                .values(lease_owner="other-worker", lease_expires_at=utcnow() + timedelta(minutes=5))
            )
            await session.commit()

        with pytest.raises(PersistenceClaimConflictError) as exc_info:
            await send(stage_engine, command)

        assert exc_info.value.document_status == DocumentStatus.UPLOADING
        assert storage.calls == []
        _, job, _ = await load(session_factory, command.document_id)
        assert job.lease_owner == "other-worker"
        assert job.current_stage == S.UPLOAD

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken_over(self, stage_engine, session_factory):
        command = await register(stage_engine)
        async with session_factory() as session:
            await session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.document_id == uuid.UUID(command.document_id))
                .values(lease_owner="dead-worker", lease_expires_at=utcnow() - timedelta(minutes=1))
            )
            await session.commit()

        result = await send(stage_engine, command)

        assert result.new_stage == S.CLASSIFICATION
        _, job, _ = await load(session_factory, command.document_id)
        assert job.lease_owner is None

    @pytest.mark.asyncio
    async def test_unknown_document_raises(self, stage_engine):
        with pytest.raises(DocumentNotFoundError):
            await stage_engine.advance(str(uuid.uuid4()), S.UPLOAD, "attempt", "event")


class TestAuditTrail:
    """Test suite for audit log immutability."""

    @pytest.mark.asyncio
    async def test_audit_rows_cannot_be_updated_or_deleted(
        self, stage_engine, session_factory, openai_provider, anthropic_provider, sample_invoice
    ):
        script_happy_path(openai_provider, anthropic_provider, sample_invoice)
        command = await run_until(stage_engine, await register(stage_engine), S.EXTRACTION)
        doc_id = uuid.UUID(command.document_id)

        async with session_factory() as session:
            row = (await session.execute(select(AuditLog).where(AuditLog.document_id == doc_id))).scalars().first()
            row.confidence = 0.1
            with pytest.raises(AuditLogImmutableError):
                await session.flush()
            await session.rollback()

        async with session_factory() as session:
            row = (await session.execute(select(AuditLog).where(AuditLog.document_id == doc_id))).scalars().first()
            await session.delete(row)
            with pytest.raises(AuditLogImmutableError):
                await session.flush()
            await session.rollback()

        async with session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(AuditLog).where(AuditLog.document_id == doc_id)
            )
            assert count == 1
