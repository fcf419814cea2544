"""Stage transition engine.

One ``advance`` call applies one dispatched command: it claims the
document's job lease, runs the command's stage (storage check, a provider
consensus round, or finalization), decides the outcome with the retry
policy and commits audit rows, job and document in one transaction.

Commands are delivered at least once. A command is applied only when it
names the job's current stage and the attempt id the engine asked for;
anything else returns the cached outcome (same command seen before) or the
current snapshot, without calling providers or writing audit rows.
"""

import asyncio
import copy
import json
import mimetypes
import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docflow.config import PipelineSettings, Settings, settings
from docflow.core.provider_registry import ProviderKey, ProviderRegistry, parse_provider_spec
from docflow.database.base import async_session_maker, utcnow
from docflow.database.enums import DocumentStatus, DocumentType, PipelineStage, StageStatus
from docflow.database.models import Document, ProcessingJob
from docflow.pipeline.audit_recorder import AuditRecorder
from docflow.pipeline.business_rules import describe_business_rules, validate_business_rules
from docflow.pipeline.confidence import adjust_for_business_rules, calculate_overall_confidence
from docflow.pipeline.consensus import ConsensusScorer
from docflow.pipeline.prompt_resolver import PromptResolver
from docflow.pipeline.provider_orchestrator import (
    OutputParser,
    ProviderInvocationOrchestrator,
    get_llm_semaphore,
)
from docflow.pipeline.retry_policy import Decision, PolicyDecision, RetryPolicy
from docflow.pipeline.review_gate import ReviewGate
from docflow.pipeline.stages import (
    VALIDATION_STAGES,
    attempt_id_for,
    check_transition,
    document_status_for,
)
from docflow.repositories.document_repository import DocumentRepository
from docflow.repositories.processing_job_repository import ProcessingJobRepository
from docflow.schemas.documents import dump_parsed_data, parse_parsed_data
from docflow.schemas.pipeline import (
    SEVERITY_ORDER,
    AdvanceResult,
    ClassificationPayload,
    ConsensusResult,
    CorrectionPayload,
    DocumentContext,
    ProviderCallResult,
    RunStageCommand,
    ValidationPayload,
)
from docflow.services.storage_service import StorageService
from docflow.utils.exceptions import (
    ConfigurationError,
    DocumentNotFoundError,
    MalformedOutputError,
    PersistenceClaimConflictError,
    StorageError,
)
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

S = PipelineStage

# Stages whose providers need the original file, not just extracted data
CONTENT_STAGES = frozenset({S.CLASSIFICATION, S.EXTRACTION, S.CORRECTION})

# Classification agreement is judged on the label, not the free-text reasoning
AGREEMENT_FIELDS = {S.CLASSIFICATION: ("document_type",)}

# Ceiling for the extraction confidence of a round that produced no fields
EMPTY_EXTRACTION_CONFIDENCE = 0.05

NEXT_STAGE = {
    S.UPLOAD: S.CLASSIFICATION,
    S.CLASSIFICATION: S.EXTRACTION,
    S.EXTRACTION: S.VALIDATION,
    S.CORRECTION: S.REVALIDATION,
}


@dataclass
class StageOutcome:
    """What a stage run wants committed."""

    policy: PolicyDecision
    new_stage: PipelineStage
    document_status: Optional[DocumentStatus] = None
    needs_review: Optional[bool] = None
    notes: Dict[str, Any] = field(default_factory=dict)


class StageTransitionEngine:
    """Drives documents through the pipeline, one command at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: ProviderRegistry,
        storage: StorageService,
        pipeline_settings: PipelineSettings,
        semaphore: Optional[asyncio.Semaphore] = None,
        policy: Optional[RetryPolicy] = None,
        worker_id: Optional[str] = None,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.settings = pipeline_settings
        self.clock = clock
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self.policy = policy or RetryPolicy.from_settings(pipeline_settings)
        self.scorer = ConsensusScorer(
            provider_weights=pipeline_settings.provider_weights,
            validity_threshold=pipeline_settings.validity_vote_threshold,
        )
        self.review_gate = ReviewGate(
            confidence_threshold=pipeline_settings.review_confidence_threshold,
            agreement_threshold=pipeline_settings.review_agreement_threshold,
        )
        self.orchestrator = ProviderInvocationOrchestrator(
            registry,
            semaphore or get_llm_semaphore(pipeline_settings.max_concurrent_llm_calls),
            call_timeout=pipeline_settings.provider_call_timeout_seconds,
            stage_deadline=pipeline_settings.stage_deadline_seconds,
        )
        self.stage_providers: Dict[PipelineStage, List[ProviderKey]] = {
            PipelineStage(stage.upper()): [parse_provider_spec(spec) for spec in specs]
            for stage, specs in pipeline_settings.stage_providers.items()
        }

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def register_upload(
        self,
        user_id: str,
        original_filename: str,
        storage_bucket: str,
        storage_key: str,
        mime_type: Optional[str] = None,
        file_size: Optional[int] = None,
        external_job_id: Optional[str] = None,
    ) -> RunStageCommand:
        """Create the document and its job, and return the first command."""
        async with self.session_factory() as session:
            document = await DocumentRepository(session).create(
                user_id=user_id,
                original_filename=original_filename,
                mime_type=mime_type,
                file_size=file_size,
                storage_bucket=storage_bucket,
                storage_key=storage_key,
                status=DocumentStatus.UPLOADING,
            )
            attempt_id = attempt_id_for(str(document.id), S.UPLOAD, 0, 0)
            job = await ProcessingJobRepository(session).create(
                document_id=document.id,
                external_job_id=external_job_id or f"docflow-{document.id}",
                current_stage=S.UPLOAD,
                stage_status=StageStatus.PENDING,
                next_attempt_id=attempt_id,
                stage_context={},
            )
            await session.commit()

            LOGGER.info(
                "Document registered for processing",
                extra={"document_id": str(document.id), "external_job_id": job.external_job_id},
            )
            return RunStageCommand(
                document_id=str(document.id),
                stage=S.UPLOAD,
                attempt_id=attempt_id,
                external_event_id=f"{job.external_job_id}:{attempt_id}",
            )

    async def advance(
        self,
        document_id: Union[str, uuid.UUID],
        stage: Union[str, PipelineStage],
        attempt_id: str,
        external_event_id: str,
    ) -> AdvanceResult:
        """Apply one run-stage command.

        Raises:
            DocumentNotFoundError: No document/job with this id
            PersistenceClaimConflictError: Another worker holds the lease;
                the delivery should be dropped and redelivered later
        """
        doc_id = uuid.UUID(str(document_id))
        stage = PipelineStage(stage)

        async with self.session_factory() as session:
            jobs = ProcessingJobRepository(session)
            documents = DocumentRepository(session)

            job = await jobs.get_by_document_id(doc_id)
            document = await documents.get_by_id(doc_id)
            if job is None or document is None:
                raise DocumentNotFoundError(f"No processing job for document {doc_id}")

            replay = self._replay(job, document, stage, attempt_id)
            if replay is not None:
                await session.rollback()
                return replay

            if not await jobs.claim(doc_id, self.worker_id, self.settings.lease_seconds, self.clock()):
                current_status = document.status
                await session.rollback()
                LOGGER.info(
                    "Job lease held by another worker, dropping delivery",
                    extra={"document_id": str(doc_id), "stage": stage.value, "attempt_id": attempt_id},
                )
                raise PersistenceClaimConflictError(
                    f"Processing job for {doc_id} is claimed by another worker",
                    document_status=current_status,
                )
            await session.commit()

            try:
                await session.refresh(job)
                await session.refresh(document)

                # Another worker may have applied the command between our check and claim
                replay = self._replay(job, document, stage, attempt_id)
                if replay is not None:
                    await jobs.release(doc_id, self.worker_id)
                    await session.commit()
                    return replay

                job.stage_status = StageStatus.RUNNING
                await session.commit()

                outcome = await self._run_stage(session, job, document, stage, attempt_id, external_event_id)
                return await self._commit(session, job, document, stage, attempt_id, outcome)
            except BaseException:
                await session.rollback()
                await self._release_after_error(session, doc_id)
                raise

    # ------------------------------------------------------------------
    # Idempotence
    # ------------------------------------------------------------------

    def _replay(
        self, job: ProcessingJob, document: Document, stage: PipelineStage, attempt_id: str
    ) -> Optional[AdvanceResult]:
        outcomes = (job.stage_context or {}).get("outcomes", {})
        cached = outcomes.get(attempt_id)
        if cached is None and job.last_attempt_id == attempt_id and job.last_stage == stage:
            cached = job.last_outcome
        if cached is not None and cached.get("new_stage") is not None:
            LOGGER.info(
                "Duplicate command, returning cached outcome",
                extra={"document_id": str(job.document_id), "stage": stage.value, "attempt_id": attempt_id},
            )
            return AdvanceResult.model_validate({**cached, "duplicate": True})

        stale = (
            document.status == DocumentStatus.ARCHIVED
            or job.current_stage.is_terminal
            or stage != job.current_stage
            or (job.next_attempt_id is not None and attempt_id != job.next_attempt_id)
        )
        if stale:
            LOGGER.info(
                "Stale command, returning current state",
                extra={
                    "document_id": str(job.document_id),
                    "command_stage": stage.value,
                    "current_stage": job.current_stage.value,
                    "attempt_id": attempt_id,
                },
            )
            return AdvanceResult(
                document_id=str(job.document_id),
                new_stage=job.current_stage,
                new_document_status=document.status,
                decision="STALE",
                duplicate=True,
            )
        return None

    async def _release_after_error(self, session: AsyncSession, document_id: uuid.UUID) -> None:
        try:
            await ProcessingJobRepository(session).release(document_id, self.worker_id)
            await session.commit()
        except Exception:
            LOGGER.error(
                "Failed to release job lease after error; it will expire",
                exc_info=True,
                extra={"document_id": str(document_id)},
            )

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        session: AsyncSession,
        job: ProcessingJob,
        document: Document,
        stage: PipelineStage,
        attempt_id: str,
        external_event_id: str,
    ) -> StageOutcome:
        if stage == S.UPLOAD:
            return await self._run_upload(job, document)
        if stage == S.FINALIZE:
            return self._run_finalize(job, document)
        return await self._run_llm_stage(session, job, document, stage, attempt_id, external_event_id)

    async def _run_upload(self, job: ProcessingJob, document: Document) -> StageOutcome:
        try:
            content = await self.storage.get_object(document.storage_bucket, document.storage_key)
        except StorageError as e:
            return self._failure(S.UPLOAD, job, e.message, self.policy.is_transient(e))

        document.file_size = len(content)
        if document.mime_type is None:
            document.mime_type = mimetypes.guess_type(document.original_filename)[0]

        problems = self._upload_problems(document)
        if problems:
            LOGGER.warning(
                "Uploaded object rejected",
                extra={"document_id": str(document.id), "problems": problems},
            )
            return self._failure(S.UPLOAD, job, "; ".join(problems), transient=False)

        return StageOutcome(
            policy=PolicyDecision(Decision.PROCEED, "object available", job.retry_count),
            new_stage=S.CLASSIFICATION,
            document_status=DocumentStatus.PROCESSING,
        )

    def _upload_problems(self, document: Document) -> List[str]:
        problems = []
        size = document.file_size or 0
        limit = self.settings.max_file_size_bytes
        if size == 0:
            problems.append("File is empty")
        elif size > limit:
            problems.append(
                f"File size ({size / (1024 * 1024):.2f}MB) exceeds maximum allowed size ({limit / (1024 * 1024):.2f}MB)"
            )

        allowed = self.settings.allowed_mime_types
        if document.mime_type not in allowed:
            problems.append(
                f"File type '{document.mime_type or 'unknown'}' is not supported. Allowed types: {', '.join(allowed)}"
            )
        return problems

    async def _run_llm_stage(
        self,
        session: AsyncSession,
        job: ProcessingJob,
        document: Document,
        stage: PipelineStage,
        attempt_id: str,
        external_event_id: str,
    ) -> StageOutcome:
        ctx = job.stage_context or {}

        try:
            providers = self.stage_providers.get(stage) or []
            if not providers:
                raise ConfigurationError(f"No providers configured for stage {stage.value}")
            prompt = await PromptResolver(session).render_for_stage(stage, self._prompt_variables(document, ctx))
        except ConfigurationError as e:
            LOGGER.error(f"Configuration error in {stage.value}: {e.message}", extra={"document_id": str(document.id)})
            return self._failure(stage, job, e.message, self.policy.is_transient(e))
        # Nothing is held open while providers run
        await session.commit()

        content = None
        if stage in CONTENT_STAGES:
            try:
                content = await self.storage.get_object(document.storage_bucket, document.storage_key)
            except StorageError as e:
                return self._failure(stage, job, e.message, self.policy.is_transient(e))

        doc_context = DocumentContext(
            document_id=str(document.id),
            stage=stage,
            mime_type=document.mime_type,
            filename=document.original_filename,
            document_type=document.document_type,
            content=content,
        )
        results = await self.orchestrator.invoke_all(
            prompt.text, doc_context, providers, parse_output=self._output_parser(stage, document)
        )

        consensus = self.scorer.score(
            results, validation=stage in VALIDATION_STAGES, fields=AGREEMENT_FIELDS.get(stage)
        )
        await AuditRecorder(session, self.settings.sensitive_stages).record_round(
            document_id=document.id,
            stage=stage,
            attempt_id=attempt_id,
            external_event_id=external_event_id,
            prompt=prompt,
            results=results,
            consensus=consensus,
        )

        if not any(r.succeeded for r in results):
            return self._failure(stage, job, _summarize_errors(results), self.policy.round_is_transient(results))

        try:
            return self._apply_round(job, document, stage, consensus, results)
        except MalformedOutputError as e:
            return self._failure(stage, job, e.message, self.policy.is_transient(e))

    def _apply_round(
        self,
        job: ProcessingJob,
        document: Document,
        stage: PipelineStage,
        consensus: ConsensusResult,
        results: List[ProviderCallResult],
    ) -> StageOutcome:
        merged = consensus.merged_data
        round_notes: Dict[str, Any] = {
            "confidence": consensus.confidence,
            "agreement": consensus.agreement_level,
            "providers": [f"{r.provider}/{r.model}" for r in results if r.succeeded],
            "winner": consensus.winner,
        }

        if stage == S.CLASSIFICATION:
            document.document_type = DocumentType(merged["document_type"])
            round_notes["document_type"] = document.document_type.value
            round_notes["reasoning"] = merged.get("reasoning", "")

        elif stage == S.EXTRACTION:
            parsed = parse_parsed_data(document.document_type or DocumentType.OTHER, merged)
            document.parsed_data = dump_parsed_data(parsed)
            round_notes["fields_extracted"] = _field_count(document.parsed_data)
            if round_notes["fields_extracted"] == 0:
                LOGGER.warning(
                    "Extraction returned zero fields, forcing low confidence",
                    extra={"document_id": str(document.id), "winner": consensus.winner},
                )
                round_notes["confidence"] = min(consensus.confidence, EMPTY_EXTRACTION_CONFIDENCE)

        elif stage == S.CORRECTION:
            parsed = parse_parsed_data(document.document_type or DocumentType.OTHER, merged["corrected_data"])
            document.parsed_data = dump_parsed_data(parsed)
            job.correction_cycles += 1
            round_notes["changes"] = merged.get("changes", [])
            round_notes["cycle"] = job.correction_cycles

        elif stage in VALIDATION_STAGES:
            rule_issues = validate_business_rules(document.document_type, document.parsed_data or {})
            issues = _merge_issues(merged.get("issues", []), rule_issues)
            is_valid = bool(merged.get("is_valid")) and not any(i["severity"] == "error" for i in rule_issues)
            confidence = adjust_for_business_rules(consensus.confidence, rule_issues)
            round_notes.update(
                confidence=confidence,
                llm_confidence=consensus.confidence,
                is_valid=is_valid,
                issues=issues,
                business_rule_issues=len(rule_issues),
            )
            decision = self.policy.on_round(
                stage,
                ConsensusResult(
                    agreement_level=consensus.agreement_level,
                    merged_data=merged,
                    confidence=confidence,
                    provider_weights=consensus.provider_weights,
                    winner=consensus.winner,
                ),
                job.retry_count,
                is_valid=is_valid,
            )
            return self._validation_outcome(job, document, stage, decision, round_notes)

        decision = self.policy.on_round(stage, consensus, job.retry_count)
        return StageOutcome(policy=decision, new_stage=NEXT_STAGE[stage], notes={stage.value: round_notes})

    def _validation_outcome(
        self,
        job: ProcessingJob,
        document: Document,
        stage: PipelineStage,
        decision: PolicyDecision,
        round_notes: Dict[str, Any],
    ) -> StageOutcome:
        notes = {stage.value: round_notes, "last_validation": round_notes}

        if decision.decision == Decision.PROCEED:
            return StageOutcome(policy=decision, new_stage=S.FINALIZE, notes=notes)

        if stage == S.VALIDATION or not self.policy.corrections_exhausted(job.correction_cycles):
            return StageOutcome(policy=decision, new_stage=S.CORRECTION, notes=notes)

        # Corrections exhausted: escalate to a human
        ctx = {**(job.stage_context or {}), **notes}
        breakdown = self._overall_confidence(ctx, document, correction_failed=True)
        document.confidence = breakdown.overall
        notes["finalize"] = {**breakdown.as_dict(), "review_reasons": ["correction cycles exhausted"]}
        LOGGER.warning(
            "Correction cycles exhausted, document needs review",
            extra={"document_id": str(document.id), "cycles": job.correction_cycles},
        )
        return StageOutcome(
            policy=decision,
            new_stage=S.NEEDS_REVIEW,
            document_status=DocumentStatus.NEEDS_REVIEW,
            needs_review=True,
            notes=notes,
        )

    def _run_finalize(self, job: ProcessingJob, document: Document) -> StageOutcome:
        ctx = job.stage_context or {}
        breakdown = self._overall_confidence(ctx, document, correction_failed=False)
        verdict = self.review_gate.evaluate(breakdown.overall, _agreement_levels(ctx))

        document.confidence = breakdown.overall
        status = DocumentStatus.NEEDS_REVIEW if verdict.needs_review else DocumentStatus.COMPLETED
        LOGGER.info(
            "Document finalized",
            extra={
                "document_id": str(document.id),
                "confidence": breakdown.overall,
                "needs_review": verdict.needs_review,
                "reasons": verdict.reasons,
            },
        )
        return StageOutcome(
            policy=PolicyDecision(Decision.PROCEED, "finalized", job.retry_count),
            new_stage=S.DONE,
            document_status=status,
            needs_review=verdict.needs_review,
            notes={"finalize": {**breakdown.as_dict(), "review_reasons": verdict.reasons}},
        )

    def _overall_confidence(self, ctx: Dict[str, Any], document: Document, correction_failed: bool):
        validation = ctx.get("last_validation") or {}
        correction = ctx.get(S.CORRECTION.value)
        return calculate_overall_confidence(
            classification_confidence=(ctx.get(S.CLASSIFICATION.value) or {}).get("confidence"),
            extraction_confidence=(ctx.get(S.EXTRACTION.value) or {}).get("confidence"),
            fields_extracted=_field_count(document.parsed_data),
            validation_confidence=validation.get("confidence"),
            is_valid=bool(validation.get("is_valid")),
            issues=validation.get("issues", []),
            correction_confidence=(correction or {}).get("confidence"),
            correction_applied=correction is not None,
            correction_failed=correction_failed,
        )

    def _failure(self, stage: PipelineStage, job: ProcessingJob, message: str, transient: bool) -> StageOutcome:
        decision = self.policy.on_failure(message, job.retry_count, transient)
        if decision.decision == Decision.RETRY:
            LOGGER.warning(
                f"{stage.value} attempt failed, retrying in {decision.delay_seconds}s",
                extra={"document_id": str(job.document_id), "retry_count": decision.retry_count, "error": message},
            )
            return StageOutcome(policy=decision, new_stage=stage)

        LOGGER.error(
            f"{stage.value} failed permanently",
            extra={"document_id": str(job.document_id), "retry_count": decision.retry_count, "error": message},
        )
        return StageOutcome(
            policy=decision,
            new_stage=S.FAILED,
            document_status=DocumentStatus.FAILED,
            needs_review=True if decision.exhausted else None,
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def _commit(
        self,
        session: AsyncSession,
        job: ProcessingJob,
        document: Document,
        stage: PipelineStage,
        attempt_id: str,
        outcome: StageOutcome,
    ) -> AdvanceResult:
        decision = outcome.policy
        new_stage = outcome.new_stage
        check_transition(stage, new_stage)
        now = self.clock()

        job.retry_count = max(job.retry_count, decision.retry_count)
        job.current_stage = new_stage
        if decision.decision == Decision.RETRY:
            job.stage_status = StageStatus.RETRYING
        elif new_stage == S.FAILED:
            job.stage_status = StageStatus.FAILED
            job.error_message = f"{stage.value}: {decision.reason}"
        else:
            job.stage_status = StageStatus.PENDING if not new_stage.is_terminal else StageStatus.SUCCESS

        document.status = outcome.document_status or document_status_for(new_stage)
        if outcome.needs_review is not None:
            document.needs_review = outcome.needs_review
        if document.status == DocumentStatus.COMPLETED:
            document.completed_at = now

        next_command = None
        if not new_stage.is_terminal:
            next_attempt = attempt_id_for(str(document.id), new_stage, job.correction_cycles, job.retry_count)
            next_command = RunStageCommand(
                document_id=str(document.id),
                stage=new_stage,
                attempt_id=next_attempt,
                external_event_id=f"{job.external_job_id}:{next_attempt}",
            )
            job.next_attempt_id = next_attempt
        else:
            job.next_attempt_id = None
            job.completed_at = now

        result = AdvanceResult(
            document_id=str(document.id),
            new_stage=new_stage,
            new_document_status=document.status,
            decision=decision.decision.value,
            next_command=next_command,
            retry_delay_seconds=decision.delay_seconds if decision.decision == Decision.RETRY else None,
        )
        cached = result.model_dump(mode="json")

        ctx = copy.deepcopy(job.stage_context or {})
        ctx.update(outcome.notes)
        round_notes = outcome.notes.get(stage.value)
        if round_notes and round_notes.get("agreement") is not None:
            ctx.setdefault("agreements", []).append({"stage": stage.value, "agreement": round_notes["agreement"]})
        ctx.setdefault("outcomes", {})[attempt_id] = cached
        job.stage_context = ctx
        job.last_stage = stage
        job.last_attempt_id = attempt_id
        job.last_outcome = cached
        job.lease_owner = None
        job.lease_expires_at = None

        await session.commit()

        LOGGER.info(
            f"Advanced {stage.value} -> {new_stage.value}",
            extra={
                "document_id": str(document.id),
                "decision": decision.decision.value,
                "reason": decision.reason,
                "document_status": document.status.value,
                "retry_count": job.retry_count,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Prompt context and output parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _prompt_variables(document: Document, ctx: Dict[str, Any]) -> Dict[str, Any]:
        parsed = {k: v for k, v in (document.parsed_data or {}).items() if k != "document_type"}
        last_validation = ctx.get("last_validation") or {}
        return {
            "document_id": str(document.id),
            "filename": document.original_filename,
            "mime_type": document.mime_type or "",
            "document_type": document.document_type.value if document.document_type else "",
            "extracted_data": json.dumps(parsed, indent=2, sort_keys=True, default=str),
            "validation_issues": json.dumps(last_validation.get("issues", []), indent=2, default=str),
            "business_rules": describe_business_rules(document.document_type),
        }

    @staticmethod
    def _output_parser(stage: PipelineStage, document: Document) -> OutputParser:
        """Per-provider payload validation; a bad payload fails only that provider."""
        document_type = document.document_type or DocumentType.OTHER

        def validate(model, data: Dict[str, Any]) -> Dict[str, Any]:
            try:
                return model.model_validate(data).model_dump(mode="json")
            except ValidationError as e:
                raise MalformedOutputError(
                    f"Invalid {stage.value.lower()} payload: {e.error_count()} validation error(s)",
                    original_error=e,
                ) from e

        def parse(data: Dict[str, Any]) -> Dict[str, Any]:
            if stage == S.CLASSIFICATION:
                return validate(ClassificationPayload, data)
            if stage in VALIDATION_STAGES:
                return validate(ValidationPayload, data)
            if stage == S.CORRECTION:
                payload = validate(CorrectionPayload, data)
                corrected = dump_parsed_data(parse_parsed_data(document_type, payload["corrected_data"]))
                return {**payload, "corrected_data": corrected}
            parsed = dump_parsed_data(parse_parsed_data(document_type, data))
            # Agreement is scored on extracted fields only
            parsed.pop("document_type", None)
            return parsed

        return parse


def _field_count(parsed_data: Optional[Dict[str, Any]]) -> int:
    return sum(1 for key, value in (parsed_data or {}).items() if key != "document_type" and value is not None)


def _agreement_levels(ctx: Dict[str, Any]) -> List[float]:
    return [entry["agreement"] for entry in ctx.get("agreements", []) if entry.get("agreement") is not None]


def _merge_issues(llm_issues: List[Dict[str, Any]], rule_issues: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
    for issue in [*rule_issues, *llm_issues]:
        key = (str(issue.get("field", "")).casefold(), str(issue.get("issue", "")).casefold(), issue.get("severity"))
        seen.setdefault(key, issue)
    return sorted(seen.values(), key=lambda i: (SEVERITY_ORDER.get(i.get("severity"), 9), str(i.get("field", ""))))


def _summarize_errors(results: List[ProviderCallResult]) -> str:
    if not results:
        return "no providers were called"
    return "; ".join(f"{r.provider}/{r.model}: {r.error}" for r in results)


def create_stage_engine(
    app_settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> StageTransitionEngine:
    """Engine wired to the configured database, providers and storage."""
    app_settings = app_settings or settings
    registry = ProviderRegistry.from_settings(
        app_settings.llm,
        app_settings.pipeline.stage_providers,
        timeout=app_settings.pipeline.provider_call_timeout_seconds,
    )
    return StageTransitionEngine(
        session_factory=session_factory or async_session_maker,
        registry=registry,
        storage=StorageService(app_settings.storage),
        pipeline_settings=app_settings.pipeline,
    )
