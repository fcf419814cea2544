"""Concurrent fan-out of one stage prompt to several providers."""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from docflow.core.provider_registry import ProviderKey, ProviderRegistry
from docflow.pipeline.confidence import sanitize_confidence
from docflow.schemas.pipeline import DocumentContext, ProviderCallResult
from docflow.utils.exceptions import DocflowError, ProviderCancelledError, ProviderError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

OutputParser = Callable[[Dict[str, Any]], Dict[str, Any]]

_semaphores: Dict[int, asyncio.Semaphore] = {}


def get_llm_semaphore(limit: int) -> asyncio.Semaphore:
    """Process-wide semaphore bounding outbound LLM calls, one per limit value."""
    semaphore = _semaphores.get(limit)
    if semaphore is None:
        semaphore = asyncio.Semaphore(limit)
        _semaphores[limit] = semaphore
    return semaphore


class ProviderInvocationOrchestrator:
    """Runs one consensus round.

    Every configured provider is called concurrently. Each call is bounded
    by ``call_timeout`` and the whole round by ``stage_deadline``; calls
    still running at the deadline are cancelled and reported as failed
    results with ``error_kind="cancelled"``. A failing provider never aborts
    its siblings and nothing is persisted here.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        semaphore: asyncio.Semaphore,
        call_timeout: float = 60.0,
        stage_deadline: float = 120.0,
    ):
        self.registry = registry
        self.semaphore = semaphore
        self.call_timeout = call_timeout
        self.stage_deadline = stage_deadline

    async def invoke_all(
        self,
        rendered_prompt: str,
        context: DocumentContext,
        providers: Sequence[ProviderKey],
        parse_output: Optional[OutputParser] = None,
    ) -> List[ProviderCallResult]:
        """Call every provider and return one result per provider, in order."""
        if not providers:
            return []

        started = time.monotonic()
        tasks = [
            asyncio.create_task(self._call(key, rendered_prompt, context, parse_output))
            for key in providers
        ]
        done, pending = await asyncio.wait(tasks, timeout=self.stage_deadline)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            LOGGER.warning(
                f"Stage deadline of {self.stage_deadline}s exceeded, cancelled {len(pending)} provider call(s)",
                extra={"document_id": context.document_id, "stage": context.stage.value},
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        results = []
        for key, task in zip(providers, tasks):
            if task in done:
                results.append(task.result())
            else:
                cancelled = ProviderCancelledError(
                    f"Cancelled after stage deadline of {self.stage_deadline}s", provider=key[0], model=key[1]
                )
                results.append(
                    ProviderCallResult(
                        provider=key[0],
                        model=key[1],
                        error=cancelled.message,
                        error_kind=cancelled.kind,
                        latency_ms=elapsed_ms,
                    )
                )

        LOGGER.info(
            "Provider round finished",
            extra={
                "document_id": context.document_id,
                "stage": context.stage.value,
                "succeeded": sum(1 for r in results if r.succeeded),
                "failed": sum(1 for r in results if not r.succeeded),
                "elapsed_ms": elapsed_ms,
            },
        )
        return results

    async def _call(
        self,
        key: ProviderKey,
        rendered_prompt: str,
        context: DocumentContext,
        parse_output: Optional[OutputParser],
    ) -> ProviderCallResult:
        llm_provider, llm_model = key
        started = time.monotonic()

        def failed(message: str, kind: str, raw_response: Optional[str] = None) -> ProviderCallResult:
            return ProviderCallResult(
                provider=llm_provider,
                model=llm_model,
                raw_response=raw_response,
                error=message,
                error_kind=kind,
                latency_ms=int((time.monotonic() - started) * 1000),
            )

        raw_response = None
        try:
            provider = self.registry.get(llm_provider, llm_model)
            async with self.semaphore:
                response = await asyncio.wait_for(
                    provider.invoke(rendered_prompt, context, self.call_timeout),
                    timeout=self.call_timeout,
                )
            raw_response = response.raw_response
            data = parse_output(response.extracted_data) if parse_output else response.extracted_data
        except asyncio.TimeoutError:
            return failed(f"{llm_provider}/{llm_model} timed out after {self.call_timeout}s", "timeout")
        except ProviderError as e:
            LOGGER.warning(
                f"Provider {llm_provider}/{llm_model} failed: {e.message}",
                extra={"document_id": context.document_id, "kind": e.kind},
            )
            return failed(e.message, e.kind, raw_response)
        except DocflowError as e:
            return failed(e.message, "permanent", raw_response)
        except Exception as e:
            LOGGER.error(
                f"Unexpected error from provider {llm_provider}/{llm_model}",
                exc_info=True,
                extra={"document_id": context.document_id},
            )
            return failed(f"Unexpected provider error: {e}", "transient", raw_response)

        return ProviderCallResult(
            provider=llm_provider,
            model=llm_model,
            raw_response=raw_response,
            extracted_data=data,
            confidence=sanitize_confidence(response.confidence, llm_provider),
            tokens_used=response.tokens_used,
            cost=response.cost,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

