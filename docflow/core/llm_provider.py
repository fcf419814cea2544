"""Provider capability shared by the concrete LLM clients."""

import base64
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from docflow.core.base_llm_client import BaseLLMClient
from docflow.schemas.pipeline import DocumentContext, ProviderResponse
from docflow.utils.exceptions import MalformedOutputError
from docflow.utils.json_parser import parse_json_safely
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

SYSTEM_INSTRUCTION = (
    "You are a document processing assistant. Respond with a single JSON object only, "
    "no prose and no markdown. Always include a top-level \"confidence\" number between "
    "0 and 1 describing how certain you are of the whole answer."
)


class LLMProvider(ABC):
    """One (provider, model) pair able to answer a rendered stage prompt.

    Subclasses only know their wire format: how to build the request body
    and where the text and token usage live in the response. Parsing the
    JSON answer, pulling out the self-reported confidence and pricing the
    call happen here.
    """

    provider: str = ""

    def __init__(
        self,
        client: BaseLLMClient,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4000,
        price_per_1k_tokens: float = 0.0,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.price_per_1k_tokens = price_per_1k_tokens

    @abstractmethod
    def build_request(
        self, rendered_prompt: str, context: DocumentContext
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, str]]]:
        """Return the JSON payload and optional headers for the API call."""

    @abstractmethod
    def read_response(self, response: Dict[str, Any]) -> Tuple[str, int]:
        """Return the answer text and total tokens used."""

    async def invoke(
        self, rendered_prompt: str, context: DocumentContext, timeout: float
    ) -> ProviderResponse:
        """Call the model and normalize its answer.

        Raises:
            MalformedOutputError: If the answer is not a JSON object
            ProviderError: Propagated from the HTTP client
        """
        payload, headers = self.build_request(rendered_prompt, context)
        response = await self.client.call_api(payload, headers=headers, timeout=timeout)
        text, tokens_used = self.read_response(response)

        parsed = parse_json_safely(text)
        if not isinstance(parsed, dict):
            raise MalformedOutputError(
                f"{self.provider}/{self.model} returned non-object output",
                provider=self.provider,
                model=self.model,
            )

        confidence = self._pop_confidence(parsed)
        data = parsed
        # Some models nest the answer under "data"
        if set(parsed) == {"data"} and isinstance(parsed["data"], dict):
            data = parsed["data"]

        return ProviderResponse(
            raw_response=text,
            extracted_data=data,
            confidence=confidence,
            tokens_used=tokens_used,
            cost=round(tokens_used / 1000 * self.price_per_1k_tokens, 6),
        )

    def _pop_confidence(self, parsed: Dict[str, Any]) -> float:
        raw = parsed.pop("confidence", None)
        try:
            confidence = float(raw)
        except (TypeError, ValueError):
            LOGGER.warning(
                "Provider answer carries no usable confidence, assuming 0",
                extra={"provider": self.provider, "model": self.model},
            )
            return 0.0
        if confidence != confidence:
            return 0.0
        return min(1.0, max(0.0, confidence))

    @staticmethod
    def encode_content(context: DocumentContext) -> Optional[str]:
        if not context.content:
            return None
        return base64.b64encode(context.content).decode("ascii")

    @staticmethod
    def is_image(context: DocumentContext) -> bool:
        return bool(context.mime_type and context.mime_type.startswith("image/"))


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions."""

    provider = "openai"

    def build_request(
        self, rendered_prompt: str, context: DocumentContext
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, str]]]:
        user_content: List[Dict[str, Any]] = [{"type": "text", "text": rendered_prompt}]

        encoded = self.encode_content(context)
        if encoded and self.is_image(context):
            user_content.append(
                {"type": "image_url", "image_url": {"url": f"data:{context.mime_type};base64,{encoded}"}}
            )
        elif encoded:
            user_content.append(
                {
                    "type": "file",
                    "file": {
                        "filename": context.filename or "document",
                        "file_data": f"data:{context.mime_type};base64,{encoded}",
                    },
                }
            )

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_INSTRUCTION},
                {"role": "user", "content": user_content},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        return payload, None

    def read_response(self, response: Dict[str, Any]) -> Tuple[str, int]:
        choices = response.get("choices") or []
        if not choices:
            raise MalformedOutputError(
                f"{self.provider} response has no choices",
                provider=self.provider,
                model=self.model,
            )
        content = choices[0].get("message", {}).get("content") or ""
        usage = response.get("usage") or {}
        return content, int(usage.get("total_tokens") or 0)


class OpenRouterProvider(OpenAIProvider):
    """OpenRouter speaks the OpenAI chat completions format."""

    provider = "openrouter"


class AnthropicProvider(LLMProvider):
    """Anthropic messages API."""

    provider = "anthropic"

    def __init__(self, client: BaseLLMClient, model: str, api_version: str = "2023-06-01", **kwargs):
        super().__init__(client, model, **kwargs)
        self.api_version = api_version

    def build_request(
        self, rendered_prompt: str, context: DocumentContext
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, str]]]:
        content: List[Dict[str, Any]] = []

        encoded = self.encode_content(context)
        if encoded:
            block_type = "image" if self.is_image(context) else "document"
            content.append(
                {
                    "type": block_type,
                    "source": {"type": "base64", "media_type": context.mime_type, "data": encoded},
                }
            )
        content.append({"type": "text", "text": rendered_prompt})

        payload = {
            "model": self.model,
            "system": SYSTEM_INSTRUCTION,
            "messages": [{"role": "user", "content": content}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {
            "x-api-key": self.client.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }
        return payload, headers

    def read_response(self, response: Dict[str, Any]) -> Tuple[str, int]:
        blocks = response.get("content") or []
        text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        if not text:
            raise MalformedOutputError(
                f"{self.provider} response has no text content",
                provider=self.provider,
                model=self.model,
            )
        usage = response.get("usage") or {}
        tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
        return text, tokens
