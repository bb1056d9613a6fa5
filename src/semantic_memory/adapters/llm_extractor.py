"""Fact extraction and merge classification over the Anthropic Messages API.

Configuration via SEMANTIC_MEMORY_LLM_* env vars:
- SEMANTIC_MEMORY_LLM_BASE_URL: API URL (default: https://api.anthropic.com, or a proxy)
- SEMANTIC_MEMORY_LLM_API_KEY: API key (optional when a proxy injects it)
- SEMANTIC_MEMORY_LLM_MODEL: model id
"""

import logging

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import AdapterConnectionError, AdapterError, ClassificationError, TransientAdapterError
from ..models.actions import ClassificationHint
from ..models.memory import MemoryItem
from ..models.results import CandidateFact
from ..prompts import build_classify_prompt, build_extraction_prompt
from ..utils.json_parsing import parse_classification, parse_facts

logger = logging.getLogger(__name__)

ADAPTER_NAME = "llm"
ANTHROPIC_VERSION = "2023-06-01"


def is_retryable_error(exception: BaseException) -> bool:
    """Timeouts, 429 and 5xx responses are transient; everything else is permanent."""
    if isinstance(exception, httpx.TimeoutException):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        return status == 429 or 500 <= status < 600
    return False


class AnthropicFactExtractor:
    """FactExtractor backed by an Anthropic-compatible Messages endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api.anthropic.com",
        model: str = "claude-3-5-haiku-20241022",
        max_tokens: int = 1024,
        temperature: float = 0.0,
        timeout: float = 30.0,
        custom_fact_extraction_prompt: str | None = None,
        custom_update_memory_prompt: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.custom_fact_extraction_prompt = custom_fact_extraction_prompt
        self.custom_update_memory_prompt = custom_update_memory_prompt
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        # Add API key header only if provided (proxy might not need it)
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    @retry(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _post(self, payload: dict) -> dict:
        response = await self._get_client().post(f"{self.base_url}/v1/messages", json=payload, headers=self._headers())
        response.raise_for_status()
        return response.json()

    async def _complete(self, prompt: str) -> str:
        """Send one user message and return the text of the first text block."""
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
        }

        try:
            data = await self._post(payload)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"LLM request failed with HTTP {status}")
            if status in (401, 403):
                raise AdapterConnectionError(ADAPTER_NAME, f"authentication failed (HTTP {status})") from e
            if is_retryable_error(e):
                raise TransientAdapterError(ADAPTER_NAME, f"HTTP {status} after retries") from e
            raise AdapterError(ADAPTER_NAME, f"HTTP {status}: {e.response.text[:200]}") from e
        except httpx.TimeoutException as e:
            logger.error(f"LLM request timed out after {self.timeout}s")
            raise TransientAdapterError(ADAPTER_NAME, f"timeout after {self.timeout}s") from e
        except httpx.TransportError as e:
            logger.error(f"LLM endpoint unreachable: {type(e).__name__}")
            raise AdapterConnectionError(ADAPTER_NAME, f"cannot reach {self.base_url}: {e}") from e
        except ValueError as e:
            raise AdapterError(ADAPTER_NAME, f"response is not JSON: {e}") from e

        content_blocks = data.get("content", []) if isinstance(data, dict) else []
        text_block = next((block for block in content_blocks if block.get("type") == "text"), None)
        if not text_block:
            logger.warning("LLM response: no text block in content")
            return ""
        return text_block.get("text", "").strip()

    async def extract(self, text: str) -> list[CandidateFact]:
        if not text or not text.strip():
            return []

        prompt = build_extraction_prompt(text, self.custom_fact_extraction_prompt)
        response = await self._complete(prompt)
        try:
            facts = parse_facts(response)
        except ValueError as e:
            # A malformed extraction leaves nothing to reconcile; that is an adapter fault
            raise AdapterError(ADAPTER_NAME, f"unparseable extraction response: {e}") from e

        logger.debug(f"Extracted {len(facts)} facts ({self.model}, {len(text)} chars input)")
        return facts

    async def classify(self, candidate: str, neighbor: MemoryItem) -> ClassificationHint:
        prompt = build_classify_prompt(candidate, neighbor.id, neighbor.content, self.custom_update_memory_prompt)
        response = await self._complete(prompt)
        if not response:
            raise ClassificationError("Empty classification response")
        return parse_classification(response)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
