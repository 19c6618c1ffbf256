# shared/llm_client.py
"""
Centralized OpenAI chat client for the story pipeline.
Every call is routed through call_with_cost so that usage lands in the cost ledger.
"""

import os
from typing import Any, Optional

import httpx

from shared.generation_cost_logger import CostTracking, GenerationCostLogger, call_with_cost

DEFAULT_TEXT_MODEL = "gpt-4.1-mini"
TRANSIENT_STATUS_CODES = (429, 500, 502, 503)


class LLMError(Exception):
    """Base exception for LLM client errors"""

    def __init__(
        self, message: str, provider: str = None, status_code: int = None, retry_after: int = None
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after


def is_transient_error(error: BaseException, transient_codes=TRANSIENT_STATUS_CODES) -> bool:
    """
    True when a provider error is worth retrying.

    Uses the attached status code when there is one, otherwise looks for the
    code in the error message.
    """
    status_code = getattr(error, "status_code", None)
    if status_code:
        return status_code in transient_codes
    message = str(error)
    return any(str(code) in message for code in transient_codes)


def _parse_error_response(response: httpx.Response) -> tuple[str, Optional[int]]:
    try:
        error_data = response.json()
        error_message = error_data.get("error", {}).get("message", response.text)
    except (ValueError, KeyError, TypeError, AttributeError):
        error_message = f"Failed to parse error response: {response.text}"

    retry_after = None
    if response.status_code == 429:
        try:
            retry_after = int(response.headers.get("retry-after", 60))
        except (ValueError, TypeError):
            retry_after = 60

    return error_message, retry_after


class LLMClient:
    """
    Thin async client over OpenAI /v1/chat/completions.

    The API key is read on every call, so a missing key only fails the calls
    that need it and callers can fall back deterministically.
    """

    def __init__(
        self,
        base_url: str = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or os.getenv("OPENAI_BASE_URL") or "https://api.openai.com").rstrip(
            "/"
        )
        self.timeout = timeout
        self.transport = transport

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv("OPENAI_API_KEY")

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        system: str,
        messages: list[dict[str, Any]],
        model: str = DEFAULT_TEXT_MODEL,
        temperature: float = 0.9,
        presence_penalty: float = 0.7,
        frequency_penalty: float = 0.7,
        max_tokens: Optional[int] = None,
        response_format: Optional[dict] = None,
        metadata: Optional[dict[str, str]] = None,
        tracking: Optional[CostTracking] = None,
        cost_logger: Optional[GenerationCostLogger] = None,
    ) -> str:
        """
        Generate a chat completion.

        Args:
            system: System prompt, always sent first
            messages: User/assistant messages (content may be a list of parts for vision)
            model: OpenAI model id
            temperature: Sampling temperature
            presence_penalty: Presence penalty
            frequency_penalty: Frequency penalty
            max_tokens: Completion token cap (omitted when None)
            response_format: Optional OpenAI response_format block
            metadata: Optional request metadata (stored with the completion)
            tracking: Cost attribution for this call
            cost_logger: Ledger override for this call

        Returns:
            Trimmed completion text

        Raises:
            LLMError: Missing key, HTTP failure, or empty content
        """
        api_key = self.api_key
        if not api_key:
            raise LLMError("OPENAI_API_KEY is not set.", provider="openai")

        body: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "presence_penalty": presence_penalty,
            "frequency_penalty": frequency_penalty,
            "messages": [{"role": "system", "content": system}, *messages],
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if response_format is not None:
            body["response_format"] = response_format
        if metadata:
            body["metadata"] = metadata
            body["store"] = True

        async def create_response() -> dict:
            return await self._post_chat(api_key, body)

        result = await call_with_cost(model, create_response, tracking, cost_logger)

        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None

        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise LLMError("LLM returned empty content.", provider="openai")
        return text

    async def _post_chat(self, api_key: str, body: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/v1/chat/completions",
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {api_key}",
                    },
                    json=body,
                )
        except httpx.TimeoutException:
            raise LLMError("Timeout calling openai API", provider="openai", status_code=408)
        except httpx.RequestError as e:
            raise LLMError(f"Request to openai API failed: {e}", provider="openai", status_code=503)

        if response.status_code != 200:
            error_message, retry_after = _parse_error_response(response)
            raise LLMError(
                f"LLM call failed: {response.status_code} {error_message}",
                provider="openai",
                status_code=response.status_code,
                retry_after=retry_after,
            )

        try:
            return response.json()
        except ValueError:
            raise LLMError("openai API returned a non-JSON body", provider="openai", status_code=503)


# Global instance
llm_client = LLMClient()
