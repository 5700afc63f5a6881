"""OpenAI-compatible completion backend (OpenAI, vLLM, LMStudio, etc.)."""

from typing import Any

import httpx
import structlog

from khitomer.exceptions import CompletionError
from khitomer.providers.base import CompletionBackend

log = structlog.get_logger(__name__)


class OpenAICompatibleBackend(CompletionBackend):
    """Completion backend for servers implementing ``/chat/completions``.

    Sends the system and user prompts as a two-message chat and returns the
    content of the first choice.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4-turbo-preview",
        api_key: str | None = None,
        temperature: float = 0.7,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the backend.

        Args:
            base_url: API base URL (e.g., http://localhost:8000/v1)
            model: Model identifier to use
            api_key: Optional bearer token
            temperature: Sampling temperature
            timeout: Request timeout in seconds
            client: Pre-built HTTP client (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def close(self) -> None:
        await self.client.aclose()

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        log.info("completion_request", model=self.model)

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
        }

        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error("completion_failed", status_code=e.response.status_code)
            raise CompletionError(
                "Completion request failed",
                status_code=e.response.status_code,
                response_text=e.response.text,
            ) from e
        except httpx.RequestError as e:
            log.error("completion_failed", error=str(e))
            raise CompletionError(f"Completion request failed: {e}") from e

        try:
            result = response.json()
        except ValueError as e:
            raise CompletionError("Completion response is not valid JSON", response_text=response.text) from e

        choices = result.get("choices") or []
        if not choices:
            log.error("no_choices_in_response", model=self.model)
            raise CompletionError("No choices returned from completion API")

        content = (choices[0].get("message") or {}).get("content") or ""
        usage = result.get("usage", {})
        log.info("completion_received", model=self.model, tokens=usage.get("total_tokens", 0))
        return content
