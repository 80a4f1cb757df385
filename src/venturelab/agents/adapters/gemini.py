"""
Gemini adapter for venturelab.

Talks to the Gemini REST API directly over httpx:
- ``models/{model}:generateContent`` for short generation calls
- ``fileSearchStores`` for the documents a research task may search
- ``interactions`` with a background research agent for long-running research

Research starts are spaced out by a shared RequestThrottle.
"""

import asyncio
import json
import logging
import re
from typing import Any

import httpx

from ...pipeline.errors import ContentGenerationError, DeepResearchError, RateLimitError
from ...pipeline.models import DeepResearchHandle
from ..protocol import ResearchFile, ResearchStatus
from .base import AgentAuthenticationError, BaseAdapter, RequestThrottle

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_RESEARCH_AGENT = "deep-research-pro-preview-12-2025"

_STATUS_MAP: dict[str, str] = {
    "completed": "completed",
    "failed": "failed",
    "cancelled": "failed",
    "running": "running",
    "in_progress": "running",
}


def map_interaction_status(raw: dict[str, Any]) -> ResearchStatus:
    """
    Convert an interaction resource into a ResearchStatus.

    Unknown states count as pending. On completion the text of the last
    output is the result.
    """
    status = _STATUS_MAP.get(str(raw.get("status", "")).lower(), "pending")
    if status == "completed":
        outputs = raw.get("outputs") or []
        result = ""
        if outputs:
            last = outputs[-1]
            result = last.get("text") or last.get("content") or ""
        return ResearchStatus(status="completed", result=result)
    if status == "failed":
        error = raw.get("error")
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error)
        return ResearchStatus(status="failed", error=str(error or "Deep research failed"))
    return ResearchStatus(status=status)  # type: ignore[arg-type]


def _safe_display_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


class GeminiAdapter(BaseAdapter):
    """Gemini backend implementing the ResearchClient protocol."""

    API_KEY_ENV = "GEMINI_API_KEY"

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        api_key: str | None = None,
        research_agent: str = DEFAULT_RESEARCH_AGENT,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        max_retries: int = 3,
        throttle: RequestThrottle | None = None,
        upload_poll_interval: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Gemini adapter.

        Args:
            model: Model used for generate_content
            api_key: Gemini API key
            research_agent: Agent name for background research interactions
            base_url: API root including version
            timeout: Per-request timeout in seconds
            max_retries: Attempts for transient failures
            throttle: Shared throttle for research starts (default: 6s spacing)
            upload_poll_interval: Seconds between upload operation checks
            transport: Optional httpx transport (used by tests)
        """
        super().__init__(model, api_key, max_retries=max_retries)
        self.research_agent = research_agent
        self.base_url = base_url.rstrip("/")
        self.upload_base_url = self.base_url.replace("/v1", "/upload/v1", 1)
        self.timeout = timeout
        self.throttle = throttle or RequestThrottle(6.0)
        self.upload_poll_interval = upload_poll_interval
        self._transport = transport

    @property
    def name(self) -> str:
        return f"gemini:{self.model}"

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key or ""}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=self._headers(), transport=self._transport)

    def _check_response(self, response: httpx.Response, action: str) -> None:
        if response.status_code in (401, 403):
            raise AgentAuthenticationError(provider="Gemini", api_key_env=self.API_KEY_ENV)
        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitError(
                f"Gemini rate limit during {action}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 400:
            raise RuntimeError(f"Gemini API error during {action} ({response.status_code}): {response.text}")

    async def _request(self, method: str, url: str, action: str, **kwargs: Any) -> dict[str, Any]:
        async def send() -> dict[str, Any]:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
            self._check_response(response, action)
            if not response.content:
                return {}
            return response.json()

        return await self._with_retry(send)

    # --- Synchronous generation ---

    async def generate_content(self, prompt: str) -> str:
        """Generate text for a prompt."""
        try:
            data = await self._request(
                "POST",
                f"{self.base_url}/models/{self.model}:generateContent",
                "generate_content",
                json={"contents": [{"role": "user", "parts": [{"text": prompt}]}]},
            )
        except AgentAuthenticationError:
            raise
        except Exception as e:
            raise ContentGenerationError(f"Content generation failed: {e}") from e

        candidates = data.get("candidates") or []
        parts = (candidates[0].get("content") or {}).get("parts", []) if candidates else []
        text = "".join(part.get("text", "") for part in parts)
        if not text:
            raise ContentGenerationError("Content generation returned no text", details={"model": self.model})
        return text

    # --- File search stores ---

    async def create_file_search_store(self, display_name: str) -> str:
        data = await self._request(
            "POST",
            f"{self.base_url}/fileSearchStores",
            "create_file_search_store",
            json={"displayName": display_name},
        )
        store_name = data["name"]
        logger.info(f"Created file search store {store_name}")
        return store_name

    async def upload_file(self, store_name: str, file: ResearchFile) -> None:
        """Upload one document and wait for its indexing operation to finish."""
        metadata = {"displayName": file.name}
        operation = await self._request(
            "POST",
            f"{self.upload_base_url}/{store_name}:uploadToFileSearchStore",
            "upload_file",
            files={
                "metadata": (None, json.dumps(metadata), "application/json"),
                "file": (f"{_safe_display_name(file.name)}.txt", file.content.encode("utf-8"), "text/plain"),
            },
        )
        while not operation.get("done", False):
            logger.debug(f"Waiting for {file.name} upload...")
            await asyncio.sleep(self.upload_poll_interval)
            operation = await self._request("GET", f"{self.base_url}/{operation['name']}", "get_operation")
        if operation.get("error"):
            raise DeepResearchError(f"Upload of {file.name} failed: {operation['error']}")
        logger.debug(f"Uploaded {file.name} ({len(file.content)} chars)")

    async def delete_file_search_store(self, store_name: str) -> None:
        """Delete a store; failures are logged, not raised."""
        try:
            await self._request(
                "DELETE",
                f"{self.base_url}/{store_name}",
                "delete_file_search_store",
                params={"force": "true"},
            )
            logger.info(f"Deleted file search store {store_name}")
        except Exception as e:
            logger.warning(f"Failed to delete file search store {store_name}: {e}")

    # --- Deep research ---

    async def start_deep_research(
        self,
        prompt: str,
        files: list[ResearchFile],
        store_name: str,
    ) -> DeepResearchHandle:
        """Create a store, upload the files and start a background research interaction."""
        store = await self.create_file_search_store(store_name)
        try:
            for file in files:
                await self.upload_file(store, file)

            await self.throttle.wait()
            data = await self._request(
                "POST",
                f"{self.base_url}/interactions",
                "start_deep_research",
                json={
                    "input": prompt,
                    "agent": self.research_agent,
                    "background": True,
                    "tools": [{"type": "file_search", "file_search_store_names": [store]}],
                },
            )
        except Exception:
            await self.delete_file_search_store(store)
            raise

        interaction_id = data.get("id")
        if not interaction_id:
            await self.delete_file_search_store(store)
            raise DeepResearchError("Research start returned no interaction id")

        logger.info(f"Started deep research {interaction_id} ({len(files)} files)")
        return DeepResearchHandle(interaction_id=interaction_id, file_search_store_name=store)

    async def check_deep_research(self, handle: DeepResearchHandle) -> ResearchStatus:
        data = await self._request(
            "GET",
            f"{self.base_url}/interactions/{handle.interaction_id}",
            "check_deep_research",
        )
        return map_interaction_status(data)

    async def cleanup_deep_research(self, handle: DeepResearchHandle) -> None:
        if handle.file_search_store_name:
            await self.delete_file_search_store(handle.file_search_store_name)
