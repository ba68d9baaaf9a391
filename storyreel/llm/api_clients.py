"""
Storyreel API Clients

Ports for the three generation capabilities the pipeline consumes, plus
httpx adapters for the providers used in production:

- Anthropic Claude (text)
- Nano Banana (image generation, submit/poll)
- Kling (image-to-video, submit/poll)

Clients hold no per-user state: every call receives a ``CallContext``
carrying the owning user's credential for that call.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
import jwt

from storyreel.core.constants import JobState, Provider
from storyreel.core.exceptions import GenerationProviderError, LLMProviderError
from storyreel.core.logging_config import get_logger

logger = get_logger("llm.api_clients")


# ============================================================================
#  SHARED TYPES
# ============================================================================

@dataclass(frozen=True)
class CallContext:
    """Credential scope of a single client call."""
    user_id: Any
    api_key: str


@dataclass
class TextResponse:
    """Response from a text generation call."""
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


@dataclass
class JobStatus:
    """Provider-neutral status of an external generation job."""
    state: JobState
    result_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state == JobState.RUNNING

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.state == JobState.FAILED


# ============================================================================
#  PORTS
# ============================================================================

class TextGenerationClient(ABC):
    """Synchronous-call text generation."""

    provider = Provider.ANTHROPIC

    @abstractmethod
    async def complete(
        self,
        ctx: CallContext,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> TextResponse:
        pass

    async def chat(
        self,
        ctx: CallContext,
        history: List[Dict[str, str]],
        new_message: str,
        system: Optional[str] = None,
    ) -> TextResponse:
        """Continue a conversation with one more user message."""
        messages = list(history) + [{"role": "user", "content": new_message}]
        return await self.complete(ctx, messages, system=system)


class ImageGenerationClient(ABC):
    """Submit/poll image generation."""

    provider = Provider.NANO_BANANA

    @abstractmethod
    async def submit(
        self,
        ctx: CallContext,
        prompt: str,
        reference_urls: Optional[List[str]] = None,
    ) -> str:
        pass

    @abstractmethod
    async def poll(self, ctx: CallContext, task_id: str) -> JobStatus:
        pass


class VideoGenerationClient(ABC):
    """Submit/poll image-to-video generation."""

    provider = Provider.KLING

    @abstractmethod
    async def submit(
        self,
        ctx: CallContext,
        start_image_url: str,
        end_image_url: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        pass

    @abstractmethod
    async def poll(self, ctx: CallContext, task_id: str) -> JobStatus:
        pass


# ============================================================================
#  HTTP BASE
# ============================================================================

class _HttpClientMixin:
    """Shared httpx plumbing; ``transport`` lets tests swap in a mock."""

    provider_name = "provider"

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            logger.error(f"{self.provider_name} {action} failed: HTTP {response.status_code} {response.text[:500]}")
            raise GenerationProviderError(
                self.provider_name,
                f"{action} failed: {response.text[:500]}",
                response.status_code,
            )


# ============================================================================
#  ANTHROPIC CLIENT
# ============================================================================

class AnthropicClient(TextGenerationClient):
    """Anthropic Messages API client."""

    API_URL = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4096,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._transport = transport

    async def complete(
        self,
        ctx: CallContext,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> TextResponse:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": messages,
        }
        if system:
            body["system"] = system

        headers = {
            "x-api-key": ctx.api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport) as client:
                response = await client.post(self.API_URL, headers=headers, json=body)
        except httpx.HTTPError as e:
            raise LLMProviderError("anthropic", f"request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Anthropic API error: HTTP {response.status_code} {response.text[:500]}")
            raise LLMProviderError("anthropic", f"HTTP {response.status_code}: {response.text[:500]}")

        data = response.json()
        content = data.get("content") or [{}]
        usage = data.get("usage") or {}
        return TextResponse(
            text=content[0].get("text", ""),
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            model=data.get("model", self.model),
        )


# ============================================================================
#  NANO BANANA CLIENT
# ============================================================================

class NanoBananaClient(_HttpClientMixin, ImageGenerationClient):
    """Nano Banana Pro image generation."""

    BASE_URL = "https://api.nanobananaapi.ai/api/v1/nanobanana"
    provider_name = "Nano Banana"

    def __init__(
        self,
        resolution: str = "2K",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.resolution = resolution

    async def submit(
        self,
        ctx: CallContext,
        prompt: str,
        reference_urls: Optional[List[str]] = None,
    ) -> str:
        body: Dict[str, Any] = {"prompt": prompt, "resolution": self.resolution}
        if reference_urls:
            body["imageUrls"] = list(reference_urls)

        headers = {"Authorization": f"Bearer {ctx.api_key}", "Content-Type": "application/json"}
        try:
            async with self._client() as client:
                response = await client.post(f"{self.BASE_URL}/generate-pro", headers=headers, json=body)
        except httpx.HTTPError as e:
            raise GenerationProviderError(self.provider_name, f"submit failed: {e}") from e

        self._raise_for_status(response, "submit")
        data = response.json()
        if data.get("code", 0) not in (0, 200):
            raise GenerationProviderError(self.provider_name, f"API error: {data.get('msg', 'Unknown API error')}")

        task_id = (data.get("data") or {}).get("taskId")
        if not task_id:
            raise GenerationProviderError(self.provider_name, "No taskId in response")
        return task_id

    async def poll(self, ctx: CallContext, task_id: str) -> JobStatus:
        headers = {"Authorization": f"Bearer {ctx.api_key}"}
        try:
            async with self._client(timeout=15.0) as client:
                response = await client.get(
                    f"{self.BASE_URL}/record-info", headers=headers, params={"taskId": task_id}
                )
        except httpx.HTTPError as e:
            raise GenerationProviderError(self.provider_name, f"status check failed: {e}") from e

        self._raise_for_status(response, "status check")
        return self.parse_status(response.json().get("data") or {})

    @staticmethod
    def parse_status(data: Dict[str, Any]) -> JobStatus:
        flag = data.get("successFlag", 0)
        if flag == 1:
            result = data.get("response") or {}
            return JobStatus(
                state=JobState.SUCCEEDED,
                result_url=result.get("resultImageUrl") or result.get("originImageUrl"),
            )
        if flag == 2:
            return JobStatus(state=JobState.FAILED, error=data.get("errorMessage") or "Creation failed")
        if flag == 3:
            return JobStatus(state=JobState.FAILED, error=data.get("errorMessage") or "Generation failed")
        if flag != 0:
            logger.warning(f"Unknown Nano Banana status flag: {flag}")
        return JobStatus(state=JobState.RUNNING)


# ============================================================================
#  KLING CLIENT
# ============================================================================

class KlingClient(_HttpClientMixin, VideoGenerationClient):
    """
    Kling image-to-video generation.

    The vault stores Kling credentials as ``"access_key:secret_key"``; requests
    are signed with a short-lived HS256 token derived from them.
    """

    BASE_URL = "https://api-singapore.klingai.com"
    TOKEN_TTL = 1800
    TOKEN_REFRESH_MARGIN = 300
    DEFAULT_MODEL = "kling-v2-6"
    provider_name = "Kling"

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(timeout=timeout, transport=transport)
        self._tokens: Dict[str, Tuple[str, float]] = {}

    @staticmethod
    def split_credential(raw: str) -> Tuple[str, str]:
        access_key, _, secret_key = (raw or "").partition(":")
        if not access_key or not secret_key:
            raise GenerationProviderError("Kling", "API credentials not configured")
        return access_key, secret_key

    def _token(self, ctx: CallContext) -> str:
        access_key, secret_key = self.split_credential(ctx.api_key)
        now = time.time()

        cached = self._tokens.get(access_key)
        if cached and cached[1] - self.TOKEN_REFRESH_MARGIN > now:
            return cached[0]

        issued = int(now)
        payload = {
            "iss": access_key,
            "exp": issued + self.TOKEN_TTL,
            "nbf": issued - 5,
            "iat": issued,
        }
        token = jwt.encode(payload, secret_key, algorithm="HS256")
        self._tokens[access_key] = (token, issued + self.TOKEN_TTL)
        return token

    @staticmethod
    def build_body(start_image_url: str, end_image_url: Optional[str], params: Dict[str, Any]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model_name": params.get("model_name") or KlingClient.DEFAULT_MODEL,
            "image": start_image_url,
            "mode": params.get("mode") or "std",
            "duration": str(params.get("duration") or "5"),
        }
        if end_image_url:
            body["image_tail"] = end_image_url
        for key in ("prompt", "negative_prompt", "aspect_ratio", "cfg_scale"):
            if params.get(key):
                body[key] = params[key]
        if params.get("enable_audio"):
            body["enable_audio"] = True
        if params.get("camera_control"):
            body["camera_control"] = {"type": params["camera_control"]}
        return body

    async def submit(
        self,
        ctx: CallContext,
        start_image_url: str,
        end_image_url: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        body = self.build_body(start_image_url, end_image_url, params or {})
        headers = {"Authorization": f"Bearer {self._token(ctx)}", "Content-Type": "application/json"}

        try:
            async with self._client() as client:
                response = await client.post(f"{self.BASE_URL}/v1/videos/image2video", headers=headers, json=body)
        except httpx.HTTPError as e:
            raise GenerationProviderError(self.provider_name, f"submit failed: {e}") from e

        self._raise_for_status(response, "submit")
        data = response.json()
        if data.get("code", -1) != 0:
            raise GenerationProviderError(self.provider_name, f"API error: {data.get('message', 'Unknown error')}")

        task_id = (data.get("data") or {}).get("task_id")
        if not task_id:
            raise GenerationProviderError(self.provider_name, "No task_id in response")
        return task_id

    async def poll(self, ctx: CallContext, task_id: str) -> JobStatus:
        headers = {"Authorization": f"Bearer {self._token(ctx)}"}
        try:
            async with self._client(timeout=15.0) as client:
                response = await client.get(f"{self.BASE_URL}/v1/videos/image2video/{task_id}", headers=headers)
        except httpx.HTTPError as e:
            raise GenerationProviderError(self.provider_name, f"status check failed: {e}") from e

        self._raise_for_status(response, "status check")
        return self.parse_status(response.json().get("data") or {})

    @staticmethod
    def parse_status(task: Dict[str, Any]) -> JobStatus:
        status = task.get("task_status", "unknown")
        if status == "succeed":
            videos = (task.get("task_result") or {}).get("videos") or [{}]
            duration = videos[0].get("duration")
            return JobStatus(
                state=JobState.SUCCEEDED,
                result_url=videos[0].get("url"),
                duration_seconds=int(float(duration)) if duration is not None else None,
            )
        if status == "failed":
            return JobStatus(state=JobState.FAILED, error=task.get("task_status_msg"))
        return JobStatus(state=JobState.RUNNING)
