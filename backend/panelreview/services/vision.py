"""视觉分析提供商（外部协作方）。

提供商只负责把「图片 + 分析提示词」送给视觉模型并返回原始文本，
解析与归一化统一在 AnalysisGateway 中完成。
"""
from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path
from typing import Any, Protocol

import httpx

from panelreview.config import Settings

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


class VisionProviderError(RuntimeError):
    """视觉服务调用失败（网络、超时、鉴权、响应格式）"""


class VisionProvider(Protocol):
    name: str

    async def complete(self, *, image_path: str, prompt: str) -> str: ...


def _read_image_base64(image_path: str) -> str:
    try:
        data = Path(image_path).read_bytes()
    except OSError as exc:
        raise VisionProviderError(f"Cannot read image file {image_path}: {exc}") from exc
    return base64.b64encode(data).decode("utf-8")


def _media_type(image_path: str) -> str:
    return _MEDIA_TYPES.get(Path(image_path).suffix.lower(), "image/png")


class OllamaVisionProvider:
    """Ollama 视觉模型（llava 等），本地或 RunPod 部署"""

    name = "ollama"

    def __init__(self, settings: Settings, *, max_retries: int | None = None):
        self.settings = settings
        self.max_retries = settings.vision_max_retries if max_retries is None else max_retries

    def _build_url(self) -> str:
        return f"{self.settings.ollama_base_url.rstrip('/')}/api/generate"

    def _is_retryable_status(self, status_code: int) -> bool:
        return status_code in {408, 429, 500, 502, 503, 504}

    async def _post_json_with_retry(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        delay_s = 0.5
        last_exc: Exception | None = None

        async with httpx.AsyncClient(timeout=self.settings.request_timeout_s) as client:
            for attempt in range(self.max_retries + 1):
                try:
                    res = await client.post(url, json=payload)
                    if self._is_retryable_status(res.status_code) and attempt < self.max_retries:
                        await asyncio.sleep(delay_s)
                        delay_s = min(delay_s * 2, 8.0)
                        continue
                    res.raise_for_status()
                    return res.json()
                except httpx.InvalidURL as exc:
                    raise VisionProviderError(f"Invalid Ollama URL {url}: {exc}") from exc
                except httpx.HTTPError as exc:
                    last_exc = exc
                    if attempt >= self.max_retries:
                        break
                    status = getattr(getattr(exc, "response", None), "status_code", None)
                    if isinstance(status, int) and not self._is_retryable_status(status):
                        break
                    await asyncio.sleep(delay_s)
                    delay_s = min(delay_s * 2, 8.0)
                except ValueError as exc:
                    raise VisionProviderError(f"Ollama returned non-JSON body: {exc}") from exc

        raise VisionProviderError(f"Ollama request failed: {last_exc}") from last_exc

    async def complete(self, *, image_path: str, prompt: str) -> str:
        payload = {
            "model": self.settings.ollama_vision_model,
            "prompt": prompt,
            "images": [_read_image_base64(image_path)],
            "stream": False,
            # 低温度让评分更稳定
            "options": {"temperature": 0.3},
        }
        data = await self._post_json_with_retry(self._build_url(), payload)
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise VisionProviderError(f"Ollama response missing text: {str(data)[:200]}")
        return text


class ClaudeVisionProvider:
    """Claude Vision（Anthropic Messages API）"""

    name = "claude"

    def __init__(self, settings: Settings, *, max_tokens: int = 2048):
        self.settings = settings
        self.max_tokens = max_tokens
        self._client: Any | None = None
        self._anthropic: Any | None = None

    def _import_anthropic(self) -> Any:
        if self._anthropic is not None:
            return self._anthropic
        try:
            import anthropic  # type: ignore
        except ModuleNotFoundError as exc:  # pragma: no cover
            raise VisionProviderError(
                "Missing dependency `anthropic`. Install optional deps: `pip install 'panelreview-backend[claude]'`."
            ) from exc
        self._anthropic = anthropic
        return anthropic

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        api_key = self.settings.anthropic_credentials()
        if not api_key:
            raise VisionProviderError(
                "Anthropic credentials missing: set `anthropic_api_key` or `anthropic_auth_token`."
            )
        anthropic = self._import_anthropic()

        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "timeout": self.settings.request_timeout_s,
            "max_retries": self.settings.vision_max_retries,
        }
        if self.settings.anthropic_base_url:
            kwargs["base_url"] = self.settings.anthropic_base_url
        headers = self.settings.anthropic_headers()
        if headers:
            kwargs["default_headers"] = headers

        self._client = anthropic.AsyncAnthropic(**kwargs)
        return self._client

    async def complete(self, *, image_path: str, prompt: str) -> str:
        client = self._get_client()
        anthropic = self._import_anthropic()

        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": _media_type(image_path),
                    "data": _read_image_base64(image_path),
                },
            },
            {"type": "text", "text": prompt},
        ]
        try:
            message = await client.messages.create(
                model=self.settings.anthropic_vision_model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as exc:
            raise VisionProviderError(f"Claude Vision request failed: {exc}") from exc

        text_parts = [
            getattr(block, "text", "")
            for block in getattr(message, "content", []) or []
            if getattr(block, "type", None) == "text"
        ]
        if not text_parts:
            raise VisionProviderError("Unexpected response type from Claude Vision")
        return "".join(text_parts)


class FallbackVisionProvider:
    """按顺序尝试多个提供商，前一个失败时记录日志并切换到下一个"""

    def __init__(self, providers: list[VisionProvider]):
        if not providers:
            raise ValueError("FallbackVisionProvider requires at least one provider")
        self.providers = providers
        self.name = "+".join(p.name for p in providers)

    async def complete(self, *, image_path: str, prompt: str) -> str:
        errors: list[str] = []
        for idx, provider in enumerate(self.providers):
            try:
                return await provider.complete(image_path=image_path, prompt=prompt)
            except VisionProviderError as exc:
                errors.append(f"{provider.name}: {exc}")
                if idx + 1 < len(self.providers):
                    logger.warning(
                        "Vision provider %s failed, falling back to %s: %s",
                        provider.name,
                        self.providers[idx + 1].name,
                        exc,
                    )
        raise VisionProviderError("; ".join(errors))


def create_vision_provider(settings: Settings) -> VisionProvider:
    """根据配置创建视觉分析提供商。

    ollama 为首选时，如配置了 Anthropic 凭证则自动追加 Claude 作为兜底。
    """
    if settings.vision_provider == "claude":
        return ClaudeVisionProvider(settings)

    ollama = OllamaVisionProvider(settings)
    if settings.anthropic_credentials():
        return FallbackVisionProvider([ollama, ClaudeVisionProvider(settings)])
    return ollama
