"""
CAF Copilot Service - Model invoker

Performs one outbound LLM call per stage against an explicitly configured
endpoint. Supports:
- chat: OpenAI-compatible `/chat/completions` (OpenRouter by default)
- text_generation: Hugging Face inference style `{inputs, parameters}`

Failures are returned, not raised:
- NetworkFailure: endpoint unreachable
- UpstreamFailure: non-2xx status, timeout, or a response without completion text
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Literal, Optional, Union

import httpx
from pydantic import BaseModel

from env_loader import env_float, env_int, env_str
from models import NetworkFailure, UpstreamFailure, ValidationFailure
from prompts import PromptPayload

logger = logging.getLogger(__name__)

DEFAULT_CHAT_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
MAX_ERROR_BODY_CHARS = 4000

InvokeResult = Union[str, NetworkFailure, UpstreamFailure, ValidationFailure]


class ModelConfig(BaseModel):
    endpoint: str
    model: str
    api_key: Optional[str] = None
    api_style: Literal["chat", "text_generation"] = "chat"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout_seconds: float = 60.0

    @classmethod
    def from_env(cls, stage_key: str, default_model: str) -> "ModelConfig":
        """
        Resolves `CAF_<STAGE>_*` overrides on top of the shared `CAF_LLM_*` settings.
        """
        prefix = f"CAF_{stage_key.upper()}_"
        shared_endpoint = env_str("CAF_LLM_ENDPOINT", DEFAULT_CHAT_ENDPOINT)
        shared_key = env_str("OPENROUTER_API_KEY") or None
        temperature = os.getenv(f"{prefix}TEMPERATURE")
        max_tokens = os.getenv(f"{prefix}MAX_TOKENS")
        return cls(
            endpoint=env_str(f"{prefix}ENDPOINT", shared_endpoint) or shared_endpoint,
            model=env_str(f"{prefix}MODEL", default_model) or default_model,
            api_key=env_str(f"{prefix}API_KEY") or shared_key,
            api_style=(env_str(f"{prefix}API_STYLE", "chat") or "chat").lower(),
            temperature=env_float(f"{prefix}TEMPERATURE", 0.2) if temperature else None,
            max_tokens=env_int(f"{prefix}MAX_TOKENS", 1200) if max_tokens else None,
            timeout_seconds=max(1.0, env_float("CAF_LLM_TIMEOUT_SECONDS", 60.0)),
        )


def extract_completion_text(data: Any) -> str:
    """
    Pulls the completion text out of chat (`choices[0].message.content`) or
    text-generation (`generated_text` / `text`, optionally inside a list) payloads.
    """
    if isinstance(data, list):
        return extract_completion_text(data[0]) if data else ""
    if not isinstance(data, dict):
        return ""

    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            # Some providers return content as typed parts.
            return "".join(
                str(part.get("text", "")) for part in content if isinstance(part, dict)
            )
        if isinstance(content, str):
            return content
        text = first.get("text")
        return text if isinstance(text, str) else ""

    for key in ("generated_text", "text"):
        value = data.get(key)
        if isinstance(value, str):
            return value
    return ""


class ModelInvoker:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def build_request_body(self, config: ModelConfig, prompt: PromptPayload) -> Dict[str, Any]:
        temperature = (
            config.temperature
            if config.temperature is not None
            else prompt.model_parameters.get("temperature", 0.2)
        )
        max_tokens = (
            config.max_tokens
            if config.max_tokens is not None
            else prompt.model_parameters.get("max_tokens", 1200)
        )

        if config.api_style == "text_generation":
            return {
                "inputs": prompt.rendered_text(),
                "parameters": {
                    "temperature": temperature,
                    "max_new_tokens": max_tokens,
                    "return_full_text": False,
                },
            }

        messages = []
        if prompt.system_instructions:
            messages.append({"role": "system", "content": prompt.system_instructions})
        messages.append({"role": "user", "content": prompt.user_content})
        return {
            "model": config.model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": messages,
        }

    def _headers(self, config: ModelConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "X-Title": "CAF Copilot"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    async def invoke(self, config: ModelConfig, prompt: PromptPayload) -> InvokeResult:
        if config.api_style == "text_generation" and prompt.is_multimodal and len(prompt.user_content) > 1:
            return ValidationFailure(
                message="Image inputs require a chat-style model endpoint.",
                field="api_style",
            )

        body = self.build_request_body(config, prompt)
        try:
            async with httpx.AsyncClient(
                timeout=config.timeout_seconds,
                transport=self._transport,
            ) as client:
                resp = await client.post(config.endpoint, headers=self._headers(config), json=body)
        except httpx.TimeoutException as exc:
            logger.warning(
                "Model call timed out after %.1fs | model=%s endpoint=%s",
                config.timeout_seconds,
                config.model,
                config.endpoint,
            )
            return UpstreamFailure(
                message=f"Model call timed out after {config.timeout_seconds:.1f}s: {exc.__class__.__name__}",
                timeout=True,
            )
        except httpx.HTTPError as exc:
            logger.warning("Model endpoint unreachable | endpoint=%s err=%s", config.endpoint, exc)
            return NetworkFailure(
                message=f"Model endpoint unreachable: {exc}",
                endpoint=config.endpoint,
            )

        body_text = resp.text
        if not resp.is_success:
            logger.warning(
                "Model provider returned HTTP %s | model=%s",
                resp.status_code,
                config.model,
            )
            return UpstreamFailure(
                message=f"Model provider returned HTTP {resp.status_code}.",
                status_code=resp.status_code,
                body=body_text[:MAX_ERROR_BODY_CHARS],
            )

        try:
            data = resp.json()
        except ValueError:
            return UpstreamFailure(
                message="Model provider returned a non-JSON response.",
                status_code=resp.status_code,
                body=body_text[:MAX_ERROR_BODY_CHARS],
            )

        text = extract_completion_text(data)
        if not text.strip():
            return UpstreamFailure(
                message="Model provider returned an empty completion.",
                status_code=resp.status_code,
                body=body_text[:MAX_ERROR_BODY_CHARS],
            )
        return text
