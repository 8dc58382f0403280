#!/usr/bin/env python3
"""Async OpenAI-compatible chat helper.

`chat_completion` talks to the configured endpoint (DeepSeek by default via
`OPENAI_BASE_URL`, or Azure OpenAI when `AZURE_ENDPOINT` is set), retries
transient failures with exponential backoff, raises `ContentFilterError` on
policy blocks and returns the assistant text. With `raise_errors=True` the
last failure propagates instead of `None` being returned.
"""
from __future__ import annotations
from typing import List, Dict, Any, Optional

from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from config import config, get_logger
from errors import ContentFilterError, ExtractionError
from utils import RetryHelper

logger = get_logger("llm_client")

_client: Any = None


def _get_client() -> Optional[Any]:
    """Instantiate and cache the async client if an API key is configured."""
    global _client
    if _client is not None:
        return _client
    if not config.OPENAI_API_KEY:
        logger.debug("No LLM API key configured; client will not initialize")
        return None
    if config.AZURE_ENDPOINT:
        if not (config.OPENAI_API_VERSION and config.DEPLOYMENT_NAME):
            logger.warning("AZURE_ENDPOINT set without OPENAI_API_VERSION/DEPLOYMENT_NAME; client will not initialize")
            return None
        _client = AsyncAzureOpenAI(
            api_key=config.OPENAI_API_KEY,
            api_version=config.OPENAI_API_VERSION,
            azure_endpoint=config.AZURE_ENDPOINT,
            timeout=config.LLM_HTTP_TIMEOUT,
        )
    else:
        _client = AsyncOpenAI(
            api_key=config.OPENAI_API_KEY,
            base_url=config.OPENAI_BASE_URL,
            timeout=config.LLM_HTTP_TIMEOUT,
        )
    return _client


def _model_name() -> str:
    if config.AZURE_ENDPOINT and config.DEPLOYMENT_NAME:
        return config.DEPLOYMENT_NAME
    return config.LLM_MODEL


def _content_filter_from(error: Exception) -> Optional[ContentFilterError]:
    body = getattr(error, "body", {}) or {}
    error_obj = body.get("error") if isinstance(body, dict) and "error" in body else body
    if not isinstance(error_obj, dict):
        return None
    inner = error_obj.get("innererror")
    inner_code = inner.get("code") if isinstance(inner, dict) else None
    if error_obj.get("code") == "content_filter" or inner_code == "ResponsibleAIPolicyViolation":
        return ContentFilterError(message=error_obj.get("message", "Content filtered"), details=error_obj)
    return None


def _message_text(choice: Any) -> str:
    message = getattr(choice, "message", None)
    if message is None:
        return ""
    if getattr(message, "refusal", None):
        logger.warning("Refusal in completion: %s", message.refusal)
        return ""
    content = getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [p.get("text", "") for p in content if isinstance(p, dict) and isinstance(p.get("text"), str)]
        return "\n".join(t.strip() for t in parts if t.strip())
    return ""


async def chat_completion(
    messages: List[Dict[str, str]],
    *,
    purpose: str = "generic",
    retries: Optional[int] = None,
    temperature: Optional[float] = None,
    response_format: Optional[Dict[str, Any]] = None,
    raise_errors: bool = False,
    client_override: Optional[Any] = None,
) -> Optional[str]:
    """Run one chat completion and return the assistant text.

    Raises `ContentFilterError` on policy violations regardless of `raise_errors`.
    """
    client = client_override or _get_client()
    if client is None:
        if raise_errors:
            raise ExtractionError("LLM client is not configured (missing API key)")
        logger.warning("LLM client unavailable; skipping %s", purpose)
        return None

    remaining = config.LLM_RETRIES if retries is None else retries
    params: Dict[str, Any] = {"model": _model_name(), "messages": messages}
    if temperature is not None:
        params["temperature"] = temperature
    if response_format is not None:
        params["response_format"] = response_format

    backoff = RetryHelper(max_retries=remaining, base_delay=config.LLM_RETRY_DELAY_BASE)
    attempt = 0
    while True:
        try:
            resp = await client.chat.completions.create(**params)
            choices = getattr(resp, "choices", None) or []
            text = "\n".join(t for t in (_message_text(c) for c in choices) if t).strip()
            if not text:
                finish_reasons = {getattr(c, "finish_reason", None) for c in choices}
                raise ExtractionError(f"empty {purpose} response (finish_reasons={sorted(map(str, finish_reasons))})")
            return text
        except ContentFilterError:
            raise
        except (OpenAIError, ExtractionError) as e:
            filtered = _content_filter_from(e)
            if filtered is not None:
                raise filtered from e
            attempt += 1
            if attempt > remaining:
                logger.error("%s request failed after %d attempt(s): %s", purpose, attempt, e)
                if raise_errors:
                    raise
                return None
            delay = backoff.calculate_delay(attempt - 1)
            logger.warning("%s transient LLM error: %s. Backoff %ss (attempt %d/%d)", purpose, e, delay, attempt, remaining)
            await backoff.sleep_for_attempt(attempt - 1)


__all__ = ["chat_completion"]
