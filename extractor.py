#!/usr/bin/env python3
"""
Structured extraction of announcement pages through the LLM.

A page's text goes out with the extraction prompt and a JSON object comes
back. Each attempt yields ExtractionOk or ExtractionFailed; after the last
failed attempt the page gets a manual-review record instead of an exception.
"""

import json
from dataclasses import dataclass
from string import Template
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import yaml
from openai import OpenAIError

from config import config, get_logger
from errors import ContentFilterError, ExtractionError
from llm_client import chat_completion
from telemetry import trace_span
from utils import strip_query_and_fragment

logger = get_logger("extractor")

ATTACHMENT_EXTENSIONS = ("pdf", "doc", "docx", "xls", "xlsx", "zip", "rar")
FALLBACK_REASON = "AI Parsing Failed - Requires Manual Review"
DEFAULT_SYSTEM_PROMPT = "You are a strict JSON extractor. Output ONLY valid JSON."


def load_prompts() -> Dict[str, str]:
    """Load prompts from the prompt.yaml configuration file."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts or {}
    except FileNotFoundError:
        logger.error(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}")
        return {}
    except PermissionError:
        logger.error(f"No permission to read prompt configuration file at {config.PROMPT_CONFIG_PATH}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}


@dataclass
class ExtractionOk:
    record: Dict[str, Any]


@dataclass
class ExtractionFailed:
    last_error: str


ExtractionOutcome = Union[ExtractionOk, ExtractionFailed]


def fallback_record(url: str, source_label: str) -> Dict[str, Any]:
    """The record stored when extraction failed and a human has to look."""
    return {
        "is_relevant": False,
        "reason": FALLBACK_REASON,
        "school": None,
        "site": source_label,
        "category": None,
        "title": None,
        "publish_date": None,
        "deadline": None,
        "summary": None,
        "key_points": [],
        "url": url,
        "attachments": [],
        "confidence": 0,
    }


def filter_attachments(
    attachments: List[Dict[str, Any]],
    trusted: Optional[List[Dict[str, Any]]] = None,
) -> List[Dict[str, str]]:
    """Keep document-like or trusted links, deduplicated by name and bare URL.

    Trusted attachments (found on the page by the parser) are always kept,
    even when the model left them out.
    """
    trusted = trusted or []
    trusted_urls = {a.get("url") for a in trusted if a.get("url")}
    seen = set()
    result: List[Dict[str, str]] = []

    for att in attachments or []:
        if not isinstance(att, dict) or not att.get("url"):
            continue
        raw_url = str(att["url"])
        bare_url = strip_query_and_fragment(raw_url)
        matched = bare_url.lower().endswith(tuple(f".{ext}" for ext in ATTACHMENT_EXTENSIONS))
        trusted_hit = raw_url in trusted_urls
        if not matched and not trusted_hit and bare_url not in trusted_urls:
            continue
        key = f"{att.get('name') or ''}||{bare_url}"
        if key in seen:
            continue
        seen.add(key)
        result.append({
            "name": att.get("name") or bare_url.rstrip("/").split("/")[-1] or "Attachment",
            "url": raw_url if trusted_hit else bare_url,
        })

    for att in trusted:
        key = f"{att.get('name') or ''}||{strip_query_and_fragment(att['url'])}"
        if key not in seen:
            seen.add(key)
            result.append({"name": att.get("name") or "Attachment", "url": att["url"]})

    return result


class Extractor:
    """Runs the extraction prompt with a bounded number of attempts."""

    def __init__(
        self,
        prompts: Optional[Dict[str, str]] = None,
        completion: Callable[..., Awaitable[Optional[str]]] = chat_completion,
        max_attempts: Optional[int] = None,
        input_limit: Optional[int] = None,
    ):
        self.prompts = prompts if prompts is not None else load_prompts()
        self.completion = completion
        self.max_attempts = max_attempts or config.EXTRACTION_MAX_ATTEMPTS
        self.input_limit = input_limit or config.EXTRACTION_INPUT_LIMIT

    def build_messages(self, text: str, url: str, source_label: str) -> List[Dict[str, str]]:
        template = self.prompts.get("extraction")
        if not template:
            raise ExtractionError("No 'extraction' prompt found in configuration")
        prompt = Template(template).safe_substitute(
            source_name=source_label,
            url=url,
            text=(text or "")[: self.input_limit],
        )
        return [
            {"role": "system", "content": self.prompts.get("system") or DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    async def attempt_extraction(
        self,
        text: str,
        url: str,
        source_label: str,
        trusted_attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> ExtractionOutcome:
        try:
            messages = self.build_messages(text, url, source_label)
            raw = await self.completion(
                messages,
                purpose="extraction",
                temperature=0.1,
                response_format={"type": "json_object"},
                raise_errors=True,
            )
            if not raw:
                raise ExtractionError("No content generated")
            record = json.loads(raw)
            if not isinstance(record, dict):
                raise ExtractionError(f"Expected a JSON object, got {type(record).__name__}")
        except (ExtractionError, ContentFilterError, OpenAIError, ValueError) as e:
            return ExtractionFailed(last_error=f"{e.__class__.__name__}: {e}")

        trusted = trusted_attachments or []
        returned = record.get("attachments") if isinstance(record.get("attachments"), list) else []
        record["attachments"] = filter_attachments(returned + list(trusted), trusted)
        if not isinstance(record.get("key_points"), list):
            record["key_points"] = []
        record["url"] = url
        return ExtractionOk(record=record)

    @trace_span(
        "extract",
        tracer_name="extractor",
        attr_from_args=lambda self, text, url, source_label, trusted_attachments=None: {
            "page.url": url,
            "source.name": source_label,
            "input.length": len(text or ""),
        },
    )
    async def extract(
        self,
        text: str,
        url: str,
        source_label: str,
        trusted_attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Extraction record for a page; never raises for model or parsing failures."""
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            outcome = await self.attempt_extraction(text, url, source_label, trusted_attachments)
            if isinstance(outcome, ExtractionOk):
                return outcome.record
            last_error = outcome.last_error
            logger.error(f"Extraction error for {url} (attempt {attempt}/{self.max_attempts}): {last_error}")

        logger.error(f"Extraction failed after retries, marking for manual review: {url} ({last_error})")
        return fallback_record(url, source_label)
