from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

import jsonschema

from .config import LlmConfig
from .httpclient import request_json
from .models import Context, QueueItem
from .results import GenerationResult, GenerationStats, GeneratorReadiness
from .utils import log_event

CONTENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "excerpt", "body"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "excerpt": {"type": "string"},
        "body": {"type": "string", "minLength": 1},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
}

DEFAULT_SYSTEM_TEMPLATE = (
    "You write practical travel and event guides for visitors of {{context}}. "
    "Write in the language with code '{{lang}}'. Answer with a JSON object "
    "holding the keys title, excerpt, body (markdown) and tags."
)

USER_TEMPLATES: dict[str, str] = {
    "weekly_guide": "Write the guide to what is on in {{context}} for the week starting {{week_start}}.\n{{source}}",
    "match_preview": "Write a preview of this event in {{context}}.\n{{source}}",
    "sport_guide": "Write a spectator's guide to {{sport}} at {{context}}.\n{{source}}",
    "venue_guide": "Write a visitor guide to this venue of {{context}}.\n{{source}}",
    "transport_guide": "Explain how to get to {{destination}} for {{context}}.\n{{source}}",
    "nationality_guide": "Write a guide to {{context}} for visitors from {{nationality}}.\n{{source}}",
    "destination_guide": "Write an evergreen guide to {{context}}.\n{{source}}",
}
FALLBACK_USER_TEMPLATE = "Write a {{content_type}} article for {{context}}.\n{{source}}"


class LlmGenerator:
    """Generation through an OpenAI-compatible chat completions endpoint."""

    def __init__(self, config: LlmConfig) -> None:
        self.config = config
        self.logger = logging.getLogger("contentengine.generation")

    def _api_key(self) -> str:
        if not self.config.api_key_env:
            return ""
        return os.environ.get(self.config.api_key_env, "").strip()

    def check_readiness(self) -> GeneratorReadiness:
        errors: list[str] = []
        if not self.config.enabled:
            errors.append("llm generation is disabled")
        if not self.config.model:
            errors.append("llm model is not configured")
        if not self.config.base_url:
            errors.append("llm base_url is not configured")
        if not self._api_key():
            errors.append(f"{self.config.api_key_env or 'api key'} is not set")
        return GeneratorReadiness(ready=not errors, errors=errors)

    def generate(self, item: QueueItem, context: Context) -> GenerationResult:
        started = time.monotonic()
        messages = render_messages(item, context)
        try:
            response = self._complete(messages)
            parsed = _parse_content(response)
            error = _validate(parsed)
            if error:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "generation_schema_retry",
                    item_id=item.id,
                    error=error,
                )
                messages = messages + [
                    {"role": "user", "content": "Return valid JSON only. Fix: " + error}
                ]
                response = self._complete(messages)
                parsed = _parse_content(response)
                error = _validate(parsed)
                if error:
                    return GenerationResult(False, error=f"invalid_output: {error}")
        except ValueError as exc:
            return GenerationResult(False, error=str(exc))

        usage = response.get("usage") or {}
        tokens = int(usage.get("total_tokens") or 0)
        stats = GenerationStats(
            tokens=tokens,
            cost=round(tokens / 1000.0 * self.config.cost_per_1k_tokens, 6),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        content = dict(parsed)
        content["content_type"] = item.content_type
        content["lang"] = item.lang
        return GenerationResult(True, content=content, stats=stats)

    def _complete(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        url = self.config.base_url.rstrip("/") + "/chat/completions"
        payload = {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self._api_key()}"}
        return request_json("POST", url, headers, payload, timeout=self.config.timeout_seconds)


def render_messages(item: QueueItem, context: Context) -> list[dict[str, str]]:
    prompts = context.prompt_override("prompts") or {}
    override = prompts.get(item.content_type) if isinstance(prompts, dict) else None
    override = override if isinstance(override, dict) else {}
    system = str(override.get("system") or DEFAULT_SYSTEM_TEMPLATE)
    user = str(override.get("user") or USER_TEMPLATES.get(item.content_type, FALLBACK_USER_TEMPLATE))
    values = {
        "context": context.name,
        "lang": item.lang,
        "content_type": item.content_type,
        "source": json.dumps(item.source_ref, ensure_ascii=False, sort_keys=True),
    }
    for key, value in item.source_ref.items():
        if isinstance(value, (str, int, float)):
            values.setdefault(key, str(value))
    return [
        {"role": "system", "content": _fill(system, values)},
        {"role": "user", "content": _fill(user, values)},
    ]


def _fill(template: str, values: dict[str, str]) -> str:
    for key, value in values.items():
        template = template.replace("{{" + key + "}}", value)
    return template


def _parse_content(response: dict[str, Any]) -> Any:
    choices = response.get("choices") or []
    if not choices:
        raise ValueError("openai_missing_choices")
    raw = choices[0].get("message", {}).get("content") or ""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _validate(payload: Any) -> str | None:
    try:
        jsonschema.validate(payload, CONTENT_SCHEMA)
    except jsonschema.ValidationError as exc:
        return exc.message
    return None
