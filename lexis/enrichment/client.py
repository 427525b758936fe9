"""
Enrichment Client
-----------------
Adapter around the external word-substitution service.

    enrich(text, density, hints) -> list[Segment]

The service is a black box: it receives one paragraph plus a target
density and answers with an ordered decomposition of that paragraph into
source-language spans and target-language substitutions. This module only
owns the call and the structural validation; retry and fallback belong to
the scheduler.

DeepSeekEnrichmentClient talks to DeepSeek's OpenAI-compatible chat API
through the official openai SDK (AsyncOpenAI with a custom base_url).
"""
from __future__ import annotations

import json
from typing import Any, Optional, Protocol, Sequence

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from lexis.enrichment.prompts import (
    CONNECTION_TEST_PROMPT,
    EXAMPLES,
    GENERIC_EXAMPLE,
    REINFORCEMENT_TEMPLATE,
    SYSTEM_PROMPT,
    USER_PROMPT,
)
from lexis.errors import EnrichmentCallFailed, InvalidEnrichmentResult
from lexis.schemas import Segment, SegmentLanguage

MAX_PARA_CHARS = 3000          # ~600 words; longer paragraphs are split for the call


class EnrichmentClient(Protocol):
    async def enrich(
        self, text: str, density: int, hints: Sequence[str] = ()
    ) -> list[Segment]:
        ...


# ---------------------------------------------------------------------------
# Response validation
# ---------------------------------------------------------------------------

class _WireSegment(BaseModel):
    text: str = Field(min_length=1)
    lang: str
    baseEn: str = ""

    @field_validator("baseEn", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class _WireResponse(BaseModel):
    segments: list[_WireSegment] = Field(min_length=1)


def validate_segments(
    payload: Any,
    source_code: str = "en",
    target_code: str = "pl",
) -> list[Segment]:
    """
    Check the structural shape of a service response and map it to Segments.

    Requires a non-empty ordered list where every element has a non-empty
    text and a recognised language tag. Raises InvalidEnrichmentResult.
    """
    try:
        response = _WireResponse.model_validate(payload)
    except ValidationError as exc:
        raise InvalidEnrichmentResult(f"Malformed segments: {exc.error_count()} error(s)") from exc

    tags = {source_code: SegmentLanguage.SOURCE, target_code: SegmentLanguage.TARGET}
    segments: list[Segment] = []
    for position, wire in enumerate(response.segments):
        language = tags.get(wire.lang)
        if language is None:
            raise InvalidEnrichmentResult(f"Unknown language tag {wire.lang!r} at segment {position}")
        segments.append(
            Segment(
                text=wire.text,
                language=language,
                source_base_form=wire.baseEn if language is SegmentLanguage.TARGET else "",
            )
        )
    return segments


# ---------------------------------------------------------------------------
# DeepSeek client
# ---------------------------------------------------------------------------

class DeepSeekEnrichmentClient:
    """
    Word substitution through DeepSeek chat completions in JSON mode.

    One call per paragraph; no retries here. Every failure is raised as
    EnrichmentCallFailed (transport, status, empty reply) or
    InvalidEnrichmentResult (unparseable or malformed JSON).
    """

    def __init__(
        self,
        api_key: str,
        model: str = "deepseek-chat",
        base_url: str = "https://api.deepseek.com",
        temperature: float = 0.3,
        timeout: float = 60.0,
        max_paragraph_chars: int = MAX_PARA_CHARS,
        source_language: str = "English",
        source_code: str = "en",
        target_language: str = "Polish",
        target_code: str = "pl",
        client: Optional[Any] = None,
    ) -> None:
        from openai import AsyncOpenAI

        self.model = model
        self.temperature = temperature
        self.max_paragraph_chars = max_paragraph_chars
        self.source_language = source_language
        self.source_code = source_code
        self.target_language = target_language
        self.target_code = target_code
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self.total_calls: int = 0
        self.total_tokens_used: int = 0

    @classmethod
    def from_config(cls, config: dict, api_key: str) -> "DeepSeekEnrichmentClient":
        return cls(
            api_key=api_key,
            model=config.get("model", "deepseek-chat"),
            base_url=config.get("base_url", "https://api.deepseek.com"),
            temperature=config.get("temperature", 0.3),
            timeout=config.get("timeout_seconds", 60.0),
            max_paragraph_chars=config.get("max_paragraph_chars", MAX_PARA_CHARS),
            source_language=config.get("source_language", "English"),
            source_code=config.get("source_code", "en"),
            target_language=config.get("target_language", "Polish"),
            target_code=config.get("target_code", "pl"),
        )

    # --- Prompting ------------------------------------------------------------

    def build_messages(self, paragraph: str, density: int, hints: Sequence[str] = ()) -> list[dict]:
        names = {
            "source_language": self.source_language,
            "target_language": self.target_language,
            "source_code": self.source_code,
            "target_code": self.target_code,
        }
        example = EXAMPLES.get((self.source_code, self.target_code)) or GENERIC_EXAMPLE.format(**names)
        reinforcement = REINFORCEMENT_TEMPLATE.format(words=", ".join(hints)) if hints else ""
        return [
            {"role": "system", "content": SYSTEM_PROMPT.format(density=density, example=example, **names)},
            {
                "role": "user",
                "content": USER_PROMPT.format(
                    density=density, reinforcement=reinforcement, paragraph=paragraph, **names
                ),
            },
        ]

    # --- Public API -----------------------------------------------------------

    async def enrich(self, text: str, density: int, hints: Sequence[str] = ()) -> list[Segment]:
        head, tail = text, ""
        if len(text) > self.max_paragraph_chars:
            head, tail = text[: self.max_paragraph_chars], text[self.max_paragraph_chars:]
            logger.debug(f"[DeepSeek] Paragraph of {len(text)} chars - sending first {len(head)}")

        payload = await self._complete(self.build_messages(head, density, hints))
        segments = validate_segments(payload, self.source_code, self.target_code)
        if tail:
            segments.append(Segment(text=tail, language=SegmentLanguage.SOURCE))
        return segments

    async def test_connection(self) -> None:
        """Minimal round trip; raises EnrichmentCallFailed when the key or service is unusable."""
        await self._complete(
            [{"role": "user", "content": CONNECTION_TEST_PROMPT}],
            max_tokens=20,
        )

    async def _complete(self, messages: list[dict], max_tokens: Optional[int] = None) -> Any:
        from openai import OpenAIError

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
            "temperature": self.temperature,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            raise EnrichmentCallFailed(f"DeepSeek API error: {exc}") from exc

        self.total_calls += 1
        if usage := getattr(response, "usage", None):
            self.total_tokens_used += getattr(usage, "total_tokens", 0) or 0

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise EnrichmentCallFailed("DeepSeek returned an empty completion")
        logger.trace(f"[DeepSeek] Raw response: {content[:500]}")

        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise InvalidEnrichmentResult(f"Completion is not valid JSON: {exc}") from exc


