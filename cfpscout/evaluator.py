"""Evaluator: prompt in, schema-conformant score object out.

The pipeline only depends on the :class:`Evaluator` protocol. :class:`LLMClient`
is the production implementation, backed by Anthropic or any
OpenAI-compatible endpoint. Calls are made with automatic retries disabled;
a failed call raises :class:`LLMCallError` and the caller substitutes its
documented default.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from cfpscout.schemas import SessionSubmission

log = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class LLMCallError(Exception):
    """LLM call failed or returned output that does not fit the expected schema."""


class Evaluator(Protocol):
    async def evaluate(self, system: str, prompt: str, schema: type[ModelT]) -> ModelT:
        ...


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SESSION_SYSTEM_PROMPT = """\
You are an expert CFP reviewer assessing session proposals for the developer \
conference "{conference}".

Score each proposal on four criteria, 1 (poor) to 5 (excellent):

1. title: how clear, engaging, and descriptive is the session title?
2. description: how well does the description explain the content, its value, \
and the target audience?
3. keyTakeaways: how valuable, specific, and actionable are the key takeaways?
4. givenBefore: is this a new talk? If it was given at prior events, did the \
speaker note any updates?

Weigh relevance to the conference audience and technical depth while scoring.

Respond with ONLY valid JSON:
{{
  "title": {{"score": <1-5>, "justification": "<one or two sentences>"}},
  "description": {{"score": <1-5>, "justification": "<one or two sentences>"}},
  "keyTakeaways": {{"score": <1-5>, "justification": "<one or two sentences>"}},
  "givenBefore": {{"score": <1-5>, "justification": "<one or two sentences>"}}
}}
"""

SPEAKER_SYSTEM_PROMPT = """\
You assess speaker profiles for their fit to the developer conference "{conference}".

You will be given the URL of the speaker's Sessionize profile. Base the \
assessment only on the "AREA OF EXPERTISE" and "TOPICS" listed there.

Scores run from 1 (weak fit) to 3 (strong fit).

Respond with ONLY valid JSON:
{{
  "expertiseMatch": <1-3>,
  "expertiseMatchJustification": "<one or two sentences>",
  "topicsRelevance": <1-3>,
  "topicsRelevanceJustification": "<one or two sentences>"
}}
"""


def session_system_prompt(conference: str) -> str:
    return SESSION_SYSTEM_PROMPT.format(conference=conference)


def speaker_system_prompt(conference: str) -> str:
    return SPEAKER_SYSTEM_PROMPT.format(conference=conference)


def build_session_prompt(submission: SessionSubmission) -> str:
    return (
        "Please evaluate this CFP session proposal:\n\n"
        f"## Session Title\n\n{submission.title}\n\n"
        f"## Session Description\n\n{submission.description}\n\n"
        f"## Session Key Takeaways\n\n{submission.key_takeaways()}\n\n"
        f"## Session field: Have you given this talk before?\n\n{submission.given_before()}\n"
    )


def build_speaker_prompt(profile_url: str, conference: str) -> str:
    return (
        f'Please assess this speaker\'s profile for the developer conference "{conference}".\n\n'
        f"Sessionize Profile URL: {profile_url}\n"
    )


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Async LLM client supporting Anthropic and OpenAI, with retries disabled."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider
        self.model = model or ""
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"),
                max_retries=0,
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {"max_retries": 0}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        log.debug("LLM call via %s/%s (%d prompt chars)", self.provider, self.model, len(user))
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=2048,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=2048,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}") from exc

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
        if not isinstance(parsed, dict):
            raise LLMCallError(f"LLM returned a JSON {type(parsed).__name__}, expected an object")
        return parsed

    async def evaluate(self, system: str, prompt: str, schema: type[ModelT]) -> ModelT:
        raw = await self.call(system, prompt)
        try:
            return schema.model_validate(raw)
        except ValidationError as exc:
            raise LLMCallError(f"LLM response does not match {schema.__name__}: {exc}") from exc
