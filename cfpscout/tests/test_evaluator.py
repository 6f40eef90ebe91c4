from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cfpscout.evaluator import (
    LLMCallError,
    LLMClient,
    build_session_prompt,
    build_speaker_prompt,
    session_system_prompt,
)
from cfpscout.schemas import SessionEvaluationResult, SessionSubmission, SpeakerAssessmentResult

from conftest import submission

SESSION_JSON = {
    "title": {"score": 4, "justification": "clear"},
    "description": {"score": 3, "justification": "ok"},
    "keyTakeaways": {"score": 5, "justification": "concrete"},
    "givenBefore": {"score": 2, "justification": "given twice"},
}


def _anthropic_client(text: str) -> LLMClient:
    client = LLMClient.__new__(LLMClient)
    client.provider = "anthropic"
    client.model = "test-model"
    client._client = MagicMock()
    client._client.messages.create = AsyncMock(
        return_value=SimpleNamespace(content=[SimpleNamespace(text=text)])
    )
    return client


def _openai_client(text: str | None) -> LLMClient:
    client = LLMClient.__new__(LLMClient)
    client.provider = "openai"
    client.model = "test-model"
    client._client = MagicMock()
    client._client.chat.completions.create = AsyncMock(
        return_value=SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])
    )
    return client


class TestPrompts:
    def test_session_prompt_layout(self):
        sub = SessionSubmission.model_validate(submission("s1", "Edge Rendering", given_before=["No"]))
        assert build_session_prompt(sub) == (
            "Please evaluate this CFP session proposal:\n\n"
            "## Session Title\n\nEdge Rendering\n\n"
            "## Session Description\n\nAll about Edge Rendering\n\n"
            "## Session Key Takeaways\n\nShip faster\n\n"
            "## Session field: Have you given this talk before?\n\nNo\n"
        )

    def test_key_takeaways_match_is_case_insensitive(self):
        data = submission("s1", takeaways=None)
        data["questionAnswers"] = [{"question": "What are the KEY TAKEAWAYS?", "answer": "Three things"}]
        assert SessionSubmission.model_validate(data).key_takeaways() == "Three things"

    def test_speaker_prompt_includes_url(self):
        prompt = build_speaker_prompt("https://sessionize.com/ada", "JSDev World")
        assert "Sessionize Profile URL: https://sessionize.com/ada" in prompt
        assert '"JSDev World"' in prompt

    def test_system_prompt_names_conference(self):
        assert '"NodeConf"' in session_system_prompt("NodeConf")


class TestLLMClient:
    @pytest.mark.asyncio
    async def test_anthropic_fenced_json(self):
        client = _anthropic_client("Here you go:\n```json\n" + json.dumps(SESSION_JSON) + "\n```")
        result = await client.evaluate("sys", "prompt", SessionEvaluationResult)
        assert result.total == 14
        assert result.key_takeaways.justification == "concrete"
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    @pytest.mark.asyncio
    async def test_openai_json(self):
        client = _openai_client(json.dumps({
            "expertiseMatch": 3, "expertiseMatchJustification": "yes",
            "topicsRelevance": 1, "topicsRelevanceJustification": "no",
        }))
        result = await client.evaluate("sys", "prompt", SpeakerAssessmentResult)
        assert result.expertise_match == 3
        assert result.topics_relevance == 1

    @pytest.mark.asyncio
    async def test_out_of_range_score_raises(self):
        bad = dict(SESSION_JSON, title={"score": 9, "justification": "too high"})
        client = _anthropic_client(json.dumps(bad))
        with pytest.raises(LLMCallError, match="does not match"):
            await client.evaluate("sys", "prompt", SessionEvaluationResult)

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        client = _anthropic_client("I cannot score this.")
        with pytest.raises(LLMCallError, match="invalid JSON"):
            await client.evaluate("sys", "prompt", SessionEvaluationResult)

    @pytest.mark.asyncio
    async def test_non_object_json_raises(self):
        client = _openai_client("[1, 2]")
        with pytest.raises(LLMCallError, match="expected an object"):
            await client.call("sys", "prompt")

    @pytest.mark.asyncio
    async def test_api_error_raises(self):
        client = _anthropic_client("{}")
        client._client.messages.create.side_effect = ConnectionError("network down")
        with pytest.raises(LLMCallError, match="network down"):
            await client.call("sys", "prompt")

    def test_clients_built_without_retries(self):
        with patch("anthropic.AsyncAnthropic") as anthropic_cls:
            LLMClient(provider="anthropic", api_key="k")
        assert anthropic_cls.call_args.kwargs["max_retries"] == 0

        with patch("openai.AsyncOpenAI") as openai_cls:
            client = LLMClient(provider="openai", api_key="k")
        assert openai_cls.call_args.kwargs["max_retries"] == 0
        assert client.model == "gpt-4o-mini"

    def test_defaults_come_from_arguments_not_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        monkeypatch.setenv("LLM_MODEL", "gpt-4o")
        with patch("anthropic.AsyncAnthropic"):
            client = LLMClient(api_key="k")
        assert client.provider == "anthropic"
        assert client.model == "claude-haiku-4-5-20251001"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            LLMClient(provider="carrier-pigeon")
