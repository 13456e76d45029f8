import asyncio

import pytest
from google.api_core import exceptions

from doubt_solver.errors import UpstreamError
from doubt_solver.models.conversations import Message
from doubt_solver.services.gemini import (
    DEFAULT_SUGGESTIONS,
    GeminiClient,
    build_answer_prompt,
    build_suggestions_prompt,
    extract_questions_from_text,
    parse_suggestions,
)

from fakes import FakeModel


def _client(*results, retries=3):
    model = FakeModel(*results)
    return GeminiClient(model=model, max_retries=retries, backoff_seconds=0), model


def test_retries_retryable_errors_then_succeeds():
    client, model = _client(
        exceptions.ServiceUnavailable("overloaded"),
        exceptions.TooManyRequests("slow down"),
        "  The answer is 42.  ",
    )
    assert asyncio.run(client.generate("prompt")) == "The answer is 42."
    assert len(model.prompts) == 3


def test_non_retryable_error_fails_fast():
    client, model = _client(exceptions.InvalidArgument("bad request"))
    with pytest.raises(UpstreamError) as info:
        asyncio.run(client.generate("prompt"))
    assert info.value.upstream_status == 400
    assert len(model.prompts) == 1


def test_gives_up_after_max_retries():
    client, model = _client(exceptions.InternalServerError("boom"), retries=2)
    with pytest.raises(UpstreamError) as info:
        asyncio.run(client.generate("prompt"))
    assert info.value.upstream_status == 500
    assert len(model.prompts) == 2


def test_empty_response_is_an_error():
    client, _ = _client("")
    with pytest.raises(UpstreamError, match="Invalid response format"):
        asyncio.run(client.generate("prompt"))


def test_overloaded_answer_falls_back_to_apology():
    client, _ = _client(exceptions.ServiceUnavailable("overloaded"))
    answer = asyncio.run(client.answer_question("What is entropy?", "text", [], "hinglish"))
    assert "overloaded" in answer
    assert "What is entropy?" in answer
    assert answer.startswith("Sorry yaar")


def test_other_answer_failures_propagate():
    client, _ = _client(exceptions.PermissionDenied("bad key"))
    with pytest.raises(UpstreamError):
        asyncio.run(client.answer_question("q", "text", [], "english"))


def test_answer_prompt_contents():
    history = [Message(type="user" if i % 2 == 0 else "ai", content=f"turn {i}") for i in range(8)]
    prompt = build_answer_prompt("Explain step 3", "DOCUMENT BODY", history, "klingon")
    assert "DOCUMENT BODY" in prompt
    assert "Current Question: Explain step 3" in prompt
    assert "Respond in clear, professional English." in prompt
    assert "turn 1" not in prompt
    assert "User: turn 2" in prompt
    assert "AI: turn 7" in prompt


def test_answer_prompt_without_history():
    prompt = build_answer_prompt("Hi", "text", [], "hindi")
    assert "Previous conversation" not in prompt
    assert "हिंदी" in prompt


def test_suggestions_prompt_truncates_long_text():
    prompt = build_suggestions_prompt("a" * 5000)
    assert "a" * 3000 + "... (truncated)" in prompt
    assert "a" * 3001 not in prompt


def test_parse_suggestions_strips_code_fences():
    raw = '```json\n["What is a stack?", "How does push work?"]\n```'
    assert parse_suggestions(raw) == ["What is a stack?", "How does push work?"]


def test_parse_suggestions_falls_back_to_question_lines():
    raw = "Here you go:\n1. What is recursion used for?\n- Why is the base case needed?\nShort?\nNot a question"
    assert parse_suggestions(raw) == ["What is recursion used for?", "Why is the base case needed?"]


def test_extract_questions_caps_at_seven():
    raw = "\n".join(f"{i}. Question number {i} here?" for i in range(10))
    assert len(extract_questions_from_text(raw)) == 7


def test_suggest_questions_defaults_on_failure():
    client, _ = _client(exceptions.ServiceUnavailable("overloaded"), retries=1)
    assert asyncio.run(client.suggest_questions("text")) == DEFAULT_SUGGESTIONS


def test_suggest_questions_defaults_on_unusable_response():
    client, _ = _client("I cannot help with that.")
    assert asyncio.run(client.suggest_questions("text")) == DEFAULT_SUGGESTIONS
