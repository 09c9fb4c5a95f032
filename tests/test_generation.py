"""
Tests for output parsing, fallbacks and the Gemini client.
"""

import json

import httpx
import pytest

from conftest import TEXT_CONTENT, FakeProvider
from docai_backend.errors import ProviderError
from docai_backend.generation import (
    NOT_CONFIGURED_WARNING,
    UNAVAILABLE_WARNING,
    GenerationAdapter,
    extract_json,
    fallback_questions,
    truncate_words,
)
from docai_backend.models import AnswerSource, Difficulty, Question, QuestionType
from docai_backend.providers import GeminiProvider


class TestExtractJson:
    def test_array_inside_prose(self):
        text = 'Sure! Here you go:\n[{"question": "Why?"}]\nHope that helps [really].'
        assert extract_json(text, list) == [{"question": "Why?"}]

    def test_skips_malformed_candidates(self):
        text = 'Template {placeholder} then the real one: {"text": "hello", "words": 1}'
        assert extract_json(text, dict) == {"text": "hello", "words": 1}

    def test_object_is_not_an_array(self):
        with pytest.raises(ProviderError):
            extract_json('{"question": "Why?"}', list)

    def test_no_json_at_all(self):
        with pytest.raises(ProviderError):
            extract_json("I could not do that.", dict)


class TestFallbacks:
    def test_questions_cycle_through_types(self):
        types = [QuestionType.MCQ, QuestionType.SHORT_ANSWER, QuestionType.TRUE_FALSE]
        questions = fallback_questions(TEXT_CONTENT, 4, Difficulty.HARD, types)

        assert [q.type for q in questions] == [
            QuestionType.MCQ,
            QuestionType.SHORT_ANSWER,
            QuestionType.TRUE_FALSE,
            QuestionType.MCQ,
        ]
        assert all(q.difficulty == Difficulty.HARD for q in questions)
        assert questions[0].options[questions[0].correct_answer] in TEXT_CONTENT

    def test_questions_limited_by_available_sentences(self):
        questions = fallback_questions("Water boils at one hundred degrees.", 10, Difficulty.EASY, [QuestionType.LONG_ANSWER])
        assert len(questions) == 1

    def test_questions_never_empty(self):
        questions = fallback_questions("Hi.", 3, Difficulty.MEDIUM, [QuestionType.SHORT_ANSWER])
        assert len(questions) == 1
        assert questions[0].question

    def test_fallback_questions_are_schema_valid(self):
        for question in fallback_questions(TEXT_CONTENT, 5, Difficulty.MEDIUM, list(QuestionType)):
            assert Question.model_validate(question.model_dump(mode="json")) == question

    def test_truncate_words(self):
        assert truncate_words("one two three", 5) == "one two three"
        assert truncate_words("one two three four", 2) == "one two..."
        assert len(truncate_words(TEXT_CONTENT, 7).split()) == 7


class TestGenerationAdapter:
    def test_unconfigured_provider_warns_not_configured(self):
        adapter = GenerationAdapter(FakeProvider(configured=False))
        result = adapter.generate_summary(TEXT_CONTENT, max_length=5)

        assert result.source == AnswerSource.FALLBACK
        assert result.warning == NOT_CONFIGURED_WARNING
        assert len(result.summary.split()) <= 5

    def test_unparseable_output_falls_back(self):
        adapter = GenerationAdapter(FakeProvider(["I'm sorry, I cannot help with that."]))
        result = adapter.generate_questions(TEXT_CONTENT, count=2)

        assert result.source == AnswerSource.FALLBACK
        assert result.warning == UNAVAILABLE_WARNING
        assert 1 <= len(result.questions) <= 2

    def test_invalid_question_objects_fall_back(self):
        adapter = GenerationAdapter(FakeProvider([json.dumps([{"question": "", "type": "essay"}])]))
        result = adapter.generate_questions(TEXT_CONTENT, count=2)
        assert result.source == AnswerSource.FALLBACK

    def test_ai_questions_truncated_to_count(self):
        items = [{"question": f"Question {i}?", "type": "short_answer"} for i in range(5)]
        adapter = GenerationAdapter(FakeProvider([json.dumps(items)]))
        result = adapter.generate_questions(TEXT_CONTENT, count=3)

        assert result.source == AnswerSource.AI
        assert result.warning is None
        assert [q.question for q in result.questions] == ["Question 0?", "Question 1?", "Question 2?"]

    def test_ocr_uses_provider_json(self):
        provider = FakeProvider(['{"text": "नमस्ते", "confidence": "high", "language": "hi"}'])
        result = GenerationAdapter(provider).extract_text("aGVsbG8=", language="hi", context="greeting card")

        assert result.source == AnswerSource.AI
        assert result.result["text"] == "नमस्ते"
        assert "greeting card" in provider.prompts[0]


def gemini_reply(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class TestGeminiProvider:
    def test_text_prompt_goes_to_text_model(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=gemini_reply("hello"))

        provider = GeminiProvider("secret", transport=httpx.MockTransport(handler))
        assert provider.generate("Say hello") == "hello"

        request = seen[0]
        assert request.url.path.endswith("/gemini-pro:generateContent")
        assert request.url.params["key"] == "secret"
        assert json.loads(request.content) == {"contents": [{"parts": [{"text": "Say hello"}]}]}

    def test_image_prompt_goes_to_vision_model(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=gemini_reply("{}"))

        provider = GeminiProvider("secret", transport=httpx.MockTransport(handler))
        provider.generate("Read this", image_base64="aGVsbG8=")

        assert seen[0].url.path.endswith("/gemini-pro-vision:generateContent")
        parts = json.loads(seen[0].content)["contents"][0]["parts"]
        assert parts[1] == {"inline_data": {"mime_type": "image/jpeg", "data": "aGVsbG8="}}

    def test_missing_key_is_provider_error(self):
        provider = GeminiProvider("")
        assert not provider.configured
        with pytest.raises(ProviderError):
            provider.generate("anything")

    def test_http_error_is_provider_error(self):
        provider = GeminiProvider("secret", transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        with pytest.raises(ProviderError, match="503"):
            provider.generate("anything")

    def test_timeout_is_provider_error(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        provider = GeminiProvider("secret", timeout=0.1, transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderError, match="timed out"):
            provider.generate("anything")

    def test_unexpected_shape_is_provider_error(self):
        provider = GeminiProvider(
            "secret", transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"candidates": []}))
        )
        with pytest.raises(ProviderError):
            provider.generate("anything")

    def test_adapter_falls_back_on_gemini_outage(self):
        provider = GeminiProvider("secret", transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        result = GenerationAdapter(provider).generate_summary(TEXT_CONTENT, max_length=10)

        assert result.source == AnswerSource.FALLBACK
        assert result.warning == UNAVAILABLE_WARNING
