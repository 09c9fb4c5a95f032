"""
Question, summary, OCR and image-analysis generation with local fallbacks.

The adapter always answers. Provider failures, timeouts and output that does
not contain a usable JSON payload are logged and replaced by a deterministic
result computed from the input, marked ``source="Fallback"`` with a warning.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, List, Sequence, Type, TypeVar

from pydantic import ValidationError as SchemaError

from .errors import ProviderError
from .models import AnalysisResult, AnswerSource, Difficulty, Question, QuestionSet, QuestionType, SummaryResult
from .providers import TextProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_CONFIGURED_WARNING = "AI service not configured"
UNAVAILABLE_WARNING = "AI service temporarily unavailable"

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_MIN_SENTENCE_WORDS = 4
_SNIPPET_CHARS = 160

_MCQ_DISTRACTORS = [
    "The document does not address this topic.",
    "The document states the opposite.",
    "None of the statements appear in the document.",
]

_decoder = json.JSONDecoder()


def extract_json(text: str, expected: Type[T]) -> T:
    """
    Return the first well-formed JSON array (``list``) or object (``dict``)
    embedded in free-form model output.

    Raises:
        ProviderError: If no such substring exists
    """
    opener = "[" if expected is list else "{"
    index = text.find(opener)
    while index != -1:
        try:
            value, _ = _decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, expected):
            return value
        index = text.find(opener, index + 1)
    raise ProviderError(f"No JSON {expected.__name__} found in AI response")


def truncate_words(content: str, max_length: int) -> str:
    """Cut ``content`` to at most ``max_length`` words, marking the cut with an ellipsis."""
    words = content.split()
    if len(words) <= max_length:
        return " ".join(words)
    return " ".join(words[:max_length]) + "..."


def _snippet(sentence: str) -> str:
    if len(sentence) <= _SNIPPET_CHARS:
        return sentence
    return sentence[:_SNIPPET_CHARS].rsplit(" ", 1)[0] + "..."


def _sentences(content: str) -> List[str]:
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(content.strip()) if s.strip()]
    usable = [s for s in sentences if len(s.split()) >= _MIN_SENTENCE_WORDS]
    if usable:
        return usable
    fallback = " ".join(content.split()[:30])
    return [fallback] if fallback else ["the document's main topic"]


def _fallback_question(index: int, sentence: str, question_type: QuestionType, difficulty: Difficulty) -> Question:
    snippet = _snippet(sentence)
    if question_type == QuestionType.MCQ:
        correct = index % (len(_MCQ_DISTRACTORS) + 1)
        options = list(_MCQ_DISTRACTORS)
        options.insert(correct, snippet)
        return Question(
            question="Which of the following statements is made in the document?",
            type=question_type,
            options=options,
            correct_answer=correct,
            answer=snippet,
            difficulty=difficulty,
            explanation="This statement is taken directly from the document text.",
        )
    if question_type == QuestionType.TRUE_FALSE:
        return Question(
            question=f'True or false: the document states that "{snippet}"',
            type=question_type,
            options=["True", "False"],
            correct_answer="True",
            answer="True",
            difficulty=difficulty,
            explanation="The statement appears in the document.",
        )
    if question_type == QuestionType.LONG_ANSWER:
        return Question(
            question=f'Explain in detail the following point from the document: "{snippet}"',
            type=question_type,
            answer=sentence,
            difficulty=difficulty,
            explanation="A complete answer restates and expands on this passage.",
        )
    lead = " ".join(sentence.split()[:6])
    return Question(
        question=f'What does the document say about "{lead}"?',
        type=QuestionType.SHORT_ANSWER,
        answer=sentence,
        difficulty=difficulty,
        explanation="The answer is given in the corresponding passage of the document.",
    )


def fallback_questions(
    content: str,
    count: int,
    difficulty: Difficulty,
    types: Sequence[QuestionType],
) -> List[Question]:
    """
    Build up to ``count`` questions from the content's sentences, cycling
    through ``types``. Never empty for ``count >= 1``.
    """
    sentences = _sentences(content)
    types = list(types) or [QuestionType.SHORT_ANSWER]
    total = min(count, len(sentences))
    return [
        _fallback_question(i, sentences[i], types[i % len(types)], difficulty)
        for i in range(total)
    ]


def fallback_ocr_result(language: str) -> dict:
    return {
        "text": "",
        "confidence": "low",
        "language": language,
        "textType": "unknown",
        "layout": "Text could not be analysed",
        "words": 0,
        "characters": 0,
    }


def fallback_enhancement_result(enhancements: Sequence[str]) -> dict:
    return {
        "currentQuality": "Not assessed",
        "enhancements": list(enhancements),
        "expectedImprovement": "unknown",
        "processingSteps": ["Analyze current image", "Apply enhancements", "Validate results"],
        "recommendedSettings": {"brightness": "1.1", "contrast": "1.2", "sharpness": "1.15"},
    }


class GenerationAdapter:
    """Wraps a :class:`TextProvider` with parsing and fallback behaviour."""

    def __init__(self, provider: TextProvider):
        self.provider = provider

    def _warning(self) -> str:
        return UNAVAILABLE_WARNING if self.provider.configured else NOT_CONFIGURED_WARNING

    def _attempt(self, operation: str, call: Callable[[], T]) -> T:
        try:
            return call()
        except (ProviderError, SchemaError) as exc:
            logger.warning(f"{operation} falling back: {exc}")
            raise ProviderError(str(exc)) from exc

    def generate_questions(
        self,
        content: str,
        count: int = 5,
        difficulty: Difficulty = Difficulty.MEDIUM,
        types: Sequence[QuestionType] = (QuestionType.MCQ, QuestionType.SHORT_ANSWER),
    ) -> QuestionSet:
        type_names = ", ".join(t.value for t in types)
        prompt = f"""
Based on the following document content, generate {count} educational questions.

Document Content:
{content}

Requirements:
- Difficulty: {difficulty.value}
- Question Types: {type_names}
- Make questions relevant and challenging
- Include answer explanations
- For mcq questions, provide 4 options and the index of the correct one

Format the response as a JSON array with this structure:
[
  {{
    "question": "Question text here?",
    "answer": "Correct answer explanation",
    "type": "mcq",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "correct_answer": 0,
    "difficulty": "{difficulty.value}",
    "explanation": "Why this answer is correct"
  }}
]
"""

        def call() -> List[Question]:
            items = extract_json(self.provider.generate(prompt), list)
            questions = [Question.model_validate(item) for item in items]
            if not questions:
                raise ProviderError("AI response contained no questions")
            return questions[:count]

        try:
            questions = self._attempt("Question generation", call)
        except ProviderError:
            return QuestionSet(
                questions=fallback_questions(content, count, difficulty, types),
                source=AnswerSource.FALLBACK,
                warning=self._warning(),
            )
        logger.info(f"Generated {len(questions)} questions with {self.provider.name}")
        return QuestionSet(questions=questions, source=AnswerSource.AI)

    def generate_summary(self, content: str, summary_type: str = "general", max_length: int = 200) -> SummaryResult:
        prompt = f"""
Generate a {summary_type} summary of the following document content.

Document Content:
{content}

Requirements:
- Summary type: {summary_type}
- Maximum length: {max_length} words
- Focus on key points and main ideas
- Use clear, concise language
"""

        def call() -> str:
            summary = self.provider.generate(prompt).strip()
            if not summary:
                raise ProviderError("AI response contained no summary")
            return summary

        try:
            summary = self._attempt("Summary generation", call)
        except ProviderError:
            return SummaryResult(
                summary=truncate_words(content, max_length),
                source=AnswerSource.FALLBACK,
                warning=self._warning(),
            )
        return SummaryResult(summary=summary, source=AnswerSource.AI)

    def extract_text(self, image_base64: str, language: str = "en", context: str = "") -> AnalysisResult:
        context_line = f"Context: {context}" if context else ""
        prompt = f"""
Analyze this image and extract all text content.
{context_line}
Language: {language}

Format as JSON:
{{
  "text": "extracted text",
  "confidence": "high/medium/low",
  "language": "{language}",
  "textType": "printed/handwritten/mixed",
  "layout": "description of text arrangement",
  "words": number_of_words,
  "characters": number_of_characters
}}
"""
        try:
            result = self._attempt(
                "OCR",
                lambda: extract_json(self.provider.generate(prompt, image_base64=image_base64), dict),
            )
        except ProviderError:
            return AnalysisResult(result=fallback_ocr_result(language), source=AnswerSource.FALLBACK, warning=self._warning())
        return AnalysisResult(result=result, source=AnswerSource.AI)

    def enhance_image(self, image_base64: str, enhancements: Sequence[str], context: str = "") -> AnalysisResult:
        context_line = f"Context: {context}" if context else ""
        prompt = f"""
Analyze this image and suggest enhancement improvements.
{context_line}
Requested enhancements: {", ".join(enhancements)}

Format as JSON:
{{
  "currentQuality": "assessment",
  "enhancements": ["list", "of", "suggestions"],
  "expectedImprovement": "percentage",
  "processingSteps": ["step1", "step2"],
  "recommendedSettings": {{"brightness": "value", "contrast": "value", "sharpness": "value"}}
}}
"""
        try:
            result = self._attempt(
                "Image enhancement",
                lambda: extract_json(self.provider.generate(prompt, image_base64=image_base64), dict),
            )
        except ProviderError:
            return AnalysisResult(
                result=fallback_enhancement_result(enhancements),
                source=AnswerSource.FALLBACK,
                warning=self._warning(),
            )
        return AnalysisResult(result=result, source=AnswerSource.AI)
