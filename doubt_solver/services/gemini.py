import asyncio
import json
import logging
import re
from typing import Optional, Sequence

import google.generativeai as genai
from google.api_core.exceptions import GoogleAPICallError

from doubt_solver.config import GEMINI_BACKOFF_SECONDS, GEMINI_MAX_RETRIES, GEMINI_MODEL, GEN_AI_API_KEY
from doubt_solver.errors import UpstreamError
from doubt_solver.models.conversations import Message

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503}
HISTORY_IN_PROMPT = 6
SUGGESTION_SOURCE_CHARS = 3000
MAX_SUGGESTIONS = 7

LANGUAGE_INSTRUCTIONS = {
    "english": "Respond in clear, professional English.",
    "hinglish": (
        "Respond in Hinglish (mix of Hindi and English). Use common Hindi words mixed with English "
        'naturally, like "yeh question bahut interesting hai", "main aapko explain karta hun", '
        '"samjha kya?", "dekho", "acha". Keep it conversational and easy to follow for Indian students.'
    ),
    "hindi": "हिंदी में उत्तर दें।",
}

DEFAULT_SUGGESTIONS = [
    "What is the main topic of this document?",
    "Can you summarize the key points?",
    "What are the most important details?",
    "Are there any specific recommendations or conclusions?",
    "What should I know about this content?",
]

ANSWER_PROMPT = """You are an AI Doubt Solver that helps users understand and solve problems from their documents. You are an expert tutor who explains concepts, solves problems and gives detailed solutions.

LANGUAGE INSTRUCTION: {language_instruction}

Document Content:
{document_text}
{conversation_context}
Current Question: {question}

Instructions:
1. ONLY answer the specific question asked by the user
2. If the user greets you, greet them back and ask how you can help
3. If the user asks about a specific problem in the document, give a complete solution with explanations
4. For coding or mathematical problems, show the full working ONLY when asked to solve them
5. For conceptual questions, give detailed explanations with examples
6. For general questions about the document, give relevant information without solving every problem
7. Always format code in markdown code blocks with the language name after the opening backticks
8. Structure the response with clear headings and sections
9. Be educational: help the user learn, not just get the answer

Please provide a response that directly addresses the user's question:"""

SUGGESTIONS_PROMPT = """Analyze the following document content and generate 5-7 relevant questions a user might ask to get solutions and explanations. The questions should ask for solutions to specific problems, explanations of concepts or algorithms, code implementations, step-by-step walkthroughs or clarifications of complex topics.

Document Content:
{document_text}{truncated}

Return the questions as a JSON array of strings, like this:
["Question 1", "Question 2", "Question 3"]

Only return the JSON array, no additional text:"""

OVERLOADED_FALLBACK = {
    "english": (
        "I apologize, but the AI service is currently overloaded. Please wait a moment and try again. "
        'I\'ll be ready to answer your question "{question}" once the service is available.'
    ),
    "hinglish": (
        "Sorry yaar, AI service abhi overloaded hai. Please thoda wait karo aur phir try karo. "
        'Main aapka question "{question}" ka answer dene ke liye ready hun jab service available hogi.'
    ),
}


def language_instruction(language: Optional[str]) -> str:
    return LANGUAGE_INSTRUCTIONS.get((language or "english").lower(), LANGUAGE_INSTRUCTIONS["english"])


def overloaded_message(question: str, language: Optional[str]) -> str:
    template = OVERLOADED_FALLBACK.get((language or "english").lower(), OVERLOADED_FALLBACK["english"])
    return template.format(question=question)


def build_answer_prompt(question: str, document_text: str, history: Sequence[Message], language: Optional[str]) -> str:
    conversation_context = ""
    if history:
        lines = [
            f"{'User' if msg.type == 'user' else 'AI'}: {msg.content}"
            for msg in list(history)[-HISTORY_IN_PROMPT:]
        ]
        conversation_context = "\nPrevious conversation:\n" + "\n".join(lines) + "\n"
    return ANSWER_PROMPT.format(
        language_instruction=language_instruction(language),
        document_text=document_text,
        conversation_context=conversation_context,
        question=question,
    )


def build_suggestions_prompt(document_text: str) -> str:
    truncated = "... (truncated)" if len(document_text) > SUGGESTION_SOURCE_CHARS else ""
    return SUGGESTIONS_PROMPT.format(document_text=document_text[:SUGGESTION_SOURCE_CHARS], truncated=truncated)


def _strip_code_fences(text: str) -> str:
    text = re.sub(r"```(?:json)?\s*", "", text)
    return text.replace("```", "").strip()


def extract_questions_from_text(text: str) -> list[str]:
    questions = []
    for line in text.splitlines():
        trimmed = line.strip()
        if trimmed.endswith("?") and len(trimmed) > 10:
            cleaned = re.sub(r"^\d+\.?\s*", "", trimmed)
            cleaned = re.sub(r"^[-*]\s*", "", cleaned)
            if len(cleaned) > 5:
                questions.append(cleaned)
    return questions[:MAX_SUGGESTIONS]


def parse_suggestions(response_text: str) -> list[str]:
    """Read the model's question list, tolerating fences and prose."""
    try:
        parsed = json.loads(_strip_code_fences(response_text))
    except json.JSONDecodeError:
        logger.warning("Suggested questions response was not JSON, scanning text instead")
        return extract_questions_from_text(response_text)

    if isinstance(parsed, list):
        return [str(item).strip() for item in parsed if str(item).strip()][:MAX_SUGGESTIONS]
    return extract_questions_from_text(response_text)


def _status_of(exc: GoogleAPICallError) -> Optional[int]:
    code = getattr(exc, "code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str] = GEN_AI_API_KEY,
        model_name: str = GEMINI_MODEL,
        max_retries: int = GEMINI_MAX_RETRIES,
        backoff_seconds: float = GEMINI_BACKOFF_SECONDS,
        model=None,
    ):
        if model is None:
            if not api_key:
                raise RuntimeError("Missing GEN_AI_API_KEY in environment variables.")
            genai.configure(api_key=api_key)
            model = genai.GenerativeModel(model_name=model_name)
        self.model = model
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds

    async def generate(self, prompt: str) -> str:
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self.model.generate_content_async(prompt)
            except GoogleAPICallError as e:
                status = _status_of(e)
                if status not in RETRYABLE_STATUS_CODES or attempt == self.max_retries:
                    raise UpstreamError(f"Gemini API error: {status} - {e.message}", upstream_status=status) from e
                wait = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "Gemini call failed with %s (attempt %d/%d), retrying in %.1fs",
                    status, attempt, self.max_retries, wait,
                )
                await asyncio.sleep(wait)
                continue

            try:
                text = response.text
            except ValueError:
                # raised by the SDK when the candidate was blocked and has no parts
                text = None
            if not text:
                raise UpstreamError("Invalid response format from Gemini API")
            return text.strip()

        raise UpstreamError("Gemini API retries exhausted")

    async def answer_question(
        self,
        question: str,
        document_text: str,
        history: Sequence[Message],
        language: Optional[str] = "english",
    ) -> str:
        prompt = build_answer_prompt(question, document_text, history, language)
        try:
            return await self.generate(prompt)
        except UpstreamError as e:
            if e.upstream_status == 503:
                return overloaded_message(question, language)
            raise

    async def suggest_questions(self, document_text: str) -> list[str]:
        try:
            response_text = await self.generate(build_suggestions_prompt(document_text))
        except UpstreamError as e:
            logger.error("Error generating suggested questions: %s", e.message)
            return list(DEFAULT_SUGGESTIONS)
        return parse_suggestions(response_text) or list(DEFAULT_SUGGESTIONS)
