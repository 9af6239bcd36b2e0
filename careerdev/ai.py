from __future__ import annotations

import json
import re
import time
from typing import Any

from openai import APIConnectionError, APITimeoutError, InternalServerError, OpenAI, RateLimitError

from careerdev.config import OPENAI_API_KEY, OPENAI_FALLBACK_MODELS, OPENAI_MODEL, logger
from careerdev.utils import safe_text

QUIZ_BATCH_SIZE = 10
QUIZ_DIFFICULTIES = {"easy", "medium", "hard"}
QUIZ_SYSTEM_PROMPT = (
    "You are a quiz generator. Return only valid JSON arrays with no markdown formatting or extra text. "
    "Never wrap the JSON in code fences."
)
QUIZ_TEMPERATURE = 0.3
QUIZ_TOKENS_PER_QUESTION = 200
QUIZ_MAX_TOKENS = 2000

TRANSIENT_OPENAI_ERRORS = (APIConnectionError, APITimeoutError, InternalServerError, RateLimitError)
ATTEMPTS_PER_MODEL = 3
RETRY_DELAY_SECONDS = 0.35

client = OpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

if client is None:
    logger.warning("OPENAI_API_KEY is missing. Quiz generation requests will not reach OpenAI.")


def candidate_models() -> list[str]:
    models: list[str] = []
    for model in [OPENAI_MODEL, *OPENAI_FALLBACK_MODELS]:
        if model and model not in models:
            models.append(model)
    return models


def clean_json_response(text: str) -> str:
    cleaned = safe_text(text)
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*```$", "", cleaned)
    return cleaned.strip()


def parse_quiz_items(content: Any) -> list[dict[str, Any]] | None:
    """Pull the question objects out of a chat reply.

    Returns None when the reply is not a JSON array holding at least one object.
    """
    if not isinstance(content, str) or not content.strip():
        return None
    try:
        parsed = json.loads(clean_json_response(content))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    items = [item for item in parsed if isinstance(item, dict)]
    return items or None


def request_quiz_batch(prompt: str, count: int) -> tuple[list[dict[str, Any]] | None, bool, str | None]:
    """Ask each configured model in turn for one batch of questions.

    Returns ``(items, answered, error)``. ``answered`` is True once any model
    replied, even when no reply could be parsed.
    """
    if client is None:
        return None, False, "OPENAI_API_KEY not configured"

    answered = False
    last_error: str | None = None
    for model in candidate_models():
        for attempt in range(ATTEMPTS_PER_MODEL):
            try:
                response = client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": QUIZ_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=QUIZ_TEMPERATURE,
                    max_tokens=min(count * QUIZ_TOKENS_PER_QUESTION, QUIZ_MAX_TOKENS),
                )
            except TRANSIENT_OPENAI_ERRORS as exc:
                last_error = f"{type(exc).__name__} on model {model}"
                logger.warning("OpenAI request failed for model '%s' (attempt %s): %s", model, attempt + 1, exc)
                if attempt + 1 < ATTEMPTS_PER_MODEL:
                    time.sleep(RETRY_DELAY_SECONDS * (attempt + 1))
                    continue
                break
            except Exception as exc:
                last_error = f"{type(exc).__name__} on model {model}"
                logger.exception("OpenAI request failed for model '%s'.", model)
                break

            answered = True
            content = response.choices[0].message.content if response.choices else None
            items = parse_quiz_items(content)
            if items:
                return items, True, None
            last_error = f"unparseable quiz from model {model}"
            logger.warning("Model '%s' returned no usable quiz JSON; trying the next model.", model)
            break

    return None, answered, last_error


def fallback_quiz_question(topic: str, question_id: int) -> dict[str, Any]:
    return {
        "id": question_id,
        "question": f"What is a key concept in {topic}?",
        "options": [
            "Basic understanding",
            "Advanced application",
            "Practical implementation",
            "Theoretical foundation",
        ],
        "correct_answers": [0],
        "multiple_choice": False,
        "difficulty": "medium",
        "explanation": "This is a fundamental concept that requires understanding.",
        "category": topic,
    }


def normalize_quiz_question(raw: dict[str, Any], topic: str, default_id: int) -> dict[str, Any]:
    options = raw.get("options")
    options = [safe_text(str(option)) for option in options] if isinstance(options, list) else []
    answers = raw.get("correct_answers", raw.get("correctAnswers"))
    answers = [int(index) for index in answers if isinstance(index, int)] if isinstance(answers, list) else [0]
    difficulty = safe_text(str(raw.get("difficulty") or "")).lower()
    question_id = raw.get("id")
    return {
        "id": question_id if isinstance(question_id, int) and question_id > 0 else default_id,
        "question": safe_text(str(raw.get("question") or "")),
        "options": options,
        "correct_answers": answers or [0],
        "multiple_choice": bool(raw.get("multiple_choice", raw.get("multipleChoice", False))),
        "difficulty": difficulty if difficulty in QUIZ_DIFFICULTIES else "medium",
        "explanation": safe_text(str(raw.get("explanation") or "")),
        "category": safe_text(str(raw.get("category") or "")) or topic,
    }


def build_quiz_prompt(topic: str, count: int, batch: int, starting_id: int, duration_minutes: int | None) -> str:
    duration_line = f"The quiz is timed at {duration_minutes} minutes; pitch difficulty accordingly.\n" if duration_minutes else ""
    return (
        f'Generate exactly {count} multiple choice questions about "{topic}".\n'
        f"This is batch {batch} of a larger quiz (questions {starting_id}-{starting_id + count - 1}).\n"
        f"{duration_line}"
        "Return only a JSON array. Each item has: id (integer, starting at "
        f"{starting_id}), question, options (exactly 4 strings), correct_answers (indices 0-3), "
        'multiple_choice (true only when more than one answer is correct), difficulty ("easy", "medium" or "hard"), '
        f"explanation (under 100 characters), category (default \"{topic}\").\n"
        "Make the questions practical and vary difficulty across the batch."
    )


def generate_quiz_questions(
    topic: str,
    num_questions: int,
    batch: int = 1,
    duration_minutes: int | None = None,
) -> tuple[list[dict[str, Any]], bool, str | None]:
    """Generate one batch of quiz questions.

    Returns ``(questions, ai_generated, ai_error)``. When no model can be
    reached the question list is empty and ``ai_generated`` is False. When
    every model answers but none with usable JSON, the batch degrades to a
    single generic question.
    """
    topic = safe_text(topic)
    batch = max(1, int(batch))
    count = max(1, min(int(num_questions), QUIZ_BATCH_SIZE))
    starting_id = (batch - 1) * QUIZ_BATCH_SIZE + 1

    prompt = build_quiz_prompt(topic, count, batch, starting_id, duration_minutes)
    items, answered, ai_error = request_quiz_batch(prompt, count)
    if items is None:
        if not answered:
            return [], False, ai_error
        logger.warning("No usable quiz JSON for topic '%s'; using fallback question.", topic)
        return [fallback_quiz_question(topic, starting_id)], True, None
    return [normalize_quiz_question(item, topic, starting_id + index) for index, item in enumerate(items)], True, None
