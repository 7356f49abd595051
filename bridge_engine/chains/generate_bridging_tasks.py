"""
Bridging Task Generation Chain - proposes tasks that fill a detected gap.

Grounds the LLM with semantically similar tasks from the corpus (query:
"<predecessor> followed by <successor>") and any manual examples, then
validates the JSON response strictly against GeneratedBridgingTaskBatch.
"""

import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

import openai
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from bridge_engine.core.config import get_settings
from bridge_engine.core.embeddings import embed_text
from bridge_engine.core.llm import get_llm, parse_llm_json
from bridge_engine.core.logging import get_logger
from bridge_engine.core.schemas_tasks import (
    BridgingTask,
    BridgingTaskResponse,
    GeneratedBridgingTask,
    GeneratedBridgingTaskBatch,
    SimilarTask,
)
from bridge_engine.db.task_embeddings import get_tasks_by_ids, search_similar_tasks

logger = get_logger(__name__)

_EXAMPLE_TEXT_LIMIT = 220


class TaskGenerationErrorCode(str, Enum):
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    GENERATION_FAILED = "GENERATION_FAILED"
    NO_SUGGESTIONS = "NO_SUGGESTIONS"
    EMBEDDING_ERROR = "EMBEDDING_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    REQUIRES_MANUAL_EXAMPLES = "REQUIRES_MANUAL_EXAMPLES"
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"


class TaskGenerationError(Exception):
    """Raised when bridging tasks cannot be generated for a gap."""

    def __init__(
        self,
        message: str,
        code: TaskGenerationErrorCode,
        metadata: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.metadata = metadata or {}


SYSTEM_PROMPT = """You are helping to fill a logical gap in a user's prioritized task plan.

Generate 1-3 bridging tasks that logically connect the predecessor to the successor.

Constraints:
- Each task must take 1-4 weeks (8-160 hours).
- Tasks must be specific, actionable, and align with the user's outcome.
- Avoid duplicating the predecessor or successor tasks.
- Provide a confidence score (0.0-1.0) representing how well the task fills the gap.
- Assign a cognition level: "low", "medium", or "high".
- Explain the reasoning for each task in 1-3 sentences.

Respond ONLY with valid JSON of this shape:
{"bridging_tasks": [{"task_text": str, "estimated_hours": int, "cognition_level": "low"|"medium"|"high", "confidence": float, "reasoning": str}]}"""

USER_PROMPT = """USER OUTCOME:
{outcome}

GAP CONTEXT:
Predecessor Task: "{predecessor}"
Successor Task: "{successor}"

SEMANTIC SEARCH RESULTS (examples of similar tasks):
{search_results}

MANUAL EXAMPLES (if provided):
{manual_examples}"""


def _format_search_results(results: list[SimilarTask]) -> str:
    if not results:
        return "None found."
    lines = []
    for i, result in enumerate(results, start=1):
        text = result.task_text
        if len(text) > _EXAMPLE_TEXT_LIMIT:
            text = f"{text[:_EXAMPLE_TEXT_LIMIT - 3]}..."
        lines.append(f"{i}. {text} ({round(result.similarity * 100)}% similar)")
    return "\n".join(lines)


def _format_manual_examples(examples: list[str] | None) -> str:
    if not examples:
        return "No manual examples provided."
    return "\n".join(f"- {example.strip()}" for example in examples)


def _normalize_generation_error(error: Exception) -> TaskGenerationError:
    if isinstance(error, TaskGenerationError):
        return error

    message = str(error)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return TaskGenerationError(
            "AI service error: Invalid authentication while generating bridging tasks.",
            TaskGenerationErrorCode.AI_SERVICE_ERROR,
            {"original_error": message},
        )
    if isinstance(error, openai.RateLimitError) or "rate limit" in message.lower():
        return TaskGenerationError(
            f"AI service error: rate limit: {message}",
            TaskGenerationErrorCode.AI_SERVICE_ERROR,
            {"original_error": message},
        )
    if isinstance(error, openai.APITimeoutError):
        return TaskGenerationError(
            f"Task generation failed: timeout: {message}",
            TaskGenerationErrorCode.GENERATION_FAILED,
            {"original_error": message},
        )
    if isinstance(error, openai.APIConnectionError):
        return TaskGenerationError(
            f"Task generation failed: connection error: {message}",
            TaskGenerationErrorCode.GENERATION_FAILED,
            {"original_error": message},
        )
    return TaskGenerationError(
        f"Task generation failed: {message}",
        TaskGenerationErrorCode.GENERATION_FAILED,
        {"original_error": message},
    )


def is_transient_generation_error(error: Exception) -> bool:
    """True when retrying the same generation might succeed."""
    if not isinstance(error, TaskGenerationError):
        return False

    message = str(error).lower()
    if error.code == TaskGenerationErrorCode.AI_SERVICE_ERROR:
        return any(marker in message for marker in ("rate limit", "temporarily", "try again"))
    if error.code == TaskGenerationErrorCode.GENERATION_FAILED:
        return any(
            marker in message for marker in ("timeout", "temporarily", "overload", "connection")
        )
    return False


def _dedupe(
    suggestions: list[GeneratedBridgingTask],
    predecessor_text: str,
    successor_text: str,
) -> list[GeneratedBridgingTask]:
    seen = {predecessor_text.strip().lower(), successor_text.strip().lower()}
    unique = []
    for suggestion in suggestions:
        normalized = suggestion.task_text.strip().lower()
        if len(normalized) < 10 or normalized in seen:
            continue
        seen.add(normalized)
        unique.append(suggestion)
    return unique


def _search_examples(predecessor_text: str, successor_text: str) -> list[SimilarTask]:
    settings = get_settings()
    query = f"{predecessor_text} followed by {successor_text}"
    try:
        embedding = embed_text(query)
    except ValueError as e:
        raise TaskGenerationError(str(e), TaskGenerationErrorCode.EMBEDDING_ERROR) from e
    except openai.OpenAIError as e:
        raise _normalize_generation_error(e) from e

    try:
        return search_similar_tasks(
            embedding,
            threshold=settings.BRIDGING_SEARCH_THRESHOLD,
            limit=settings.BRIDGING_SEARCH_TOP_K,
        )
    except Exception as e:
        # Examples are optional context; manual examples can stand in
        logger.warning(f"Semantic search for bridging examples failed: {e}")
        return []


def generate_bridging_tasks(
    gap_id: str,
    predecessor_task_id: str,
    successor_task_id: str,
    outcome_statement: str | None = None,
    manual_examples: list[str] | None = None,
) -> BridgingTaskResponse:
    """
    Generate 1-3 bridging task suggestions for a gap.

    Args:
        gap_id: Gap the suggestions belong to
        predecessor_task_id: Task before the gap
        successor_task_id: Task after the gap
        outcome_statement: Optional user outcome used to steer suggestions
        manual_examples: Example tasks supplied when the corpus has none

    Returns:
        BridgingTaskResponse with reviewed-required suggestions

    Raises:
        TaskGenerationError: On missing tasks, missing examples, LLM failure,
            malformed output, or when every suggestion is a duplicate
    """
    if not gap_id or not predecessor_task_id or not successor_task_id:
        raise TaskGenerationError(
            "Missing required parameters", TaskGenerationErrorCode.VALIDATION_ERROR
        )

    lookup = get_tasks_by_ids([predecessor_task_id, successor_task_id])
    if lookup.missing_ids:
        raise TaskGenerationError(
            f"Missing tasks for IDs: {', '.join(lookup.missing_ids)}",
            TaskGenerationErrorCode.TASK_NOT_FOUND,
            {"missing_ids": lookup.missing_ids},
        )

    tasks = lookup.by_id()
    predecessor_text = tasks[predecessor_task_id].task_text.strip()
    successor_text = tasks[successor_task_id].task_text.strip()
    if not predecessor_text or not successor_text:
        raise TaskGenerationError(
            "Predecessor or successor task is missing description text",
            TaskGenerationErrorCode.TASK_NOT_FOUND,
        )

    search_results = _search_examples(predecessor_text, successor_text)
    if not search_results and not manual_examples:
        raise TaskGenerationError(
            "No similar tasks found in the existing corpus. "
            "Please provide 1-2 example tasks to help generate relevant suggestions.",
            TaskGenerationErrorCode.REQUIRES_MANUAL_EXAMPLES,
            {"requires_manual_examples": True},
        )

    messages = [
        SystemMessage(content=SYSTEM_PROMPT),
        HumanMessage(
            content=USER_PROMPT.format(
                outcome=outcome_statement or "Outcome not provided.",
                predecessor=predecessor_text,
                successor=successor_text,
                search_results=_format_search_results(search_results),
                manual_examples=_format_manual_examples(manual_examples),
            )
        ),
    ]

    start = time.time()
    try:
        response = get_llm().invoke(messages)
    except Exception as e:
        raise _normalize_generation_error(e) from e

    try:
        batch = parse_llm_json(response.content, GeneratedBridgingTaskBatch)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Malformed bridging task response for gap {gap_id}: {e}")
        raise TaskGenerationError(
            f"Task generation failed: malformed AI response: {e}",
            TaskGenerationErrorCode.GENERATION_FAILED,
        ) from e

    suggestions = _dedupe(batch.bridging_tasks, predecessor_text, successor_text)
    if not suggestions:
        raise TaskGenerationError(
            "The AI did not return any valid bridging tasks",
            TaskGenerationErrorCode.NO_SUGGESTIONS,
        )

    created_at = datetime.now(timezone.utc)
    bridging_tasks = [
        BridgingTask(
            id=str(uuid4()),
            gap_id=gap_id,
            task_text=s.task_text.strip(),
            estimated_hours=s.estimated_hours,
            cognition_level=s.cognition_level,
            confidence=min(1.0, max(0.0, s.confidence)),
            reasoning=s.reasoning,
            created_at=created_at,
        )
        for s in suggestions
    ]
    duration_ms = int((time.time() - start) * 1000)

    logger.info(
        f"Generated {len(bridging_tasks)} bridging tasks for gap {gap_id}",
        extra={"search_results": len(search_results), "duration_ms": duration_ms},
    )

    return BridgingTaskResponse(
        bridging_tasks=bridging_tasks,
        search_results_count=len(search_results),
        generation_duration_ms=duration_ms,
    )
