"""Gap-filling LangGraph agent.

4 nodes:
  detect_gaps -> generate_suggestions -> select_suggestions -> insert_selected

Generation runs per gap on a bounded thread pool; transient failures are
retried with exponential backoff and persistent ones are recorded per gap
without stopping the run.
"""

import asyncio
import concurrent.futures
import time
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, StateGraph

from bridge_engine.chains.generate_bridging_tasks import (
    TaskGenerationError,
    generate_bridging_tasks,
    is_transient_generation_error,
)
from bridge_engine.core.config import get_settings
from bridge_engine.core.gap_detector import detect_gaps
from bridge_engine.core.logging import get_logger
from bridge_engine.core.schemas_tasks import (
    BridgingCandidate,
    BridgingTaskResponse,
    Gap,
    GapFillingResult,
    GapGenerationFailure,
    TaskInsertionResult,
)
from bridge_engine.core.task_insertion import insert_bridging_tasks

logger = get_logger(__name__)

MAX_STEPS = 8


@dataclass
class GapFillingState:
    """State for the gap filling graph."""

    # Input fields
    task_ids: list[str]
    outcome_statement: str | None = None
    manual_examples: list[str] | None = None
    min_confidence: float = 0.0

    # Processing state
    step_count: int = 0
    gaps: list[Gap] = field(default_factory=list)
    suggestions: dict[str, BridgingTaskResponse] = field(default_factory=dict)
    generation_failures: list[GapGenerationFailure] = field(default_factory=list)
    candidates: list[BridgingCandidate] = field(default_factory=list)

    # Output
    insertion: TaskInsertionResult | None = None
    summary: str = ""


def _check_max_steps(state: GapFillingState) -> GapFillingState:
    """Check and increment step count, raise if exceeded."""
    state.step_count += 1
    if state.step_count > MAX_STEPS:
        raise RuntimeError(f"Graph exceeded max steps ({MAX_STEPS})")
    return state


def _generate_with_retry(
    gap: Gap,
    outcome_statement: str | None,
    manual_examples: list[str] | None,
) -> tuple[BridgingTaskResponse | None, GapGenerationFailure | None]:
    settings = get_settings()
    max_retries = settings.GENERATION_MAX_RETRIES

    attempt = 0
    while True:
        try:
            response = generate_bridging_tasks(
                gap_id=gap.id,
                predecessor_task_id=gap.predecessor_task_id,
                successor_task_id=gap.successor_task_id,
                outcome_statement=outcome_statement,
                manual_examples=manual_examples,
            )
            return response, None
        except TaskGenerationError as e:
            if attempt < max_retries and is_transient_generation_error(e):
                delay = settings.GENERATION_RETRY_DELAY * (2**attempt)
                logger.warning(
                    f"Attempt {attempt + 1} failed for gap {gap.id}: {e}. Retry in {delay}s"
                )
                time.sleep(delay)
                attempt += 1
                continue

            logger.error(
                f"Bridging generation failed for gap {gap.id}: {e}",
                extra={"code": e.code.value, "attempts": attempt + 1},
            )
            return None, GapGenerationFailure(
                gap_id=gap.id, code=e.code.value, message=str(e), attempts=attempt + 1
            )


def detect(state: GapFillingState) -> dict[str, Any]:
    """Detect gaps across the task sequence."""
    state = _check_max_steps(state)

    response = detect_gaps(state.task_ids)

    logger.info(
        f"Detected {len(response.gaps)} gaps across {len(state.task_ids)} tasks",
        extra={"pairs_analyzed": response.metadata.total_pairs_analyzed},
    )

    return {"gaps": response.gaps, "step_count": state.step_count}


def should_generate(state: GapFillingState) -> str:
    """Skip generation entirely when nothing was detected."""
    if state.gaps:
        return "generate_suggestions"
    return "end"


def generate_suggestions(state: GapFillingState) -> dict[str, Any]:
    """Generate bridging tasks for every gap on a bounded pool."""
    state = _check_max_steps(state)
    settings = get_settings()

    suggestions: dict[str, BridgingTaskResponse] = {}
    failures: list[GapGenerationFailure] = []

    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max(1, settings.MAX_CONCURRENT_GENERATIONS)
    ) as executor:
        futures = [
            executor.submit(
                _generate_with_retry, gap, state.outcome_statement, state.manual_examples
            )
            for gap in state.gaps
        ]
        # Collect in gap order so output is deterministic
        for gap, future in zip(state.gaps, futures):
            response, failure = future.result()
            if response is not None:
                suggestions[gap.id] = response
            if failure is not None:
                failures.append(failure)

    logger.info(
        f"Generated suggestions for {len(suggestions)}/{len(state.gaps)} gaps",
        extra={"failed": len(failures)},
    )

    return {
        "suggestions": suggestions,
        "generation_failures": failures,
        "step_count": state.step_count,
    }


def select_suggestions(state: GapFillingState) -> dict[str, Any]:
    """Pick the most confident suggestion per gap that clears min_confidence."""
    state = _check_max_steps(state)

    candidates = []
    for gap in state.gaps:
        response = state.suggestions.get(gap.id)
        if response is None:
            continue

        eligible = [t for t in response.bridging_tasks if t.confidence >= state.min_confidence]
        if not eligible:
            logger.info(
                f"No suggestion for gap {gap.id} clears min_confidence",
                extra={"min_confidence": state.min_confidence},
            )
            continue

        best = max(eligible, key=lambda t: t.confidence)
        candidates.append(
            BridgingCandidate(
                task=best,
                predecessor_id=gap.predecessor_task_id,
                successor_id=gap.successor_task_id,
            )
        )

    return {"candidates": candidates, "step_count": state.step_count}


def insert_selected(state: GapFillingState) -> dict[str, Any]:
    """Insert the selected bridging tasks into the graph."""
    state = _check_max_steps(state)

    insertion = insert_bridging_tasks(state.candidates) if state.candidates else None

    summary_parts = [
        f"Detected {len(state.gaps)} gaps",
        f"Generated suggestions for {len(state.suggestions)} gaps",
    ]
    if state.generation_failures:
        summary_parts.append(f"Generation failed for {len(state.generation_failures)} gaps")
    if insertion is not None:
        summary_parts.append(f"Inserted {insertion.inserted_count} bridging tasks")
        if insertion.failures:
            summary_parts.append(f"Rejected {len(insertion.failures)} bridging tasks")

    return {
        "insertion": insertion,
        "summary": ". ".join(summary_parts),
        "step_count": state.step_count,
    }


def _build_graph() -> StateGraph:
    """Build the LangGraph for gap filling."""
    graph = StateGraph(GapFillingState)

    graph.add_node("detect_gaps", detect)
    graph.add_node("generate_suggestions", generate_suggestions)
    graph.add_node("select_suggestions", select_suggestions)
    graph.add_node("insert_selected", insert_selected)

    graph.set_entry_point("detect_gaps")
    graph.add_conditional_edges(
        "detect_gaps",
        should_generate,
        {
            "generate_suggestions": "generate_suggestions",
            "end": END,
        },
    )
    graph.add_edge("generate_suggestions", "select_suggestions")
    graph.add_edge("select_suggestions", "insert_selected")
    graph.add_edge("insert_selected", END)

    return graph


# Compile the graph once at module load
_compiled_graph = _build_graph().compile()


def run_gap_filling_agent(
    task_ids: list[str],
    outcome_statement: str | None = None,
    manual_examples: list[str] | None = None,
    min_confidence: float = 0.0,
) -> GapFillingResult:
    """
    Run the gap filling graph over an ordered task sequence.

    Args:
        task_ids: Task ids in sequence order
        outcome_statement: Optional user outcome passed to the generator
        manual_examples: Example tasks used when the corpus has no similar tasks
        min_confidence: Suggestions below this confidence are never inserted

    Returns:
        GapFillingResult

    Raises:
        ValueError: If fewer than two task ids are given
        MissingTaskError: If any task id does not exist
        RuntimeError: If graph exceeds max steps
    """
    initial_state = GapFillingState(
        task_ids=task_ids,
        outcome_statement=outcome_statement,
        manual_examples=manual_examples,
        min_confidence=min_confidence,
    )

    final_state = _compiled_graph.invoke(initial_state)

    candidates = final_state.get("candidates") or []
    gaps = final_state.get("gaps") or []
    result = GapFillingResult(
        gaps=gaps,
        suggestions=final_state.get("suggestions") or {},
        selected_task_ids=[c.task.id for c in candidates],
        generation_failures=final_state.get("generation_failures") or [],
        insertion=final_state.get("insertion"),
        summary=final_state.get("summary") or "No gaps detected",
    )

    logger.info(
        "Completed gap filling graph",
        extra={
            "gaps": len(result.gaps),
            "selected": len(result.selected_task_ids),
            "inserted": result.insertion.inserted_count if result.insertion else 0,
        },
    )

    return result


async def run_gap_filling_agent_async(
    task_ids: list[str],
    outcome_statement: str | None = None,
    manual_examples: list[str] | None = None,
    min_confidence: float = 0.0,
) -> GapFillingResult:
    """Async wrapper around run_gap_filling_agent using thread pool."""
    return await asyncio.to_thread(
        run_gap_filling_agent,
        task_ids,
        outcome_statement,
        manual_examples,
        min_confidence,
    )
