"""Gap detection between sequential tasks.

Four boolean signals are computed for every adjacent (predecessor, successor)
pair of an ordered task list:

1. time_gap: successor created more than GAP_TIME_THRESHOLD_DAYS after predecessor
2. action_type_jump: workflow stages at least two steps apart
3. no_dependency: no edge between the two tasks, in either direction
4. skill_jump: both tasks have skill tags and the tag sets are disjoint

A single signal is noise. Two or more produce a Gap whose confidence comes
from a fixed lookup (2 -> 0.6, 3 -> 0.75, 4 -> 1.0); full agreement of all
four signals is maximal certainty.

``analyze_pair`` and ``detect_gaps_in_sequence`` are pure and do no I/O;
``detect_gaps`` loads tasks and edges from the stores first.
"""

import time
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from bridge_engine.core.config import get_settings
from bridge_engine.core.errors import MissingTaskError
from bridge_engine.core.logging import get_logger
from bridge_engine.core.schemas_tasks import (
    Gap,
    GapDetectionMetadata,
    GapDetectionResponse,
    GapIndicators,
    Relationship,
    Task,
)
from bridge_engine.core.task_graph import build_adjacency, has_path
from bridge_engine.core.workflow_vocabulary import (
    UNKNOWN_STAGE,
    WorkflowVocabulary,
    get_vocabulary,
)
from bridge_engine.db.task_embeddings import get_tasks_by_ids
from bridge_engine.db.task_relationships import get_edges

logger = get_logger(__name__)

MIN_GAP_INDICATORS = 2

# indicator count -> confidence
CONFIDENCE_BY_INDICATOR_COUNT = {2: 0.6, 3: 0.75, 4: 1.0}


def confidence_for(indicator_count: int) -> float | None:
    """Confidence for a given number of true indicators, None below the gap threshold."""
    return CONFIDENCE_BY_INDICATOR_COUNT.get(indicator_count)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _time_gap(predecessor: Task, successor: Task, threshold: timedelta) -> bool:
    if predecessor.created_at is None or successor.created_at is None:
        return False
    return _aware(successor.created_at) - _aware(predecessor.created_at) > threshold


def _action_type_jump(predecessor: Task, successor: Task, vocabulary: WorkflowVocabulary) -> bool:
    before = vocabulary.classify_stage(predecessor.task_text)
    after = vocabulary.classify_stage(successor.task_text)
    if UNKNOWN_STAGE in (before, after):
        return False
    return abs(vocabulary.stage_index(after) - vocabulary.stage_index(before)) >= 2


def _skill_jump(predecessor: Task, successor: Task, vocabulary: WorkflowVocabulary) -> bool:
    before = vocabulary.extract_skills(predecessor.task_text)
    after = vocabulary.extract_skills(successor.task_text)
    return bool(before) and bool(after) and before.isdisjoint(after)


def compute_indicators(
    predecessor: Task,
    successor: Task,
    linked_pairs: set[frozenset[str]],
    vocabulary: WorkflowVocabulary,
    time_threshold: timedelta,
) -> GapIndicators:
    return GapIndicators(
        time_gap=_time_gap(predecessor, successor, time_threshold),
        action_type_jump=_action_type_jump(predecessor, successor, vocabulary),
        no_dependency=frozenset((predecessor.task_id, successor.task_id)) not in linked_pairs,
        skill_jump=_skill_jump(predecessor, successor, vocabulary),
    )


def _linked_pairs(relationships: Iterable[Relationship]) -> set[frozenset[str]]:
    return {frozenset(rel.key) for rel in relationships}


def analyze_pair(
    predecessor: Task,
    successor: Task,
    relationships: Iterable[Relationship],
    vocabulary: WorkflowVocabulary | None = None,
    time_threshold_days: float | None = None,
) -> Gap | None:
    """Return a Gap for the pair, or None when fewer than two indicators fire."""
    gaps = detect_gaps_in_sequence(
        [predecessor, successor],
        relationships,
        vocabulary=vocabulary,
        time_threshold_days=time_threshold_days,
    )
    return gaps[0] if gaps else None


def detect_gaps_in_sequence(
    tasks: list[Task],
    relationships: Iterable[Relationship],
    *,
    vocabulary: WorkflowVocabulary | None = None,
    time_threshold_days: float | None = None,
    exclude_cycle_prone: bool = False,
) -> list[Gap]:
    """
    Analyze every adjacent pair of an ordered, already-loaded task list.

    Args:
        tasks: Tasks in sequence order
        relationships: Edges among (at least) these tasks
        vocabulary: Stage/skill vocabulary (defaults to the configured one)
        time_threshold_days: Override for GAP_TIME_THRESHOLD_DAYS
        exclude_cycle_prone: Skip gaps whose successor already reaches the predecessor

    Returns:
        Gaps in sequence order
    """
    vocabulary = vocabulary or get_vocabulary()
    if time_threshold_days is None:
        time_threshold_days = get_settings().GAP_TIME_THRESHOLD_DAYS
    time_threshold = timedelta(days=time_threshold_days)

    relationships = list(relationships)
    linked = _linked_pairs(relationships)
    adjacency = build_adjacency(relationships) if exclude_cycle_prone else {}

    gaps: list[Gap] = []
    for predecessor, successor in zip(tasks, tasks[1:]):
        indicators = compute_indicators(predecessor, successor, linked, vocabulary, time_threshold)
        confidence = confidence_for(indicators.count)

        if confidence is None:
            logger.debug(
                "Gap not detected (insufficient indicators)",
                extra={
                    "predecessor": predecessor.task_id,
                    "successor": successor.task_id,
                    "indicator_count": indicators.count,
                },
            )
            continue

        if exclude_cycle_prone and has_path(adjacency, successor.task_id, predecessor.task_id):
            logger.info(
                "Gap skipped: successor already reaches predecessor",
                extra={"predecessor": predecessor.task_id, "successor": successor.task_id},
            )
            continue

        gaps.append(
            Gap(
                id=str(uuid4()),
                predecessor_task_id=predecessor.task_id,
                successor_task_id=successor.task_id,
                indicators=indicators,
                confidence=confidence,
                detected_at=datetime.now(timezone.utc),
            )
        )

    return gaps


def detect_gaps(
    task_ids: list[str],
    *,
    max_gaps: int | None = None,
    exclude_cycle_prone: bool = False,
) -> GapDetectionResponse:
    """
    Detect gaps across an ordered list of task ids.

    Args:
        task_ids: Task ids in sequence order (at least two)
        max_gaps: Keep only the strongest N gaps
        exclude_cycle_prone: Skip gaps that could only be bridged by closing a cycle

    Returns:
        GapDetectionResponse ordered by confidence, then indicator count

    Raises:
        ValueError: If fewer than two task ids are given
        MissingTaskError: If any task id does not exist
    """
    if len(task_ids) < 2:
        raise ValueError("At least two task IDs are required to detect gaps")

    started = time.monotonic()

    lookup = get_tasks_by_ids(task_ids)
    if lookup.missing_ids:
        raise MissingTaskError(lookup.missing_ids)

    relationships = get_edges(task_ids)

    gaps = detect_gaps_in_sequence(
        lookup.tasks,
        relationships,
        exclude_cycle_prone=exclude_cycle_prone,
    )
    gaps.sort(key=lambda g: (g.confidence, g.indicators.count), reverse=True)
    if max_gaps is not None:
        gaps = gaps[:max_gaps]

    pairs_analyzed = max(0, len(lookup.tasks) - 1)
    duration_ms = int((time.monotonic() - started) * 1000)

    logger.info(
        f"Gap detection: {len(gaps)} gaps across {pairs_analyzed} pairs",
        extra={"task_count": len(lookup.tasks), "duration_ms": duration_ms},
    )

    return GapDetectionResponse(
        gaps=gaps,
        metadata=GapDetectionMetadata(
            total_pairs_analyzed=pairs_analyzed,
            gaps_detected=len(gaps),
            analysis_duration_ms=duration_ms,
        ),
    )
