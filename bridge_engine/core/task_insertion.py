"""Graph-safe insertion of AI-generated bridging tasks.

Each candidate goes through: schema validation -> context fetch -> id
availability -> duplicate detection -> cycle check (with one auto-resolution
attempt) -> commit.

The stores offer no multi-statement transaction, so the commit is a saga:
every write records its compensating action, and a failure part-way runs the
recorded compensations in reverse. An edge deleted to break a cycle is part
of the same saga, so a rejected candidate restores it. A caller never observes
a bridging task with a partial edge set.

Known limitation: the read-check-write sequence is not serialized. Two
insertions touching overlapping subgraphs can race; the edge set is re-read
right before the cycle check to keep the window small. Callers that need
strict serializability must run one insertion worker at a time.

Usage:
    from bridge_engine.core.task_insertion import insert_bridging_tasks

    result = insert_bridging_tasks([
        {"task": bridging_task, "predecessor_id": "t1", "successor_id": "t2"},
    ])
    for failure in result.failures:
        print(failure.error_code, failure.details)
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from bridge_engine.core.config import get_settings
from bridge_engine.core.embeddings import embed_text
from bridge_engine.core.errors import TaskInsertionError, TaskInsertionErrorCode
from bridge_engine.core.logging import get_logger
from bridge_engine.core.schemas_tasks import (
    BridgingCandidate,
    CandidateOutcome,
    Relationship,
    RelationshipType,
    RemovedEdge,
    Task,
    TaskInsertionResult,
)
from bridge_engine.core.task_graph import find_closing_path, select_edge_to_break
from bridge_engine.db.task_embeddings import (
    delete_task,
    get_existing_task_ids,
    get_tasks_by_ids,
    insert_task,
    search_similar_tasks,
)
from bridge_engine.db.task_relationships import delete_edge, get_edges, insert_edges

logger = get_logger(__name__)

CYCLE_TEXT_LIMIT = 50


# =============================================================================
# Saga
# =============================================================================


@dataclass
class SagaStep:
    name: str
    undo: Callable[[], Any]


@dataclass
class InsertionSaga:
    """Runs writes in order and remembers how to undo each one."""

    label: str
    completed: list[SagaStep] = field(default_factory=list)

    def run(self, name: str, action: Callable[[], Any], undo: Callable[[], Any]) -> Any:
        result = action()
        self.completed.append(SagaStep(name=name, undo=undo))
        return result

    def compensate(self) -> list[str]:
        """Undo completed steps newest-first. Returns the names of steps that failed to undo."""
        failed = []
        for step in reversed(self.completed):
            try:
                step.undo()
                logger.info(f"Compensated step '{step.name}'", extra={"saga": self.label})
            except Exception as e:
                logger.error(
                    f"Compensation for step '{step.name}' failed: {e}",
                    extra={"saga": self.label},
                )
                failed.append(step.name)
        self.completed.clear()
        return failed


# =============================================================================
# Per-candidate checks
# =============================================================================


@dataclass
class _CandidateContext:
    candidate: BridgingCandidate
    task_id: str
    final_text: str
    document_id: str | None = None
    embedding: list[float] = field(default_factory=list)
    task_texts: dict[str, str] = field(default_factory=dict)
    removed_edges: list[RemovedEdge] = field(default_factory=list)


def _parse_candidate(raw: BridgingCandidate | dict[str, Any]) -> BridgingCandidate:
    if isinstance(raw, BridgingCandidate):
        return raw
    try:
        return BridgingCandidate.model_validate(raw)
    except ValidationError as e:
        task = raw.get("task") if isinstance(raw, dict) else None
        task_id = task.get("id") if isinstance(task, dict) else getattr(task, "id", None)
        raise TaskInsertionError(
            "Bridging task failed validation",
            TaskInsertionErrorCode.VALIDATION_ERROR,
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            task_id=task_id,
        ) from e


def _load_context(ctx: _CandidateContext, require_same_document: bool) -> None:
    candidate = ctx.candidate
    lookup = get_tasks_by_ids([candidate.predecessor_id, candidate.successor_id])
    if lookup.missing_ids:
        raise TaskInsertionError(
            f"Referenced tasks not found: {', '.join(lookup.missing_ids)}",
            TaskInsertionErrorCode.TASK_NOT_FOUND,
            task_id=ctx.task_id,
        )

    tasks = lookup.by_id()
    predecessor = tasks[candidate.predecessor_id]
    successor = tasks[candidate.successor_id]

    if require_same_document and predecessor.document_id != successor.document_id:
        raise TaskInsertionError(
            "Predecessor and successor belong to different documents",
            TaskInsertionErrorCode.CONTEXT_MISMATCH,
            [
                f"Predecessor document: {predecessor.document_id}",
                f"Successor document: {successor.document_id}",
            ],
            task_id=ctx.task_id,
        )

    ctx.document_id = predecessor.document_id or successor.document_id
    if not ctx.document_id:
        raise TaskInsertionError(
            f"Unable to resolve document context for task {ctx.task_id}",
            TaskInsertionErrorCode.CONTEXT_MISMATCH,
            task_id=ctx.task_id,
        )

    ctx.task_texts = {
        predecessor.task_id: predecessor.task_text,
        successor.task_id: successor.task_text,
        ctx.task_id: ctx.final_text,
    }


def _ensure_id_available(ctx: _CandidateContext) -> None:
    if get_existing_task_ids([ctx.task_id]):
        raise TaskInsertionError(
            f"Task identifier already exists: {ctx.task_id}",
            TaskInsertionErrorCode.TASK_ID_EXISTS,
            [f"Task ID {ctx.task_id} already exists"],
            task_id=ctx.task_id,
        )


def _check_duplicates(ctx: _CandidateContext, threshold: float, top_k: int) -> None:
    ctx.embedding = embed_text(ctx.final_text)
    results = search_similar_tasks(ctx.embedding, threshold=threshold, limit=top_k)
    matches = [r for r in results if r.task_id != ctx.task_id and r.similarity >= threshold]
    if not matches:
        return

    duplicate = max(matches, key=lambda r: r.similarity)
    raise TaskInsertionError(
        "Duplicate task detected",
        TaskInsertionErrorCode.DUPLICATE_TASK,
        [
            f"Task '{ctx.final_text}' duplicates existing task "
            f"'{duplicate.task_text}' (similarity: {duplicate.similarity:.2f})"
        ],
        task_id=ctx.task_id,
        conflicting_task_id=duplicate.task_id,
    )


def _truncate(text: str) -> str:
    if len(text) > CYCLE_TEXT_LIMIT:
        return f"{text[:CYCLE_TEXT_LIMIT - 3]}..."
    return text


def _describe_cycle(ctx: _CandidateContext, closing_path: list[str]) -> list[str]:
    """pred -> candidate -> succ -> ... -> pred, as task texts."""
    candidate = ctx.candidate
    node_ids = [candidate.predecessor_id, ctx.task_id] + closing_path

    unknown = [n for n in dict.fromkeys(node_ids) if n not in ctx.task_texts]
    if unknown:
        try:
            for task in get_tasks_by_ids(unknown).tasks:
                ctx.task_texts[task.task_id] = task.task_text
        except Exception as e:
            logger.warning(f"Failed to load task texts for cycle display: {e}")

    return [
        f'"{_truncate(ctx.task_texts[n])}"' if n in ctx.task_texts else f"Task {n[:8]}"
        for n in node_ids
    ]


def _rollback(ctx: _CandidateContext, saga: InsertionSaga) -> list[str]:
    """Undo every write for this candidate; restored edges are no longer reported."""
    undo_failures = saga.compensate()
    ctx.removed_edges.clear()
    return undo_failures


def _try_break_path(
    ctx: _CandidateContext, closing_path: list[str], edges: list[Relationship], saga: InsertionSaga
) -> None:
    edge = select_edge_to_break(closing_path)
    if edge is None:
        return

    source, target = edge
    direct = len(closing_path) == 2
    # delete_edge drops every row for the pair, so all of them are restored on undo
    deleted_rows = [e for e in edges if e.key == edge]
    try:
        saga.run(
            f"delete_edge {source}->{target}",
            lambda: delete_edge(source, target),
            lambda: insert_edges(deleted_rows),
        )
    except Exception as e:
        logger.error(
            f"Failed to remove conflicting edge {source} -> {target}: {e}",
            extra={"task_id": ctx.task_id},
        )
        return

    pred_text = _truncate(ctx.task_texts.get(ctx.candidate.predecessor_id, ""))
    succ_text = _truncate(ctx.task_texts.get(ctx.candidate.successor_id, ""))
    if direct:
        reason = f'Removed to allow bridging task between "{pred_text}" and "{succ_text}"'
    else:
        reason = f'Removed to break indirect path between "{succ_text}" and "{pred_text}"'

    ctx.removed_edges.append(RemovedEdge(source=source, target=target, reason=reason))
    logger.info(
        f"Removed {'direct back-edge' if direct else 'path edge'} {source} -> {target} to break cycle",
        extra={"task_id": ctx.task_id, "path_length": len(closing_path) - 1},
    )


def _check_cycles(ctx: _CandidateContext, saga: InsertionSaga) -> None:
    candidate = ctx.candidate

    # Re-read right before checking to keep the race window small
    edges = get_edges()
    closing_path = find_closing_path(edges, candidate.predecessor_id, candidate.successor_id)
    if closing_path is None:
        return

    logger.warning(
        "Insertion would close a cycle; attempting one auto-resolution",
        extra={
            "task_id": ctx.task_id,
            "predecessor": candidate.predecessor_id,
            "successor": candidate.successor_id,
        },
    )
    _try_break_path(ctx, closing_path, edges, saga)

    closing_path = find_closing_path(get_edges(), candidate.predecessor_id, candidate.successor_id)
    if closing_path is None:
        return

    cycle = _describe_cycle(ctx, closing_path)
    details = [
        f"Detected cycle: {' → '.join(cycle)}",
        "There is already a dependency path from the successor back to the predecessor.",
        "One conflicting edge was targeted for removal but the cycle could not be resolved.",
    ]
    undo_failures = _rollback(ctx, saga)
    if undo_failures:
        details.append(f"Compensation failed for: {', '.join(undo_failures)}")
    raise TaskInsertionError(
        "Cannot insert bridging task - would create circular dependency",
        TaskInsertionErrorCode.CYCLE_DETECTED,
        details,
        task_id=ctx.task_id,
        cycle_path=cycle,
    )


def _commit(ctx: _CandidateContext, saga: InsertionSaga) -> int:
    candidate = ctx.candidate
    bridging = candidate.task

    task = Task(
        task_id=ctx.task_id,
        task_text=ctx.final_text,
        document_id=ctx.document_id,
        created_at=datetime.now(timezone.utc),
        embedding=ctx.embedding,
    )
    edge_fields = {
        "relationship_type": RelationshipType.PREREQUISITE,
        "detection_method": "ai",
        "confidence_score": min(max(bridging.confidence, 0.0), 1.0),
        "reasoning": bridging.reasoning,
    }
    edges = [
        Relationship(source_task_id=candidate.predecessor_id, target_task_id=ctx.task_id, **edge_fields),
        Relationship(source_task_id=ctx.task_id, target_task_id=candidate.successor_id, **edge_fields),
    ]

    try:
        saga.run("insert_task", lambda: insert_task(task), lambda: delete_task(ctx.task_id))
        for edge in edges:
            saga.run(
                f"insert_edge {edge.source_task_id}->{edge.target_task_id}",
                lambda edge=edge: insert_edges([edge]),
                lambda edge=edge: delete_edge(edge.source_task_id, edge.target_task_id),
            )
    except Exception as e:
        undo_failures = _rollback(ctx, saga)
        details = [f"Rolled back {ctx.task_id}: {e}"]
        if undo_failures:
            details.append(f"Compensation failed for: {', '.join(undo_failures)}")
        raise TaskInsertionError(
            f"Failed to insert bridging task {ctx.task_id}: {e}",
            TaskInsertionErrorCode.INSERTION_FAILED,
            details,
            task_id=ctx.task_id,
        ) from e

    return len(edges)


# =============================================================================
# Public API
# =============================================================================


def _record_inserted(
    result: TaskInsertionResult, candidate: BridgingCandidate, relationships: int
) -> None:
    result.inserted_count += 1
    result.task_ids.append(candidate.task.id)
    result.relationships_created += relationships
    result.outcomes.append(
        CandidateOutcome(
            task_id=candidate.task.id,
            predecessor_id=candidate.predecessor_id,
            successor_id=candidate.successor_id,
            status="inserted",
        )
    )


def _insert_one(
    candidate: BridgingCandidate,
    require_same_document: bool,
    removed_edges: list[RemovedEdge],
) -> int:
    settings = get_settings()
    ctx = _CandidateContext(
        candidate=candidate,
        task_id=candidate.task.id,
        final_text=candidate.task.final_text,
    )
    # Shared by cycle resolution and commit so a rejected candidate leaves the graph as it found it
    saga = InsertionSaga(label=ctx.task_id)
    try:
        _load_context(ctx, require_same_document)
        _ensure_id_available(ctx)
        _check_duplicates(
            ctx,
            threshold=settings.DUPLICATE_SIMILARITY_THRESHOLD,
            top_k=settings.DUPLICATE_SEARCH_TOP_K,
        )
        _check_cycles(ctx, saga)
        return _commit(ctx, saga)
    except Exception:
        if saga.completed:
            _rollback(ctx, saga)
        raise
    finally:
        removed_edges.extend(ctx.removed_edges)


def insert_bridging_task(
    candidate: BridgingCandidate | dict[str, Any],
    *,
    require_same_document: bool | None = None,
) -> TaskInsertionResult:
    """
    Insert a single bridging task, raising on any failure.

    Raises:
        TaskInsertionError: DUPLICATE_TASK, CYCLE_DETECTED, INSERTION_FAILED, ...
    """
    if require_same_document is None:
        require_same_document = get_settings().REQUIRE_SAME_DOCUMENT

    parsed = _parse_candidate(candidate)
    result = TaskInsertionResult()
    relationships = _insert_one(parsed, require_same_document, result.removed_edges)
    _record_inserted(result, parsed, relationships)
    result.cycles_resolved = len(result.removed_edges)
    return result


def insert_bridging_tasks(
    candidates: list[BridgingCandidate | dict[str, Any]],
    *,
    require_same_document: bool | None = None,
) -> TaskInsertionResult:
    """
    Validate and commit bridging tasks into the dependency graph.

    Candidates are processed independently, in order. A candidate that fails a
    check is reported in ``outcomes`` and the rest of the batch continues;
    tasks already committed stay committed. Embedding and store failures
    outside the commit saga propagate unchanged.

    Args:
        candidates: BridgingCandidate objects or dicts of the same shape
        require_same_document: Override REQUIRE_SAME_DOCUMENT

    Returns:
        TaskInsertionResult with aggregate counts and per-candidate outcomes

    Raises:
        TaskInsertionError: VALIDATION_ERROR when the batch is empty
    """
    if not candidates:
        raise TaskInsertionError(
            "No tasks provided for insertion", TaskInsertionErrorCode.VALIDATION_ERROR
        )

    if require_same_document is None:
        require_same_document = get_settings().REQUIRE_SAME_DOCUMENT

    started = time.monotonic()
    result = TaskInsertionResult()

    for raw in candidates:
        candidate = None
        try:
            candidate = _parse_candidate(raw)
            relationships = _insert_one(candidate, require_same_document, result.removed_edges)
        except TaskInsertionError as e:
            logger.warning(
                f"Bridging task rejected: {e}",
                extra={"code": e.code.value, "task_id": e.task_id},
            )
            result.outcomes.append(
                CandidateOutcome(
                    task_id=e.task_id,
                    predecessor_id=candidate.predecessor_id if candidate else None,
                    successor_id=candidate.successor_id if candidate else None,
                    status="failed",
                    error_code=e.code,
                    message=str(e),
                    details=e.details,
                    conflicting_task_id=e.conflicting_task_id,
                    cycle_path=e.cycle_path,
                )
            )
            continue

        _record_inserted(result, candidate, relationships)

    result.cycles_resolved = len(result.removed_edges)

    logger.info(
        f"Inserted {result.inserted_count} of {len(candidates)} bridging tasks",
        extra={
            "relationships_created": result.relationships_created,
            "cycles_resolved": result.cycles_resolved,
            "failed": len(result.failures),
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return result
