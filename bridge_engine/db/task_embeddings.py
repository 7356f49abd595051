"""Database operations for task records and their embeddings.

Tasks live in the ``task_embeddings`` table (one row per task, with the
pgvector embedding alongside the text). Similarity search goes through the
``search_similar_tasks`` RPC.
"""

import json
from typing import Any

from bridge_engine.core.logging import get_logger
from bridge_engine.core.schemas_tasks import SimilarTask, Task, TaskLookup
from bridge_engine.db.supabase_client import StoreError, execute, get_supabase

logger = get_logger(__name__)

TASKS_TABLE = "task_embeddings"
_TASK_COLUMNS = "task_id, task_text, document_id, created_at"


def _parse_vector(value: Any) -> list[float] | None:
    """pgvector columns come back as '[0.1,0.2,...]' strings over PostgREST."""
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return [float(v) for v in value]


def _row_to_task(row: dict[str, Any]) -> Task:
    return Task(
        task_id=row["task_id"],
        task_text=row.get("task_text") or "",
        document_id=row.get("document_id"),
        created_at=row.get("created_at"),
        embedding=_parse_vector(row.get("embedding")),
    )


def get_tasks_by_ids(task_ids: list[str]) -> TaskLookup:
    """
    Fetch tasks by id, preserving the requested order.

    Args:
        task_ids: Task ids to look up

    Returns:
        TaskLookup with found tasks (in request order) and the ids not found
    """
    if not task_ids:
        return TaskLookup()

    unique_ids = list(dict.fromkeys(task_ids))
    query = get_supabase().table(TASKS_TABLE).select(_TASK_COLUMNS).in_("task_id", unique_ids)
    rows = execute(query, "get_tasks_by_ids")

    found = {}
    for row in rows:
        if row.get("task_id") and isinstance(row.get("task_text"), str):
            found[row["task_id"]] = _row_to_task(row)

    missing = [tid for tid in unique_ids if tid not in found]
    if missing:
        logger.debug(
            f"Task lookup missing {len(missing)} of {len(unique_ids)} ids",
            extra={"missing_sample": missing[:5]},
        )

    return TaskLookup(
        tasks=[found[tid] for tid in task_ids if tid in found],
        missing_ids=missing,
    )


def get_existing_task_ids(task_ids: list[str]) -> set[str]:
    """Return the subset of ``task_ids`` that already exist."""
    if not task_ids:
        return set()
    query = get_supabase().table(TASKS_TABLE).select("task_id").in_("task_id", list(task_ids))
    return {row["task_id"] for row in execute(query, "get_existing_task_ids")}


def get_task_vectors(task_ids: list[str]) -> dict[str, list[float]]:
    """Return ``{task_id: embedding}`` for the ids that have an embedding."""
    if not task_ids:
        return {}
    query = (
        get_supabase()
        .table(TASKS_TABLE)
        .select("task_id, embedding")
        .in_("task_id", list(task_ids))
    )
    vectors = {}
    for row in execute(query, "get_task_vectors"):
        vector = _parse_vector(row.get("embedding"))
        if vector:
            vectors[row["task_id"]] = vector
    return vectors


def insert_task(task: Task) -> Task:
    """Insert a single task row."""
    row = {
        "task_id": task.task_id,
        "task_text": task.task_text,
        "document_id": task.document_id,
        "embedding": task.embedding,
        "status": "completed",
        "error_message": None,
    }
    if task.created_at:
        row["created_at"] = task.created_at.isoformat()

    rows = execute(get_supabase().table(TASKS_TABLE).insert(row), "insert_task")
    if not rows:
        raise StoreError("insert_task", RuntimeError(f"no row returned for {task.task_id}"))

    logger.info(f"Inserted task {task.task_id}", extra={"document_id": task.document_id})
    return _row_to_task({**row, **rows[0]})


def delete_task(task_id: str) -> None:
    """Delete a task row. Only used as a compensating action."""
    execute(
        get_supabase().table(TASKS_TABLE).delete().eq("task_id", task_id),
        "delete_task",
    )
    logger.info(f"Deleted task {task_id}")


def search_similar_tasks(
    embedding: list[float],
    threshold: float = 0.7,
    limit: int = 20,
) -> list[SimilarTask]:
    """
    Search for tasks whose embedding is similar to ``embedding``.

    Args:
        embedding: Query vector
        threshold: Minimum cosine similarity (exclusive)
        limit: Maximum results

    Returns:
        Hits ordered by similarity, highest first
    """
    query = get_supabase().rpc(
        "search_similar_tasks",
        {
            "query_embedding": embedding,
            "match_threshold": threshold,
            "match_count": limit,
        },
    )
    rows = execute(query, "search_similar_tasks")
    results = [SimilarTask.model_validate(row) for row in rows]
    results.sort(key=lambda r: r.similarity, reverse=True)

    logger.debug(
        f"Similarity search returned {len(results)} tasks",
        extra={"threshold": threshold, "limit": limit},
    )
    return results
