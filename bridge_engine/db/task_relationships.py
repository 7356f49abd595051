"""Database operations for the task relationship (dependency) graph."""

from collections.abc import Iterable

from bridge_engine.core.logging import get_logger
from bridge_engine.core.schemas_tasks import Relationship
from bridge_engine.db.supabase_client import execute, get_supabase

logger = get_logger(__name__)

RELATIONSHIPS_TABLE = "task_relationships"
_EDGE_COLUMNS = (
    "source_task_id, target_task_id, relationship_type, detection_method, "
    "confidence_score, reasoning"
)


def get_edges(task_ids: Iterable[str] | None = None) -> list[Relationship]:
    """
    Load relationship edges.

    Args:
        task_ids: Only edges whose source AND target are both in this set

    Returns:
        Matching edges (all edges when no filter is given)
    """
    query = get_supabase().table(RELATIONSHIPS_TABLE).select(_EDGE_COLUMNS)

    if task_ids is not None:
        ids = list(task_ids)
        query = query.in_("source_task_id", ids).in_("target_task_id", ids)

    rows = execute(query, "get_edges")
    return [Relationship.model_validate(row) for row in rows]


def insert_edges(edges: list[Relationship]) -> list[Relationship]:
    """Insert edges. Returns the rows as stored."""
    if not edges:
        return []

    payload = [edge.model_dump(mode="json", exclude_none=True) for edge in edges]
    rows = execute(
        get_supabase().table(RELATIONSHIPS_TABLE).insert(payload),
        "insert_edges",
    )

    logger.info(
        f"Inserted {len(edges)} relationship(s)",
        extra={"edges": [f"{e.source_task_id}->{e.target_task_id}" for e in edges]},
    )
    return [Relationship.model_validate(row) for row in rows] if rows else list(edges)


def delete_edge(source_task_id: str, target_task_id: str) -> None:
    """Delete every edge source -> target, whatever its type."""
    execute(
        get_supabase()
        .table(RELATIONSHIPS_TABLE)
        .delete()
        .eq("source_task_id", source_task_id)
        .eq("target_task_id", target_task_id),
        "delete_edge",
    )
    logger.info(f"Deleted relationship {source_task_id} -> {target_task_id}")
