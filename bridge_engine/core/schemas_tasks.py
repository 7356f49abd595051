"""Pydantic models for tasks, relationships, gaps, bridging tasks and clusters."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from bridge_engine.core.errors import TaskInsertionErrorCode


# =============================================================================
# Enums
# =============================================================================


class RelationshipType(str, Enum):
    """Types of directed edges between tasks."""

    PREREQUISITE = "prerequisite"
    BLOCKS = "blocks"
    RELATED = "related"


class CognitionLevel(str, Enum):
    """Cognitive load estimate for a bridging task."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Graph records
# =============================================================================


class Task(BaseModel):
    """A task node extracted from a document or inserted as a bridging task."""

    task_id: str
    task_text: str
    document_id: str | None = None
    created_at: datetime | None = None
    embedding: list[float] | None = None


class Relationship(BaseModel):
    """A directed edge source -> target."""

    source_task_id: str
    target_task_id: str
    relationship_type: RelationshipType = RelationshipType.PREREQUISITE
    detection_method: str | None = None
    confidence_score: float | None = None
    reasoning: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_task_id, self.target_task_id)


class TaskLookup(BaseModel):
    """Result of fetching tasks by id; tasks keep the requested order."""

    tasks: list[Task] = Field(default_factory=list)
    missing_ids: list[str] = Field(default_factory=list)

    def by_id(self) -> dict[str, Task]:
        return {task.task_id: task for task in self.tasks}


class SimilarTask(BaseModel):
    """A nearest-neighbour hit from the vector search."""

    task_id: str
    task_text: str
    document_id: str | None = None
    similarity: float


# =============================================================================
# Gap detection
# =============================================================================


class GapIndicators(BaseModel):
    """The four signals that together suggest missing work."""

    time_gap: bool = False
    action_type_jump: bool = False
    no_dependency: bool = False
    skill_jump: bool = False

    @property
    def count(self) -> int:
        return sum(
            [self.time_gap, self.action_type_jump, self.no_dependency, self.skill_jump]
        )


class Gap(BaseModel):
    """A suspected missing unit of work between two sequential tasks."""

    id: str
    predecessor_task_id: str
    successor_task_id: str
    indicators: GapIndicators
    confidence: float = Field(..., ge=0, le=1)
    detected_at: datetime


class GapDetectionMetadata(BaseModel):
    total_pairs_analyzed: int
    gaps_detected: int
    analysis_duration_ms: int = 0


class GapDetectionResponse(BaseModel):
    gaps: list[Gap] = Field(default_factory=list)
    metadata: GapDetectionMetadata


# =============================================================================
# Bridging tasks
# =============================================================================


class GeneratedBridgingTask(BaseModel):
    """Raw shape the LLM must produce for each suggestion."""

    task_text: str = Field(..., min_length=10, max_length=500)
    estimated_hours: int = Field(..., ge=8, le=160)
    cognition_level: CognitionLevel
    confidence: float = Field(..., ge=0, le=1)
    reasoning: str = Field(..., min_length=20, max_length=1000)


class GeneratedBridgingTaskBatch(BaseModel):
    bridging_tasks: list[GeneratedBridgingTask] = Field(..., min_length=1, max_length=3)


class BridgingTask(BaseModel):
    """An AI-proposed task intended to fill a detected gap."""

    id: str = Field(..., min_length=1)
    gap_id: str = Field(..., min_length=1)
    task_text: str = Field(..., min_length=10, max_length=500)
    estimated_hours: int = Field(..., ge=8, le=160)
    cognition_level: CognitionLevel
    confidence: float = Field(..., ge=0, le=1)
    reasoning: str = Field(..., min_length=20, max_length=1000)
    source: Literal["ai_generated"] = "ai_generated"
    requires_review: bool = True
    created_at: datetime | None = None
    edited_task_text: str | None = Field(None, min_length=10, max_length=500)
    edited_estimated_hours: int | None = Field(None, ge=8, le=160)

    @property
    def final_text(self) -> str:
        return (self.edited_task_text or self.task_text).strip()

    @property
    def final_hours(self) -> int:
        if self.edited_estimated_hours is not None:
            return self.edited_estimated_hours
        return self.estimated_hours

    @model_validator(mode="after")
    def _check_final_values(self) -> "BridgingTask":
        # Length bounds apply to the text that is stored, after trimming
        if not 10 <= len(self.final_text) <= 500:
            raise ValueError(f"Task {self.id} description must be 10-500 characters after trimming")
        if not 8 <= self.final_hours <= 160:
            raise ValueError(f"Task {self.id} estimated hours must be between 8 and 160")
        return self


class BridgingTaskResponse(BaseModel):
    bridging_tasks: list[BridgingTask] = Field(default_factory=list)
    search_results_count: int = Field(default=0, ge=0)
    generation_duration_ms: int = Field(default=0, ge=0)


class BridgingCandidate(BaseModel):
    """A bridging task plus the two tasks it should sit between."""

    task: BridgingTask
    predecessor_id: str = Field(..., min_length=1)
    successor_id: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _distinct_endpoints(self) -> "BridgingCandidate":
        self.predecessor_id = self.predecessor_id.strip()
        self.successor_id = self.successor_id.strip()
        if not self.predecessor_id or not self.successor_id:
            raise ValueError("Predecessor and successor IDs are required")
        if self.predecessor_id == self.successor_id:
            raise ValueError("predecessor_id and successor_id must be different")
        return self


# =============================================================================
# Insertion results
# =============================================================================


class RemovedEdge(BaseModel):
    source: str
    target: str
    reason: str


class CandidateOutcome(BaseModel):
    """Per-candidate result of a batch insertion."""

    task_id: str | None
    predecessor_id: str | None = None
    successor_id: str | None = None
    status: Literal["inserted", "failed"]
    error_code: TaskInsertionErrorCode | None = None
    message: str | None = None
    details: list[str] = Field(default_factory=list)
    conflicting_task_id: str | None = None
    cycle_path: list[str] = Field(default_factory=list)


class TaskInsertionResult(BaseModel):
    inserted_count: int = 0
    task_ids: list[str] = Field(default_factory=list)
    relationships_created: int = 0
    cycles_resolved: int = 0
    removed_edges: list[RemovedEdge] = Field(default_factory=list)
    outcomes: list[CandidateOutcome] = Field(default_factory=list)

    @property
    def failures(self) -> list[CandidateOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]


# =============================================================================
# Clustering
# =============================================================================


class TaskCluster(BaseModel):
    cluster_id: int
    task_ids: list[str]
    centroid: list[float] = Field(default_factory=list)
    average_similarity: float = 1.0


class ClusteringResult(BaseModel):
    clusters: list[TaskCluster] = Field(default_factory=list)
    task_count: int = 0
    cluster_count: int = 0
    threshold_used: float
    ungrouped_task_ids: list[str] = Field(default_factory=list)


# =============================================================================
# Gap filling
# =============================================================================


class GapGenerationFailure(BaseModel):
    gap_id: str
    code: str
    message: str
    attempts: int = 1


class GapFillingResult(BaseModel):
    """Outcome of detect -> generate -> select -> insert over one task sequence."""

    gaps: list[Gap] = Field(default_factory=list)
    suggestions: dict[str, BridgingTaskResponse] = Field(default_factory=dict)
    selected_task_ids: list[str] = Field(default_factory=list)
    generation_failures: list[GapGenerationFailure] = Field(default_factory=list)
    insertion: TaskInsertionResult | None = None
    summary: str = ""
