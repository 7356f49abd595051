"""Tests for graph-safe insertion of bridging tasks.

Runs the full validate -> duplicate -> cycle -> commit pipeline against the
in-memory fake store, including compensation when a relationship write fails.
"""

from uuid import uuid4

import pytest

from bridge_engine.core.errors import TaskInsertionError, TaskInsertionErrorCode
from bridge_engine.core.schemas_tasks import (
    BridgingCandidate,
    BridgingTask,
    Relationship,
    RelationshipType,
)
from bridge_engine.core.task_insertion import (
    InsertionSaga,
    insert_bridging_task,
    insert_bridging_tasks,
)
from bridge_engine.db.supabase_client import StoreError
from tests.fakes.graph_checks import is_acyclic


def _bridging_task(text="Implement authentication backend service", task_id=None, **overrides):
    fields = {
        "id": task_id or str(uuid4()),
        "gap_id": "gap-1",
        "task_text": text,
        "estimated_hours": 40,
        "cognition_level": "medium",
        "confidence": 0.8,
        "reasoning": "Connects the design output to a shippable release.",
    }
    fields.update(overrides)
    return BridgingTask(**fields)


def _candidate(pred="A", succ="B", **task_fields):
    return BridgingCandidate(
        task=_bridging_task(**task_fields), predecessor_id=pred, successor_id=succ
    )


@pytest.fixture
def store(fake_store):
    fake_store.add_task("A", "Design app mockups")
    fake_store.add_task("B", "Launch app in stores with marketing push")
    return fake_store


# =============================================================================
# Successful insertion
# =============================================================================


class TestInsertSuccess:
    def test_inserts_task_and_both_edges(self, store):
        candidate = _candidate()

        result = insert_bridging_tasks([candidate])

        task_id = candidate.task.id
        assert result.inserted_count == 1
        assert result.task_ids == [task_id]
        assert result.relationships_created == 2
        assert result.failures == []
        assert {("A", task_id), (task_id, "B")} <= store.edge_keys()
        assert store.tasks[task_id].document_id == "doc-1"
        assert is_acyclic(store.edges)

    def test_edges_carry_ai_metadata(self, store):
        candidate = _candidate(confidence=0.65)

        insert_bridging_tasks([candidate])

        new_edges = [e for e in store.edges if candidate.task.id in e.key]
        assert len(new_edges) == 2
        for edge in new_edges:
            assert edge.relationship_type == "prerequisite"
            assert edge.detection_method == "ai"
            assert edge.confidence_score == 0.65
            assert edge.reasoning == candidate.task.reasoning

    def test_edited_text_wins(self, store):
        candidate = _candidate(edited_task_text="Prepare store listing assets and screenshots")

        insert_bridging_tasks([candidate])

        assert store.tasks[candidate.task.id].task_text == (
            "Prepare store listing assets and screenshots"
        )
        assert store.embed_calls == ["Prepare store listing assets and screenshots"]

    def test_accepts_dict_candidates(self, store):
        task = _bridging_task()

        result = insert_bridging_tasks(
            [{"task": task.model_dump(), "predecessor_id": "A", "successor_id": "B"}]
        )

        assert result.task_ids == [task.id]

    def test_document_falls_back_to_successor(self, fake_store):
        fake_store.add_task("A", "Design app mockups", document_id=None)
        fake_store.add_task("B", "Launch app in stores", document_id="doc-9")
        candidate = _candidate()

        insert_bridging_tasks([candidate])

        assert fake_store.tasks[candidate.task.id].document_id == "doc-9"


# =============================================================================
# Rejections
# =============================================================================


class TestRejections:
    def test_empty_batch(self, store):
        with pytest.raises(TaskInsertionError) as exc_info:
            insert_bridging_tasks([])

        assert exc_info.value.code == TaskInsertionErrorCode.VALIDATION_ERROR

    def test_invalid_candidate(self, store):
        task = _bridging_task()

        result = insert_bridging_tasks(
            [{"task": task.model_dump(), "predecessor_id": "A", "successor_id": "A"}]
        )

        assert result.inserted_count == 0
        assert result.failures[0].error_code == TaskInsertionErrorCode.VALIDATION_ERROR
        assert result.failures[0].task_id == task.id

    def test_padded_short_edit_is_rejected(self, store):
        task = _bridging_task().model_dump()
        task["edited_task_text"] = "  short     "

        result = insert_bridging_tasks([{"task": task, "predecessor_id": "A", "successor_id": "B"}])

        assert result.failures[0].error_code == TaskInsertionErrorCode.VALIDATION_ERROR
        assert store.tasks.keys() == {"A", "B"}

    def test_missing_predecessor(self, store):
        result = insert_bridging_tasks([_candidate(pred="ghost")])

        assert result.failures[0].error_code == TaskInsertionErrorCode.TASK_NOT_FOUND

    def test_task_id_already_used(self, store):
        store.add_task("C", "Write release notes")

        result = insert_bridging_tasks([_candidate(task_id="C")])

        assert result.failures[0].error_code == TaskInsertionErrorCode.TASK_ID_EXISTS
        assert store.tasks["C"].task_text == "Write release notes"

    def test_document_mismatch_when_required(self, fake_store):
        fake_store.add_task("A", "Design app mockups", document_id="doc-1")
        fake_store.add_task("B", "Launch app in stores", document_id="doc-2")

        result = insert_bridging_tasks([_candidate()], require_same_document=True)

        assert result.failures[0].error_code == TaskInsertionErrorCode.CONTEXT_MISMATCH

    def test_duplicate_of_existing_task(self, store):
        store.add_task("C", "Implement authentication backend service")

        result = insert_bridging_tasks([_candidate()])

        failure = result.failures[0]
        assert failure.error_code == TaskInsertionErrorCode.DUPLICATE_TASK
        assert failure.conflicting_task_id == "C"
        assert result.inserted_count == 0
        assert set(store.tasks) == {"A", "B", "C"}

    def test_repeated_text_in_batch_is_duplicate(self, store):
        store.add_task("C", "Run usability study with pilot users")
        first = _candidate(pred="A", succ="B")
        second = _candidate(pred="A", succ="C")

        result = insert_bridging_tasks([first, second])

        assert result.task_ids == [first.task.id]
        assert result.failures[0].error_code == TaskInsertionErrorCode.DUPLICATE_TASK
        assert result.failures[0].conflicting_task_id == first.task.id

    def test_batch_continues_after_failure(self, store):
        store.add_task("C", "Implement authentication backend service")
        rejected = _candidate()
        accepted = _candidate(text="Prepare store listing assets and screenshots")

        result = insert_bridging_tasks([rejected, accepted])

        assert result.inserted_count == 1
        assert result.task_ids == [accepted.task.id]
        assert [o.status for o in result.outcomes] == ["failed", "inserted"]

    def test_single_insert_raises(self, store):
        store.add_task("C", "Implement authentication backend service")

        with pytest.raises(TaskInsertionError) as exc_info:
            insert_bridging_task(_candidate())

        assert exc_info.value.code == TaskInsertionErrorCode.DUPLICATE_TASK
        assert exc_info.value.conflicting_task_id == "C"


# =============================================================================
# Cycles
# =============================================================================


class TestCycles:
    def test_direct_back_edge_is_removed(self, store):
        store.add_edge("B", "A")
        candidate = _candidate()

        result = insert_bridging_tasks([candidate])

        assert result.inserted_count == 1
        assert result.cycles_resolved == 1
        assert (result.removed_edges[0].source, result.removed_edges[0].target) == ("B", "A")
        assert ("B", "A") not in store.edge_keys()
        assert is_acyclic(store.edges)

    def test_cycle_detected_when_removal_fails(self, store):
        store.add_edge("B", "A")
        store.fail_delete_edge = True
        candidate = _candidate()

        result = insert_bridging_tasks([candidate])

        failure = result.failures[0]
        assert failure.error_code == TaskInsertionErrorCode.CYCLE_DETECTED
        assert failure.cycle_path == [
            '"Design app mockups"',
            '"Implement authentication backend service"',
            '"Launch app in stores with marketing push"',
            '"Design app mockups"',
        ]
        assert candidate.task.id not in store.tasks
        assert ("B", "A") in store.edge_keys()
        assert result.cycles_resolved == 0

    def test_cycle_detected_when_second_path_remains(self, store):
        store.add_task("X", "Collect beta feedback from early adopters")
        store.add_edge("B", "A")
        store.add_edge("B", "X")
        store.add_edge("X", "A")
        candidate = _candidate()

        result = insert_bridging_tasks([candidate])

        failure = result.failures[0]
        assert failure.error_code == TaskInsertionErrorCode.CYCLE_DETECTED
        assert len(failure.cycle_path) == 5
        assert failure.cycle_path[3] == '"Collect beta feedback from early adopters"'
        assert candidate.task.id not in store.tasks
        assert store.edge_keys() == {("B", "A"), ("B", "X"), ("X", "A")}
        assert result.removed_edges == []
        assert result.cycles_resolved == 0

    def test_cycle_path_texts_are_truncated(self, fake_store):
        long_text = "Design " + "very detailed " * 10 + "mockups"
        fake_store.add_task("A", long_text)
        fake_store.add_task("B", "Launch app in stores")
        fake_store.add_edge("B", "A")
        fake_store.fail_delete_edge = True

        result = insert_bridging_tasks([_candidate()])

        first = result.failures[0].cycle_path[0]
        assert first == f'"{long_text[:47]}..."'

    def test_graph_stays_acyclic_over_many_insertions(self, fake_store):
        ids = [f"T{i}" for i in range(6)]
        texts = [
            "Research customer onboarding pain",
            "Design onboarding wireframes",
            "Plan onboarding sprint backlog",
            "Build onboarding flow screens",
            "Test onboarding regression suite",
            "Deploy onboarding release",
        ]
        for task_id, text in zip(ids, texts):
            fake_store.add_task(task_id, text)
        for source, target in zip(ids, ids[1:]):
            fake_store.add_edge(source, target)

        pairs = [("T0", "T2"), ("T3", "T1"), ("T5", "T0"), ("T2", "T4")]
        bridging_texts = [
            "Synthesize interview findings into personas",
            "Review accessibility requirements with legal",
            "Archive retired onboarding experiments",
            "Instrument analytics events for funnel tracking",
        ]
        for (pred, succ), text in zip(pairs, bridging_texts):
            insert_bridging_tasks([_candidate(pred=pred, succ=succ, text=text)])
            assert is_acyclic(fake_store.edges)


# =============================================================================
# Rollback
# =============================================================================


class TestRollback:
    @pytest.mark.parametrize("fail_after", [0, 1])
    def test_relationship_failure_removes_task(self, store, fail_after):
        store.fail_insert_edge_after = fail_after
        candidate = _candidate()

        result = insert_bridging_tasks([candidate])

        task_id = candidate.task.id
        assert result.failures[0].error_code == TaskInsertionErrorCode.INSERTION_FAILED
        assert result.task_ids == []
        assert task_id not in store.tasks
        assert not [e for e in store.edges if task_id in e.key]

    def test_failure_chains_cause(self, store):
        store.fail_insert_edge_after = 0

        with pytest.raises(TaskInsertionError) as exc_info:
            insert_bridging_task(_candidate())

        assert exc_info.value.code == TaskInsertionErrorCode.INSERTION_FAILED
        assert isinstance(exc_info.value.__cause__, StoreError)
        assert store.tasks.keys() == {"A", "B"}

    def test_commit_failure_restores_removed_edge(self, store):
        store.add_task("X", "Collect beta feedback from early adopters")
        store.edges.append(
            Relationship(
                source_task_id="B",
                target_task_id="X",
                relationship_type=RelationshipType.BLOCKS,
                detection_method="manual",
                confidence_score=0.9,
                reasoning="Feedback is gathered after launch.",
            )
        )
        store.add_edge("X", "A")
        candidate = _candidate()
        store.refuse_edges_with = {candidate.task.id}
        before = {edge.key: edge.model_dump() for edge in store.edges}

        result = insert_bridging_tasks([candidate])

        assert result.failures[0].error_code == TaskInsertionErrorCode.INSERTION_FAILED
        assert candidate.task.id not in store.tasks
        assert {e.key: e.model_dump() for e in store.edges} == before
        assert result.removed_edges == []
        assert result.cycles_resolved == 0

    def test_cycle_failure_restores_removed_edge(self, store):
        store.add_task("X", "Collect beta feedback from early adopters")
        store.add_edge("B", "A")
        store.add_edge("B", "X")
        store.add_edge("X", "A")

        with pytest.raises(TaskInsertionError) as exc_info:
            insert_bridging_task(_candidate())

        assert exc_info.value.code == TaskInsertionErrorCode.CYCLE_DETECTED
        assert store.edge_keys() == {("B", "A"), ("B", "X"), ("X", "A")}

    def test_failed_restore_is_reported(self, store):
        store.add_task("X", "Collect beta feedback from early adopters")
        store.add_edge("B", "A")
        store.add_edge("B", "X")
        store.add_edge("X", "A")
        store.refuse_edges_with = {"B"}

        with pytest.raises(TaskInsertionError) as exc_info:
            insert_bridging_task(_candidate())

        assert exc_info.value.code == TaskInsertionErrorCode.CYCLE_DETECTED
        assert exc_info.value.details[-1] == "Compensation failed for: delete_edge B->A"


class TestInsertionSaga:
    def test_compensates_in_reverse_order(self):
        calls = []
        saga = InsertionSaga(label="t")
        saga.run("one", lambda: calls.append("do-1"), lambda: calls.append("undo-1"))
        saga.run("two", lambda: calls.append("do-2"), lambda: calls.append("undo-2"))

        failed = saga.compensate()

        assert calls == ["do-1", "do-2", "undo-2", "undo-1"]
        assert failed == []

    def test_failed_action_is_not_compensated(self):
        calls = []
        saga = InsertionSaga(label="t")
        saga.run("one", lambda: calls.append("do-1"), lambda: calls.append("undo-1"))

        def _boom():
            raise RuntimeError("write failed")

        with pytest.raises(RuntimeError):
            saga.run("two", _boom, lambda: calls.append("undo-2"))
        saga.compensate()

        assert calls == ["do-1", "undo-1"]

    def test_reports_failed_compensation(self):
        saga = InsertionSaga(label="t")

        def _undo_fails():
            raise RuntimeError("delete failed")

        saga.run("one", lambda: None, _undo_fails)

        assert saga.compensate() == ["one"]
