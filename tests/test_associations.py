import time

import pytest

from recollect.core.types import AssociationType, MemoryType
from recollect.errors import InvalidInputError
from recollect.store.associations import AssociationGraph
from recollect.store.sqlite_store import SQLiteMemoryStore


@pytest.fixture
def store(tmp_path):
    s = SQLiteMemoryStore(tmp_path / "assoc.db")
    yield s
    s.close()


@pytest.fixture
def graph(store):
    return AssociationGraph(store)


def test_associate_and_fetch(store, graph):
    memory = store.create("Cache invalidation needs versioned keys", MemoryType.LESSON)
    assoc = graph.associate(
        memory.id, AssociationType.RELEVANT_TO_OUTCOME, "out_1", strength=0.8, context="postmortem"
    )
    assert assoc.id.startswith("assoc_")
    fetched = graph.get(assoc.id)
    assert fetched.association_type == AssociationType.RELEVANT_TO_OUTCOME
    assert fetched.strength == 0.8
    assert fetched.context == "postmortem"
    assert [a.id for a in graph.get_associations_for(memory.id)] == [assoc.id]


def test_associate_missing_memory_returns_none(graph):
    assert graph.associate("mem_missing", "relevant_to_task", "task_1") is None


@pytest.mark.parametrize(
    "assoc_type,target,strength",
    [
        ("belongs_to", "out_1", 0.5),
        ("relevant_to_outcome", "", 0.5),
        ("relevant_to_outcome", "out_1", 1.2),
        ("relevant_to_outcome", "out_1", -0.2),
    ],
)
def test_associate_rejects_invalid_input(store, graph, assoc_type, target, strength):
    memory = store.create("m", MemoryType.FACT)
    with pytest.raises(InvalidInputError):
        graph.associate(memory.id, assoc_type, target, strength=strength)


def test_memory_cannot_relate_to_itself(store, graph):
    memory = store.create("m", MemoryType.FACT)
    with pytest.raises(InvalidInputError):
        graph.associate(memory.id, AssociationType.RELATED_TO_MEMORY, memory.id)


def test_lookup_rejects_unknown_association_type(graph):
    with pytest.raises(InvalidInputError) as exc:
        graph.get_memories_associated_with("outcome_1", "caused_by")
    assert exc.value.field == "association_type"


def test_related_memories_may_form_cycles(store, graph):
    a = store.create("a", MemoryType.FACT)
    b = store.create("b", MemoryType.FACT)
    assert graph.associate(a.id, AssociationType.RELATED_TO_MEMORY, b.id) is not None
    assert graph.associate(b.id, AssociationType.RELATED_TO_MEMORY, a.id) is not None
    assert [m.id for m in graph.get_memories_associated_with(b.id)] == [a.id]


def test_get_for_outcome_orders_by_strength_then_importance(store, graph):
    weak = store.create("weak", MemoryType.FACT, importance="critical")
    strong_low = store.create("strong low", MemoryType.FACT, importance="low")
    strong_high = store.create("strong high", MemoryType.FACT, importance="high")
    graph.associate(weak.id, "relevant_to_outcome", "out_1", strength=0.2)
    graph.associate(strong_low.id, "relevant_to_outcome", "out_1", strength=0.9)
    graph.associate(strong_high.id, "relevant_to_outcome", "out_1", strength=0.9)
    # A task edge with the same target id is not an outcome edge
    other = store.create("task only", MemoryType.FACT)
    graph.associate(other.id, "relevant_to_task", "out_1", strength=1.0)

    assert [m.id for m in graph.get_for_outcome("out_1")] == [strong_high.id, strong_low.id, weak.id]
    assert [m.id for m in graph.get_for_task("out_1")] == [other.id]


def test_get_for_outcome_returns_only_active_memories(store, graph):
    a = store.create("old approach", MemoryType.DECISION)
    b = store.create("new approach", MemoryType.DECISION)
    c = store.create("temporary note", MemoryType.CONTEXT, expires_at=time.time() - 1)
    for memory in (a, b, c):
        graph.associate(memory.id, "relevant_to_outcome", "out_9", strength=0.7)

    store.supersede(a.id, b.id)

    assert [m.id for m in graph.get_for_outcome("out_9")] == [b.id]


def test_duplicate_edges_return_memory_once(store, graph):
    memory = store.create("m", MemoryType.FACT)
    graph.associate(memory.id, "relevant_to_task", "task_1", strength=0.3, context="first")
    graph.associate(memory.id, "relevant_to_task", "task_1", strength=0.6, context="second")

    assert len(graph.get_associations_for(memory.id)) == 2
    assert [m.id for m in graph.get_for_task("task_1")] == [memory.id]


def test_update_strength_clamps(store, graph):
    memory = store.create("m", MemoryType.FACT)
    assoc = graph.associate(memory.id, "relevant_to_task", "task_1", strength=0.5)
    assert graph.update_strength(assoc.id, 1.7).strength == 1.0
    assert graph.update_strength(assoc.id, -3).strength == 0.0
    assert graph.update_strength("assoc_missing", 0.5) is None


def test_delete_association_and_cascade(store, graph):
    memory = store.create("m", MemoryType.FACT)
    first = graph.associate(memory.id, "relevant_to_task", "task_1")
    second = graph.associate(memory.id, "relevant_to_task", "task_2")

    assert graph.delete(first.id) is True
    assert graph.delete(first.id) is False
    assert graph.get(second.id) is not None

    store.delete(memory.id)
    assert graph.get(second.id) is None
