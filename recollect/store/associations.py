"""
Recollect Association Graph
---------------------------
Typed, weighted edges from a memory to an outcome, a task or another memory.

The graph is deliberately unconstrained: the same (memory, target) pair may be
linked several times with different contexts, and related_to_memory edges may
form cycles.
"""

import time
import logging
from typing import List, Optional, Union

from recollect.core.types import Association, AssociationType, Memory
from recollect.errors import InvalidInputError
from recollect.store.sqlite_store import SQLiteMemoryStore, active_filter, importance_order

logger = logging.getLogger("Recollect.Associations")

DEFAULT_STRENGTH = 0.5


def _check_strength(strength: float) -> float:
    try:
        value = float(strength)
    except (TypeError, ValueError):
        raise InvalidInputError(f"'{strength}' is not a number", field="strength")
    if not 0.0 <= value <= 1.0:
        raise InvalidInputError(f"{value} is outside [0, 1]", field="strength")
    return value


def _association_type(value) -> AssociationType:
    try:
        return AssociationType(value)
    except ValueError:
        raise InvalidInputError(f"'{value}' is not a known association type", field="association_type")


class AssociationGraph:
    def __init__(self, store: SQLiteMemoryStore):
        self.store = store

    def associate(
        self,
        memory_id: str,
        association_type: Union[AssociationType, str],
        target_id: str,
        strength: float = DEFAULT_STRENGTH,
        context: Optional[str] = None,
    ) -> Optional[Association]:
        """Create an edge. Returns None when ``memory_id`` does not exist."""
        association_type = _association_type(association_type)
        if not target_id:
            raise InvalidInputError("target_id is required", field="target_id")
        if association_type == AssociationType.RELATED_TO_MEMORY and target_id == memory_id:
            raise InvalidInputError("a memory cannot be associated with itself", field="target_id")

        association = Association(
            memory_id=memory_id,
            association_type=association_type,
            target_id=target_id,
            strength=_check_strength(strength),
            context=context,
            created_at=time.time(),
        )
        with self.store.locked() as conn:
            if conn.execute("SELECT 1 FROM memories WHERE id = ?", (memory_id,)).fetchone() is None:
                logger.debug("Association skipped, memory %s not found", memory_id)
                return None
            conn.execute(
                """
                INSERT INTO memory_associations
                    (id, memory_id, association_type, target_id, strength, context, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    association.id,
                    association.memory_id,
                    association.association_type.value,
                    association.target_id,
                    association.strength,
                    association.context,
                    association.created_at,
                ),
            )
            conn.commit()
        return association

    def get(self, association_id: str) -> Optional[Association]:
        with self.store.locked() as conn:
            row = conn.execute(
                "SELECT * FROM memory_associations WHERE id = ?", (association_id,)
            ).fetchone()
        return Association(**dict(row)) if row is not None else None

    def get_associations_for(self, memory_id: str) -> List[Association]:
        with self.store.locked() as conn:
            rows = conn.execute(
                "SELECT * FROM memory_associations WHERE memory_id = ? "
                "ORDER BY strength DESC, created_at ASC",
                (memory_id,),
            ).fetchall()
        return [Association(**dict(row)) for row in rows]

    def get_memories_associated_with(
        self,
        target_id: str,
        association_type: Union[AssociationType, str, None] = None,
        limit: int = 20,
    ) -> List[Memory]:
        """Active memories linked to ``target_id``, strongest edge first.

        A memory linked more than once is returned once, ranked by its
        strongest edge.
        """
        conditions = ["a.target_id = ?"]
        params: list = [target_id]
        if association_type is not None:
            conditions.append("a.association_type = ?")
            params.append(_association_type(association_type).value)
        conditions.append(active_filter("m"))
        params.append(time.time())
        params.append(int(limit))

        query = f"""
            SELECT m.*, MAX(a.strength) AS assoc_strength
            FROM memory_associations a
            JOIN memories m ON m.id = a.memory_id
            WHERE {' AND '.join(conditions)}
            GROUP BY m.id
            ORDER BY assoc_strength DESC, {importance_order('m')} DESC, m.created_at DESC
            LIMIT ?
        """
        with self.store.locked() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self.store.row_to_memory(row) for row in rows]

    def get_for_outcome(self, outcome_id: str, limit: int = 20) -> List[Memory]:
        return self.get_memories_associated_with(outcome_id, AssociationType.RELEVANT_TO_OUTCOME, limit)

    def get_for_task(self, task_id: str, limit: int = 20) -> List[Memory]:
        return self.get_memories_associated_with(task_id, AssociationType.RELEVANT_TO_TASK, limit)

    def update_strength(self, association_id: str, strength: float) -> Optional[Association]:
        """Set strength, clamped to [0, 1]."""
        clamped = max(0.0, min(1.0, float(strength)))
        with self.store.locked() as conn:
            cursor = conn.execute(
                "UPDATE memory_associations SET strength = ? WHERE id = ?", (clamped, association_id)
            )
            conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get(association_id)

    def delete(self, association_id: str) -> bool:
        with self.store.locked() as conn:
            cursor = conn.execute("DELETE FROM memory_associations WHERE id = ?", (association_id,))
            conn.commit()
        return cursor.rowcount > 0
