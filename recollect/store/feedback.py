"""
Recollect Retrieval Feedback Log
--------------------------------
Append-only record of every memory handed to a caller, with a tri-state
usefulness flag (unknown / useful / not useful) that can be set afterwards.
"""

import time
import logging
from typing import List, Optional, Union

from recollect.core.types import RetrievalEntry, RetrievalMethod, RetrievalStats
from recollect.errors import InvalidInputError
from recollect.store.sqlite_store import SQLiteMemoryStore

logger = logging.getLogger("Recollect.Feedback")


def _row_to_entry(row) -> RetrievalEntry:
    d = dict(row)
    d["method"] = d.pop("retrieval_method")
    flag = d.get("was_useful")
    d["was_useful"] = None if flag is None else bool(flag)
    return RetrievalEntry(**d)


class RetrievalFeedbackLog:
    def __init__(self, store: SQLiteMemoryStore):
        self.store = store

    def log(
        self,
        memory_id: str,
        method: Union[RetrievalMethod, str],
        query: Optional[str] = None,
        relevance_score: Optional[float] = None,
        outcome_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """Record a retrieval and bump the memory's access counter. Returns the entry id."""
        try:
            method = RetrievalMethod(method)
        except ValueError:
            raise InvalidInputError(f"'{method}' is not a known retrieval method", field="method")
        entry = RetrievalEntry(
            memory_id=memory_id,
            outcome_id=outcome_id,
            task_id=task_id,
            method=method,
            query=query,
            relevance_score=relevance_score,
            created_at=time.time(),
        )
        with self.store.locked() as conn:
            conn.execute(
                """
                INSERT INTO memory_retrievals
                    (id, memory_id, outcome_id, task_id, retrieval_method, query,
                     relevance_score, was_useful, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)
                """,
                (
                    entry.id,
                    entry.memory_id,
                    entry.outcome_id,
                    entry.task_id,
                    entry.method.value,
                    entry.query,
                    entry.relevance_score,
                    entry.created_at,
                ),
            )
            conn.commit()
        self.store.record_access(memory_id)
        return entry.id

    def get(self, entry_id: str) -> Optional[RetrievalEntry]:
        with self.store.locked() as conn:
            row = conn.execute("SELECT * FROM memory_retrievals WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def get_for_memory(self, memory_id: str, limit: int = 100) -> List[RetrievalEntry]:
        with self.store.locked() as conn:
            rows = conn.execute(
                "SELECT * FROM memory_retrievals WHERE memory_id = ? ORDER BY created_at DESC LIMIT ?",
                (memory_id, int(limit)),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def mark_useful(self, entry_id: str, useful: bool = True) -> Optional[RetrievalEntry]:
        """Set the usefulness flag; the last call wins."""
        with self.store.locked() as conn:
            cursor = conn.execute(
                "UPDATE memory_retrievals SET was_useful = ? WHERE id = ?",
                (1 if useful else 0, entry_id),
            )
            conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get(entry_id)

    def stats_for(self, memory_id: str) -> RetrievalStats:
        with self.store.locked() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN was_useful = 1 THEN 1 ELSE 0 END), 0) AS useful,
                    COALESCE(SUM(CASE WHEN was_useful = 0 THEN 1 ELSE 0 END), 0) AS not_useful,
                    COALESCE(SUM(CASE WHEN was_useful IS NULL THEN 1 ELSE 0 END), 0) AS unknown
                FROM memory_retrievals
                WHERE memory_id = ?
                """,
                (memory_id,),
            ).fetchone()
        useful = int(row["useful"])
        not_useful = int(row["not_useful"])
        judged = useful + not_useful
        return RetrievalStats(
            total=int(row["total"]),
            useful=useful,
            not_useful=not_useful,
            unknown=int(row["unknown"]),
            usefulness_ratio=(useful / judged) if judged else 0.0,
        )
