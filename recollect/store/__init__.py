from recollect.store.sqlite_store import SQLiteMemoryStore
from recollect.store.associations import AssociationGraph
from recollect.store.feedback import RetrievalFeedbackLog

__all__ = ["SQLiteMemoryStore", "AssociationGraph", "RetrievalFeedbackLog"]
