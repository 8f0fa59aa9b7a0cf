"""Persistence layer: SQLite database and repository.

Re-exports the public classes:
    from Market_Sweep.data import Database, Repository
"""

from Market_Sweep.data.database import Database
from Market_Sweep.data.repository import Repository

__all__ = ["Database", "Repository"]
