"""
Persistent key-value storage for CatRender.

SQLite is the only backend; repositories wrap it with typed records.
"""

from .sqlite_store import SQLiteKeyValueStore

__all__ = ['SQLiteKeyValueStore']
