"""Engine persistence store abstractions and implementations."""

from memory.store import EngineStore, SQLiteEngineStore

__all__ = ["EngineStore", "SQLiteEngineStore"]
