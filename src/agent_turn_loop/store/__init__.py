from agent_turn_loop.store.base import InMemorySessionStore, SessionStore
from agent_turn_loop.store.sqlite_store import SqliteSessionStore

__all__ = [
    "InMemorySessionStore",
    "SessionStore",
    "SqliteSessionStore",
]
