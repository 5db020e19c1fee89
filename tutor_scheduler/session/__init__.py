from tutor_scheduler.session.store import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
    SessionStore,
    WriteCoalescer,
)

__all__ = [
    "FileKeyValueStore",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "SessionStore",
    "WriteCoalescer",
]
