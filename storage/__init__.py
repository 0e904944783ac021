from .messages import Message, MessageStore
from .sessions import Session, SessionRegistry
from .state import HeldLock, Lock, LockPolicy, SQLiteStateAdapter, StateAdapter, acquire_lock_with_retry, thread_lock

__all__ = [
    "HeldLock",
    "Lock",
    "LockPolicy",
    "Message",
    "MessageStore",
    "Session",
    "SessionRegistry",
    "SQLiteStateAdapter",
    "StateAdapter",
    "acquire_lock_with_retry",
    "thread_lock",
]
