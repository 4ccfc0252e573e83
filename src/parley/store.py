"""Thread persistence.

The orchestrator only talks to storage through :class:`ThreadStore`.  Two
implementations ship with parley: an in-memory store and a store backed by
a single JSON file.  Both serialize their own writes.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from pydantic import BaseModel, Field, ValidationError

from parley.errors import ThreadNotFoundError
from parley.message import Message, Thread

logger = logging.getLogger(__name__)


class ThreadStore(ABC):
    @abstractmethod
    def get_threads_by_section(self, section: str) -> list[Thread]:
        """Return the section's threads, newest first."""
        ...

    @abstractmethod
    def get_thread(self, section: str, thread_id: str) -> Thread | None:
        ...

    @abstractmethod
    def create_thread(self, section: str, name: str | None = None) -> Thread:
        ...

    @abstractmethod
    def append_message(self, section: str, thread_id: str, message: Message) -> None:
        ...

    @abstractmethod
    def update_thread(self, section: str, thread_id: str, *, name: str) -> None:
        ...

    @abstractmethod
    def delete_thread(self, section: str, thread_id: str) -> None:
        ...


class _Sections(BaseModel):
    sections: dict[str, list[Thread]] = Field(default_factory=dict)


class InMemoryThreadStore(ThreadStore):
    """Dict-backed store.

    Returned threads are copies; mutate them only through the store.
    """

    def __init__(self) -> None:
        self._data = _Sections()
        self._lock = threading.Lock()

    def _threads(self, section: str) -> list[Thread]:
        return self._data.sections.setdefault(section, [])

    def _find(self, section: str, thread_id: str) -> Thread:
        for thread in self._threads(section):
            if thread.id == thread_id:
                return thread
        raise ThreadNotFoundError(section, thread_id)

    def _commit(self) -> None:
        """Hook for persistent subclasses; called with the lock held."""

    def get_threads_by_section(self, section: str) -> list[Thread]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._threads(section)]

    def get_thread(self, section: str, thread_id: str) -> Thread | None:
        with self._lock:
            try:
                return self._find(section, thread_id).model_copy(deep=True)
            except ThreadNotFoundError:
                return None

    def create_thread(self, section: str, name: str | None = None) -> Thread:
        thread = Thread(name=name) if name else Thread()
        with self._lock:
            self._threads(section).insert(0, thread)
            self._commit()
        logger.info(f"Created thread {thread.id} in section '{section}'")
        return thread.model_copy(deep=True)

    def append_message(self, section: str, thread_id: str, message: Message) -> None:
        with self._lock:
            self._find(section, thread_id).append(message)
            self._commit()

    def update_thread(self, section: str, thread_id: str, *, name: str) -> None:
        with self._lock:
            thread = self._find(section, thread_id)
            thread.name = name
            thread.updated_at = datetime.now(timezone.utc)
            self._commit()

    def delete_thread(self, section: str, thread_id: str) -> None:
        with self._lock:
            threads = self._threads(section)
            threads[:] = [t for t in threads if t.id != thread_id]
            self._commit()


class JsonFileThreadStore(InMemoryThreadStore):
    """Store persisted to one JSON file, rewritten after every change.

    A missing or unreadable file starts an empty store.
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = path
        self._data = self._load()

    def _load(self) -> _Sections:
        if not os.path.exists(self.path):
            return _Sections()
        try:
            with open(self.path, encoding="utf-8") as f:
                return _Sections.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable thread store {self.path}: {e}")
            return _Sections()

    def _commit(self) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(self._data.model_dump_json(indent=2))
        os.replace(tmp_path, self.path)
