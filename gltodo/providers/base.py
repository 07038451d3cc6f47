"""Abstract base class for to-do providers."""

import threading
from abc import ABC, abstractmethod

from gltodo.models import FetchResult, SyncCursor


class TodoProvider(ABC):
    @abstractmethod
    def fetch_todos(
        self,
        cursor: SyncCursor,
        page_budget: int | None = None,
        cancel: threading.Event | None = None,
    ) -> FetchResult: ...

    @abstractmethod
    def mark_done(self, item_id: str) -> None: ...

    @abstractmethod
    def current_user(self) -> dict: ...

    def close(self) -> None:
        return None

    def __enter__(self) -> "TodoProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
