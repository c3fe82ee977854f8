from __future__ import annotations

import threading
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import asdict, fields, replace
from typing import Any, Generic, Iterator, TypeVar

T = TypeVar("T")


class ThreadSafeConfig(Generic[T]):
    """
    Lock-protected holder for one config dataclass.

    Pose fits running in pool workers or threads take a snapshot with get();
    editing the held config afterwards never reaches a fit that already started.
    """

    def __init__(self, data: T):
        self._lock = threading.RLock()
        self._data = data
        self._names = frozenset(f.name for f in fields(data))

    def _check(self, names) -> None:
        unknown = set(names) - self._names
        if unknown:
            raise AttributeError(f"{type(self._data).__name__} has no field(s) {sorted(unknown)}")

    def get(self) -> T:
        with self._lock:
            return deepcopy(self._data)

    def get_raw(self) -> T:
        """The held object itself, for saving. Do not mutate it."""
        with self._lock:
            return self._data

    def get_field(self, name: str) -> Any:
        with self._lock:
            self._check([name])
            return getattr(self._data, name)

    def set(self, name: str, value: Any) -> None:
        self.update(**{name: value})

    def update(self, **changes: Any) -> None:
        """Swap in a new config with the given fields replaced. Frozen dataclasses work too."""
        with self._lock:
            self._check(changes)
            self._data = replace(self._data, **changes)

    @contextmanager
    def override(self, **changes: Any) -> Iterator[T]:
        """Temporarily replace fields; the previous config comes back on exit."""
        with self._lock:
            previous = self._data
            self.update(**changes)
            snapshot = deepcopy(self._data)
        try:
            yield snapshot
        finally:
            with self._lock:
                self._data = previous

    def asdict(self) -> dict:
        with self._lock:
            return asdict(self._data)
