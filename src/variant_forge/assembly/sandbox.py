"""Scoped installation of process-global settings the renderer depends on.

Pillow reads its decompression-bomb limit and truncated-file policy from module
globals, and the renderer resolves fonts through a module-level search path.
A render installs its own values for the duration of one call and puts back
exactly what was there before, including removing keys that did not exist.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import MutableMapping
from types import ModuleType
from typing import Any, Iterable, Union

logger = logging.getLogger(__name__)

Namespace = Union[ModuleType, MutableMapping]

_MISSING = object()

# One sandbox at a time per process.
_LOCK = threading.RLock()


def _read(namespace: Namespace, key: str) -> Any:
    if isinstance(namespace, ModuleType):
        return getattr(namespace, key, _MISSING)
    return namespace.get(key, _MISSING)


def _write(namespace: Namespace, key: str, value: Any) -> None:
    if isinstance(namespace, ModuleType):
        setattr(namespace, key, value)
    else:
        namespace[key] = value


def _delete(namespace: Namespace, key: str) -> None:
    if isinstance(namespace, ModuleType):
        if hasattr(namespace, key):
            delattr(namespace, key)
    else:
        namespace.pop(key, None)


class GlobalSandbox:
    """Context manager that installs shims and restores the previous globals on exit.

        with GlobalSandbox([(PIL.Image, "MAX_IMAGE_PIXELS", 10_000_000)]):
            ...
    """

    def __init__(self, shims: Iterable[tuple[Namespace, str, Any]]) -> None:
        self.shims = list(shims)
        self._snapshot: list[tuple[Namespace, str, Any]] = []

    def __enter__(self) -> "GlobalSandbox":
        _LOCK.acquire()
        try:
            for namespace, key, value in self.shims:
                self._snapshot.append((namespace, key, _read(namespace, key)))
                _write(namespace, key, value)
        except BaseException:
            self._restore()
            _LOCK.release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self._restore()
        finally:
            _LOCK.release()

    def _restore(self) -> None:
        # Reverse order so a key shimmed twice ends up with its original value.
        while self._snapshot:
            namespace, key, previous = self._snapshot.pop()
            if previous is _MISSING:
                _delete(namespace, key)
            else:
                _write(namespace, key, previous)
