"""An in-memory cluster API holding the resources the controllers work on."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from typing import Any, Iterable


class ApiError(Exception):
    """A request to the cluster API failed."""

    def __init__(self, message: str, kind: str = "", namespace: str = "", name: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.namespace = namespace
        self.name = name


class NotFoundError(ApiError):
    """The requested resource does not exist."""


class AlreadyExistsError(ApiError):
    """A resource with the same kind, namespace and name already exists."""


class ConflictError(ApiError):
    """The resource changed since the version the request was based on."""


@dataclass(frozen=True)
class Action:
    """A request made against the cluster."""

    verb: str
    kind: str
    namespace: str = ""
    name: str = ""
    obj: Any = None


_Key = tuple[str, str, str]


class Cluster:
    """Stores resources by kind, namespace and name, and records every request."""

    def __init__(self, objects: Iterable[Any] = ()) -> None:
        self._objects: dict[_Key, Any] = {}
        self._lock = threading.RLock()
        self._last_version = 0
        self.actions: list[Action] = []
        for obj in objects:
            self._preload(obj)

    @staticmethod
    def _key(obj: Any) -> _Key:
        if not obj.name:
            raise ApiError(f"{obj.kind}: name is required", obj.kind, obj.namespace)
        return obj.kind, obj.namespace, obj.name

    def _next_version(self) -> str:
        self._last_version += 1
        return str(self._last_version)

    def _preload(self, obj: Any) -> None:
        key = self._key(obj)
        if key in self._objects:
            raise AlreadyExistsError(
                f"{obj.kind} {obj.namespace}/{obj.name} already exists", *key
            )
        stored = copy.deepcopy(obj)
        if stored.resource_version.isdigit():
            self._last_version = max(self._last_version, int(stored.resource_version))
        elif not stored.resource_version:
            stored.resource_version = self._next_version()
        self._objects[key] = stored

    def _record(self, verb: str, kind: str, namespace: str, name: str, obj: Any = None) -> None:
        self.actions.append(Action(verb, kind, namespace, name, copy.deepcopy(obj)))

    def _lookup(self, kind: str, namespace: str, name: str) -> Any:
        try:
            return self._objects[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(
                f'{kind} "{name}" not found in namespace "{namespace}"', kind, namespace, name
            ) from None

    def create(self, obj: Any) -> Any:
        """Store a new resource and return the stored copy."""
        with self._lock:
            self._record("create", obj.kind, obj.namespace, obj.name, obj)
            key = self._key(obj)
            if key in self._objects:
                raise AlreadyExistsError(
                    f'{obj.kind} "{obj.name}" already exists', *key
                )
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_version()
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def get(self, kind: str, namespace: str, name: str) -> Any:
        """Return a copy of one resource."""
        with self._lock:
            self._record("get", kind, namespace, name)
            return copy.deepcopy(self._lookup(kind, namespace, name))

    def list(self, kind: str, namespace: str = "") -> list[Any]:
        """Return copies of the resources of a kind; an empty namespace means all."""
        with self._lock:
            self._record("list", kind, namespace, "")
            found = [
                obj
                for (obj_kind, obj_namespace, _), obj in self._objects.items()
                if obj_kind == kind and (not namespace or obj_namespace == namespace)
            ]
            found.sort(key=lambda obj: (obj.namespace, obj.name))
            return copy.deepcopy(found)

    def update(self, obj: Any) -> Any:
        """Replace a resource, refusing when its version is stale."""
        with self._lock:
            self._record("update", obj.kind, obj.namespace, obj.name, obj)
            key = self._key(obj)
            current = self._lookup(*key)
            if obj.resource_version and obj.resource_version != current.resource_version:
                raise ConflictError(
                    f'{obj.kind} "{obj.name}": the object has been modified', *key
                )
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_version()
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Remove a resource."""
        with self._lock:
            self._record("delete", kind, namespace, name)
            self._lookup(kind, namespace, name)
            del self._objects[(kind, namespace, name)]