"""Event predicates used by actions, global rules and ignore lists."""
from __future__ import annotations

import os
from dataclasses import dataclass
from fnmatch import fnmatch
from typing import FrozenSet, Iterable, Optional, Tuple

from .events import FileEvent, Operation, extension


@dataclass(frozen=True)
class Filter:
    """Extension, operation and path-glob predicates, each optional.

    ``match`` returns a pair ``(all, any)``: ``any`` is true when at least one
    configured predicate holds, ``all`` when every configured predicate holds.
    A filter without predicates is a vacuous match: ``all`` is true for every
    event while ``any`` stays false.
    """

    extensions: FrozenSet[str] = frozenset()
    operations: FrozenSet[Operation] = frozenset()
    paths: Tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        extensions: Iterable[str] = (),
        operations: Iterable[Operation] = (),
        paths: Iterable[str] = (),
    ) -> "Filter":
        normalized = frozenset(
            ext.strip().lstrip(".").lower() for ext in extensions if ext.strip()
        )
        return cls(extensions=normalized, operations=frozenset(operations), paths=tuple(paths))

    @property
    def empty(self) -> bool:
        return not (self.extensions or self.operations or self.paths)

    def match(self, event: FileEvent) -> Tuple[bool, bool]:
        return self._match(event.path, event.operation)

    def match_path(self, path: str) -> Tuple[bool, bool]:
        """Evaluate the predicates for a bare path with no operation."""

        return self._match(path, None)

    def _match(self, path: str, operation: Optional[Operation]) -> Tuple[bool, bool]:
        results = []
        if self.extensions:
            results.append(extension(path) in self.extensions)
        if self.operations:
            results.append(operation is not None and operation in self.operations)
        if self.paths:
            results.append(matches_glob(path, self.paths))
        if not results:
            return True, False
        return all(results), any(results)

    def to_dict(self) -> dict:
        data: dict = {}
        if self.extensions:
            data["exts"] = sorted(self.extensions)
        if self.operations:
            data["ops"] = sorted(op.value for op in self.operations)
        if self.paths:
            data["paths"] = list(self.paths)
        return data


def matches_glob(path: str, patterns: Iterable[str]) -> bool:
    """Whether ``path`` or its base name matches any shell glob in ``patterns``."""

    name = os.path.basename(path.rstrip(os.sep)) or path
    return any(fnmatch(path, pat) or fnmatch(name, pat) for pat in patterns)


def action_gate(action_filter: Filter, ignore: Optional[Filter], event: FileEvent) -> bool:
    """Soft gate for the action filter, strict gate for its ignore filter."""

    all_match, any_match = action_filter.match(event)
    if not (all_match or any_match):
        return False
    if ignore is not None:
        all_match, any_match = ignore.match(event)
        if all_match and any_match:
            return False
    return True
