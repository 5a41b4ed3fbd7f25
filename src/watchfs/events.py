"""Event models shared across watcher components."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Operation(str, Enum):
    """Kinds of filesystem changes an action can react to."""

    CHMOD = "chmod"
    CREATE = "create"
    REMOVE = "remove"
    RENAME = "rename"
    WRITE = "write"


OPERATION_NAMES = sorted(op.value for op in Operation)


def parse_operation(name: str) -> Operation:
    """Return the operation called ``name``; raises ``ValueError`` if unknown."""

    return Operation(name.strip().lower())


def extension(path: str) -> str:
    """Lower-cased extension of ``path`` without its leading dot."""

    return os.path.splitext(path)[1].lstrip(".").lower()


@dataclass(frozen=True)
class FileEvent:
    """A single change observed in a watched directory."""

    path: str
    operation: Operation
    timestamp: datetime = field(default_factory=datetime.now)
