"""Signal names recognised in configuration and on the command line."""
from __future__ import annotations

import logging
import signal
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_POSIX_NAMES = (
    "SIGABRT", "SIGALRM", "SIGBUS", "SIGCHLD", "SIGCONT", "SIGFPE", "SIGHUP",
    "SIGILL", "SIGINT", "SIGIO", "SIGKILL", "SIGPIPE", "SIGPROF", "SIGPWR",
    "SIGQUIT", "SIGSEGV", "SIGSTOP", "SIGSYS", "SIGTERM", "SIGTRAP", "SIGTSTP",
    "SIGTTIN", "SIGTTOU", "SIGURG", "SIGUSR1", "SIGUSR2", "SIGVTALRM",
    "SIGWINCH", "SIGXCPU", "SIGXFSZ",
)

# Only the signals this platform actually defines.
SIGNALS: Dict[str, signal.Signals] = {
    name: getattr(signal, name) for name in _POSIX_NAMES if hasattr(signal, name)
}

SIGNAL_NAMES = sorted(SIGNALS)

DEFAULT_SIGNAL: signal.Signals = getattr(signal, "SIGKILL", signal.SIGTERM)


def parse_signal(name: Optional[str]) -> Optional[signal.Signals]:
    """Look up a signal by name.

    Empty names resolve to ``None``. Unknown names are logged and also resolve to
    ``None`` so callers fall back to the next signal in their chain.
    """

    if not name:
        return None
    key = name.strip().upper()
    if not key.startswith("SIG"):
        key = "SIG" + key
    found = SIGNALS.get(key)
    if found is None:
        logger.warning("Unknown signal %r; using the default signal instead", name)
    return found


def resolve_signal(*candidates: Optional[signal.Signals]) -> signal.Signals:
    """First configured signal among ``candidates``, else ``DEFAULT_SIGNAL``."""

    for candidate in candidates:
        if candidate is not None:
            return candidate
    return DEFAULT_SIGNAL
