"""Change watcher for the pending-action store file.

Samples the file's identity on a daemon thread and calls back on any
write, rename/replace or delete.  No inotify/kqueue: sampling ``os.stat``
at a short interval works the same on Linux and macOS, and the store
file is tiny.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

log = logging.getLogger("notch-mcp.watcher")

# (inode, mtime_ns, ctime_ns, size), or None when the file is missing
_Identity = Optional[tuple[int, int, int, int]]


def _identity(path: str) -> _Identity:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_ino, st.st_mtime_ns, st.st_ctime_ns, st.st_size)


class PendingActionWatcher:
    """Invoke *on_change* whenever the file at *path* changes.

    Usage::

        with PendingActionWatcher(store.path, wake.set):
            ...
    """

    def __init__(self, path: str, on_change: Callable[[], None], interval: float = 0.05) -> None:
        self.path = path
        self.on_change = on_change
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        if not os.path.exists(self.path):
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                f.write("{}")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, args=(_identity(self.path),),
            name="notch-store-watcher", daemon=True,
        )
        self._thread.start()
        log.debug(f"Watching {self.path} every {self.interval}s")

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.interval * 4))

    def _run(self, last: _Identity) -> None:
        while not self._stop.wait(self.interval):
            current = _identity(self.path)
            if current == last:
                continue
            last = current
            try:
                self.on_change()
            except Exception:
                log.exception(f"Watcher callback failed for {self.path}")

    def __enter__(self) -> "PendingActionWatcher":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
