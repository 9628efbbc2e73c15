"""Unix-socket transport between notification producers and the display.

The display process runs an :class:`IngestionServer`; producers (the
MCP tool server, ``notch-send``, shell hooks) call :func:`send_envelope`.

One request per connection: the client writes a single JSON object,
the server answers with one JSON line and closes::

    → {"title": "Build", "message": "done", "type": "success"}
    ← {"success": true}

    → {not json
    ← {"success": false, "error": "Invalid JSON: ..."}
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
from socketserver import BaseRequestHandler, ThreadingMixIn, UnixStreamServer
from typing import Any, Callable, Optional, Union

from .envelope import EnvelopeError, NotificationEnvelope

log = logging.getLogger("notch-mcp.transport")


class ThreadingUnixServer(ThreadingMixIn, UnixStreamServer):
    """UnixStreamServer that handles each connection in a new thread.

    A slow pipeline on one connection must not hold up the next
    producer.
    """
    daemon_threads = True


class IngestionHandler(BaseRequestHandler):
    """Read one envelope, hand it to the pipeline, write one ack line."""

    # Set by IngestionServer.start
    show: Callable[[NotificationEnvelope], None] = None  # type: ignore
    buffer_size: int = 65536

    def handle(self) -> None:
        try:
            data = self.request.recv(self.buffer_size)
        except OSError as e:
            log.warning(f"Receive failed, dropping connection: {e}")
            return
        if not data:
            return

        try:
            envelope = NotificationEnvelope.from_bytes(data)
        except EnvelopeError as e:
            log.warning(f"Rejected notification: {e}")
            self._reply({"success": False, "error": str(e)})
            return

        try:
            self.show(envelope)
        except Exception as e:
            log.error(f"Display pipeline failed for '{envelope.title}': {e}")
            self._reply({"success": False, "error": str(e)[:200]})
            return

        log.debug(f"Accepted notification '{envelope.title}' ({envelope.kind.value})")
        self._reply({"success": True})

    def _reply(self, body: dict) -> None:
        try:
            self.request.sendall((json.dumps(body) + "\n").encode("utf-8"))
        except OSError as e:
            log.warning(f"Ack write failed: {e}")


def _unlink(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class IngestionServer:
    """Listen on a Unix socket and feed envelopes into a display pipeline.

    Args:
        socket_path: Filesystem path of the socket. A stale file there is removed.
        pipeline: Anything with a thread-safe ``show(envelope)`` method.
        backlog: Listen queue length.
        buffer_size: Maximum bytes read per request (one ``recv``).
    """

    def __init__(self, socket_path: str, pipeline: Any, backlog: int = 5, buffer_size: int = 65536) -> None:
        self.socket_path = socket_path
        self.pipeline = pipeline
        self.backlog = backlog
        self.buffer_size = buffer_size
        self._server: Optional[ThreadingUnixServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Bind and start accepting on a daemon thread.

        Returns False (and leaves nothing behind) if the socket cannot be
        bound or listened on.
        """
        if self.running:
            return True

        handler_class = type(
            "BoundIngestionHandler",
            (IngestionHandler,),
            {"show": staticmethod(self.pipeline.show), "buffer_size": self.buffer_size},
        )

        try:
            if os.path.lexists(self.socket_path):
                log.info(f"Removing stale socket file: {self.socket_path}")
                _unlink(self.socket_path)
            server = ThreadingUnixServer(self.socket_path, handler_class, bind_and_activate=False)
        except OSError as e:
            log.error(f"Cannot prepare socket {self.socket_path}: {e}")
            return False

        server.request_queue_size = self.backlog
        try:
            server.server_bind()
            os.chmod(self.socket_path, 0o600)
            server.server_activate()
        except OSError as e:
            log.error(f"Cannot listen on {self.socket_path}: {e}")
            server.server_close()
            _unlink(self.socket_path)
            return False

        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, name="notch-ingest", daemon=True)
        self._thread.start()
        log.info(f"Ingestion server listening on {self.socket_path}")
        return True

    def stop(self) -> None:
        """Stop accepting, close the socket and remove its file."""
        server, self._server = self._server, None
        thread, self._thread = self._thread, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=2.0)
        _unlink(self.socket_path)
        log.info(f"Ingestion server stopped ({self.socket_path})")

    def __enter__(self) -> "IngestionServer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


# ─── Client ─────────────────────────────────────────────────────────────

def is_listening(socket_path: str, timeout: float = 1.0) -> bool:
    """True if something accepts connections on *socket_path*.

    Connects and closes without sending; the server treats that as an
    empty request and drops it.
    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(socket_path)
        return True
    except OSError:
        return False
    finally:
        sock.close()


def send_envelope(
    socket_path: str,
    envelope: Union[NotificationEnvelope, dict],
    timeout: float = 2.0,
) -> Optional[dict]:
    """Send one notification and return the server's ack.

    Returns None when the display process is unreachable or does not
    answer within *timeout*; never raises for transport problems.
    """
    body = envelope.to_request() if isinstance(envelope, NotificationEnvelope) else envelope
    payload = (json.dumps(body) + "\n").encode("utf-8")

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(socket_path)
        sock.sendall(payload)
        chunks: list[bytes] = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
            if b"\n" in chunk:
                break
    except OSError as e:
        log.warning(f"Cannot deliver notification to {socket_path}: {e}")
        return None
    finally:
        sock.close()

    raw = b"".join(chunks).split(b"\n", 1)[0]
    if not raw:
        log.warning(f"No acknowledgement from {socket_path}")
        return None
    try:
        ack = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        log.warning(f"Malformed acknowledgement from {socket_path}: {e}")
        return None
    return ack if isinstance(ack, dict) else None
