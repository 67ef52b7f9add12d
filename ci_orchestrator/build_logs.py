# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Execution logs.

Every build and deployment owns one bounded, append-only buffer. Adapters
append their output to it while the execution runs and status requests
read it concurrently. Log records emitted on the execution's own thread
are routed into the buffer too, so a single execution log interleaves
orchestrator messages with the output of the tools it runs.
"""

import logging
import threading
from collections import deque

from ci_orchestrator.logger import log_format

log = logging.getLogger(__name__)


def build_key(build_id):
    return "build-%s" % build_id


def deployment_key(deployment_id):
    return "deployment-%s" % deployment_id


class LogBuffer(object):
    """ Ordered text chunks capped at max_bytes, oldest evicted first. """

    def __init__(self, max_bytes):
        self.max_bytes = max_bytes
        self._chunks = deque()
        self._size = 0
        self._lock = threading.Lock()
        self.truncated = False

    def __len__(self):
        return self._size

    def append(self, text):
        if not text:
            return
        data = text.encode("utf-8", "replace")
        with self._lock:
            if len(data) >= self.max_bytes:
                # Keep the tail of an oversized chunk only
                self._chunks.clear()
                self._size = 0
                data = data[-self.max_bytes:]
                self.truncated = True
            while self._chunks and self._size + len(data) > self.max_bytes:
                self._size -= len(self._chunks.popleft())
                self.truncated = True
            self._chunks.append(data)
            self._size += len(data)

    def read(self):
        with self._lock:
            data = b"".join(self._chunks)
        # Eviction may have split a multi-byte character
        return data.decode("utf-8", "replace")


class ExecutionLogHandler(logging.Handler):
    """ Feeds the records of a single thread into a LogBuffer. """

    def __init__(self, buf, thread_ident, level=logging.NOTSET):
        super(ExecutionLogHandler, self).__init__(level)
        self.buf = buf
        self.thread_ident = thread_ident
        self.setFormatter(logging.Formatter(log_format))

    def filter(self, record):
        if record.thread != self.thread_ident:
            return False
        return super(ExecutionLogHandler, self).filter(record)

    def emit(self, record):
        try:
            self.buf.append(self.format(record) + "\n")
        except Exception:
            self.handleError(record)


class ExecutionLogs(object):
    """ Registry of the log buffers of the executions running in this process. """

    def __init__(self, max_bytes, level=logging.INFO):
        self.max_bytes = max_bytes
        self.level = level
        self._buffers = {}
        self._handlers = {}
        self._lock = threading.Lock()

    def start(self, key):
        """ Opens the buffer of key and captures the log records of the
        calling thread into it. Restarting an existing key keeps its content,
        which is what a rollback of a deployment relies on.
        """
        with self._lock:
            buf = self._buffers.get(key)
            if buf is None:
                buf = LogBuffer(self.max_bytes)
                self._buffers[key] = buf
            if key in self._handlers:
                logging.getLogger().removeHandler(self._handlers.pop(key))
            handler = ExecutionLogHandler(buf, threading.get_ident(), self.level)
            self._handlers[key] = handler
        logging.getLogger().addHandler(handler)
        return buf

    def stop(self, key):
        """ Stops capturing log records for key. The content stays readable
        until discard() is called.
        """
        with self._lock:
            handler = self._handlers.pop(key, None)
        if handler is not None:
            logging.getLogger().removeHandler(handler)

    def append(self, key, text):
        with self._lock:
            buf = self._buffers.get(key)
        if buf is None:
            log.debug("Dropping output for unknown execution log %s", key)
            return
        buf.append(text)

    def writer(self, key):
        """ Returns a callable appending to key, handy as an output callback. """
        def _write(text):
            self.append(key, text)
        return _write

    def read(self, key):
        """ Returns the current content of key or None if it is not open here. """
        with self._lock:
            buf = self._buffers.get(key)
        if buf is None:
            return None
        return buf.read()

    def discard(self, key):
        self.stop(key)
        with self._lock:
            self._buffers.pop(key, None)
