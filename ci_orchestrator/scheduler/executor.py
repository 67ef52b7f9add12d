# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Runs every build and deployment on a thread of its own.

The executor also owns the cancellation tokens of the executions it runs,
so a cancel request reaching this process can interrupt the adapter call
currently in progress.
"""

import logging
import threading

from ci_orchestrator.utils import CancelToken

log = logging.getLogger(__name__)


class Executor(object):
    """
    :param int max_workers: executions allowed to run at once, 0 for no limit
    :param bool synchronous: run executions in the submitting thread
    """

    def __init__(self, max_workers=0, synchronous=False):
        self.max_workers = max_workers
        self.synchronous = synchronous
        self._tokens = {}
        self._threads = {}
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(max_workers) if max_workers else None

    def __repr__(self):
        return "<Executor running=%d, max_workers=%r>" % (
            len(self.running_keys()), self.max_workers)

    def submit(self, key, fn, *args):
        """ Starts fn(*args, cancel) for the execution identified by key.

        :returns: the CancelToken handed to fn
        """
        token = CancelToken()
        with self._lock:
            if key in self._tokens:
                raise RuntimeError("Execution %s is already running" % key)
            self._tokens[key] = token

        if self.synchronous:
            self._run(key, fn, args, token)
            return token

        thread = threading.Thread(
            target=self._run, args=(key, fn, args, token), name=key)
        thread.daemon = True
        with self._lock:
            self._threads[key] = thread
        thread.start()
        return token

    def _run(self, key, fn, args, token):
        if self._slots is not None:
            self._slots.acquire()
        try:
            log.debug("Execution %s starting", key)
            fn(*(args + (token,)))
        except Exception:
            log.exception("Execution %s crashed", key)
        finally:
            if self._slots is not None:
                self._slots.release()
            with self._lock:
                self._tokens.pop(key, None)
                self._threads.pop(key, None)
            log.debug("Execution %s finished", key)

    def cancel(self, key):
        """ Fires the cancellation token of key.

        :returns: True when the execution runs in this process
        """
        with self._lock:
            token = self._tokens.get(key)
        if token is None:
            return False
        log.info("Cancelling execution %s", key)
        token.cancel()
        return True

    def is_running(self, key):
        with self._lock:
            return key in self._tokens

    def running_keys(self):
        with self._lock:
            return sorted(self._tokens)

    def join(self, timeout=None):
        """ Waits for the executions started so far. """
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)
