# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Utility functions for ci_orchestrator. """
import logging
import re
import subprocess as sp
import threading
import time
from collections import deque
from datetime import datetime, timezone

from ci_orchestrator.errors import Cancelled, StageTimeoutError

log = logging.getLogger(__name__)


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def truncate(text, limit):
    """ Returns text shortened to at most ``limit`` characters. """
    text = "" if text is None else str(text)
    if limit <= 0 or len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[:limit - 3] + "..."


def make_image_tag(build_id, timestamp):
    """ Derives the image tag of a build.

    The build id keeps tags of builds created within the same second apart,
    the timestamp keeps them sortable.
    """
    if build_id is None:
        raise ValueError("A build needs an id before it can be tagged")
    return "%s-b%d" % (timestamp.strftime("%Y%m%d-%H%M%S"), build_id)


def slugify(value):
    """ Lowercases value and squashes anything an image name can't hold. """
    value = re.sub(r"[^a-z0-9._-]+", "-", str(value).lower())
    return value.strip("-._") or "unnamed"


class CancelToken(object):
    """ Cooperative cancellation signal shared by an execution and its adapters. """

    def __init__(self):
        self._event = threading.Event()

    def __repr__(self):
        return "<CancelToken cancelled=%r>" % self.cancelled

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def check(self):
        if self._event.is_set():
            raise Cancelled("Cancellation requested")

    def wait(self, timeout):
        """ Sleeps up to timeout seconds, returns True if cancelled meanwhile. """
        return self._event.wait(timeout)


def run_command(cmd, cwd=None, env=None, cancel=None, timeout=None,
                on_output=None, stage=None, tail_lines=50, poll_interval=0.2):
    """ Runs cmd, streaming its combined output line by line to on_output.

    The process is killed as soon as ``cancel`` fires or ``timeout`` seconds
    pass.

    :returns: tuple (returncode, tail of the output as str)
    :raises: Cancelled, StageTimeoutError
    """
    log.debug("Running %r", cmd)
    proc = sp.Popen(cmd, cwd=cwd, env=env, stdout=sp.PIPE, stderr=sp.STDOUT,
                    stdin=sp.DEVNULL, universal_newlines=True)
    tail = deque(maxlen=tail_lines)

    def _pump():
        for line in iter(proc.stdout.readline, ""):
            tail.append(line)
            if on_output is not None:
                on_output(line)
        proc.stdout.close()

    reader = threading.Thread(target=_pump, name="output-%d" % proc.pid)
    reader.daemon = True
    reader.start()

    deadline = time.monotonic() + timeout if timeout else None
    try:
        while proc.poll() is None:
            if cancel is not None and cancel.cancelled:
                raise Cancelled("Cancelled while running %s" % cmd[0])
            if deadline is not None and time.monotonic() >= deadline:
                raise StageTimeoutError(stage or cmd[0], timeout)
            time.sleep(poll_interval)
    except (Cancelled, StageTimeoutError):
        _kill(proc)
        reader.join(5)
        raise

    reader.join()
    return proc.returncode, "".join(tail)


def _kill(proc):
    proc.terminate()
    try:
        proc.wait(5)
    except sp.TimeoutExpired:
        log.warning("Process %d ignored SIGTERM, killing it", proc.pid)
        proc.kill()
        proc.wait()


# Full or abbreviated commit hash. A branch named like one needs "refs/heads/".
_commit_re = re.compile(r"^[0-9a-f]{7,40}$")


def parse_ref(ref):
    """ Splits a ref into its short name and its type.

    >>> parse_ref("refs/tags/v1.0")
    ('v1.0', 'tag')
    >>> parse_ref("main")
    ('main', 'branch')
    """
    ref = (ref or "").strip()
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):], "branch"
    if ref.startswith("refs/tags/"):
        return ref[len("refs/tags/"):], "tag"
    if _commit_re.match(ref):
        return ref, "commit"
    return ref, "branch"


def format_ref(name, ref_type):
    """ Inverse of parse_ref. """
    if ref_type == "tag":
        return "refs/tags/%s" % name
    if ref_type == "commit":
        return name
    return "refs/heads/%s" % name
