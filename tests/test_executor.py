# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

import threading

import pytest

from ci_orchestrator.scheduler.executor import Executor


class TestExecutor:

    def test_runs_on_a_named_thread_with_a_token(self):
        executor = Executor()
        seen = {}
        done = threading.Event()

        def job(a, b, token):
            seen["args"] = (a, b)
            seen["thread"] = threading.current_thread().name
            seen["token"] = token
            done.set()

        token = executor.submit("build-1", job, 1, 2)
        assert done.wait(10)
        executor.join(10)
        assert seen == {"args": (1, 2), "thread": "build-1", "token": token}
        assert not executor.is_running("build-1")

    def test_cancel_reaches_the_running_job(self):
        executor = Executor()
        started = threading.Event()
        result = {}

        def job(token):
            started.set()
            result["cancelled"] = token.wait(10)

        executor.submit("deployment-3", job)
        assert started.wait(10)
        assert executor.is_running("deployment-3")
        assert executor.running_keys() == ["deployment-3"]
        assert executor.cancel("deployment-3") is True
        executor.join(10)
        assert result["cancelled"] is True
        assert executor.cancel("deployment-3") is False

    def test_one_execution_per_key(self):
        executor = Executor()
        release = threading.Event()
        executor.submit("build-1", lambda token: release.wait(10))
        try:
            with pytest.raises(RuntimeError):
                executor.submit("build-1", lambda token: None)
        finally:
            release.set()
            executor.join(10)

    def test_crash_is_contained(self):
        executor = Executor(synchronous=True)

        def job(token):
            raise ValueError("boom")

        executor.submit("build-1", job)
        assert not executor.is_running("build-1")
        # The key can be used again
        executor.submit("build-1", lambda token: None)

    def test_max_workers(self):
        executor = Executor(max_workers=1)
        release = threading.Event()
        running = []
        lock = threading.Lock()
        peak = []

        def job(token):
            with lock:
                running.append(1)
                peak.append(len(running))
            release.wait(0.2)
            with lock:
                running.pop()

        for i in range(3):
            executor.submit("build-%d" % i, job)
        release.set()
        executor.join(10)
        assert max(peak) == 1
        assert len(peak) == 3
