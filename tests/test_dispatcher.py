# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

import hashlib
import hmac
import json
import os
import shutil
import tempfile
import threading

import mock
import pytest

from ci_orchestrator import conf, db, models
from ci_orchestrator.db_session import Database
from ci_orchestrator.errors import (
    BUSY,
    DISABLED,
    NO_MATCHING_TRIGGER,
    AdmissionError,
    Forbidden,
    NotFound,
    ValidationError,
)
from ci_orchestrator.scheduler.dispatcher import Dispatcher
from tests import COMMIT, REPO_URL, WEBHOOK_SECRET, init_data


def github_request(ref="refs/heads/main", event="push", secret="github-test-secret",
                   clone_url=REPO_URL, **extra):
    payload = {
        "ref": ref,
        "after": COMMIT,
        "repository": {
            "clone_url": clone_url,
            "ssh_url": "git@git.example.com:team/demo.git",
        },
    }
    payload.update(extra)
    raw = json.dumps(payload).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    headers = {
        "X-GitHub-Event": event,
        "X-Hub-Signature-256": "sha256=" + signature,
        "Content-Type": "application/json",
    }
    return raw, headers


class TestSubmit:

    def setup_method(self, test_method):
        init_data()
        self.orchestrator = mock.Mock()
        self.dispatcher = Dispatcher(db, conf, self.orchestrator)

    def test_manual_run_is_admitted_and_started(self):
        build = self.dispatcher.submit(1, "main")
        assert build.state_name == "pending"
        assert build.source == "manual"
        self.orchestrator.start.assert_called_once_with(build.id)

    def test_busy_pipeline(self):
        self.dispatcher.submit(1, "main")
        with pytest.raises(AdmissionError) as excinfo:
            self.dispatcher.submit(1, "main")
        assert excinfo.value.reason == BUSY
        assert self.orchestrator.start.call_count == 1

    def test_pipelines_are_independent(self):
        self.dispatcher.submit(1, "main")
        self.dispatcher.submit(2, "main")
        assert self.orchestrator.start.call_count == 2

    def test_disabled_pipeline(self):
        with pytest.raises(AdmissionError) as excinfo:
            self.dispatcher.submit(3, "main")
        assert excinfo.value.reason == DISABLED

    def test_unknown_pipeline(self):
        with pytest.raises(NotFound):
            self.dispatcher.submit(42, "main")

    def test_manual_run_bypasses_triggers(self):
        build = self.dispatcher.submit(1, "develop")
        assert build.ref == "develop"

    @pytest.mark.parametrize("source", ["webhook", "schedule"])
    def test_trigger_must_match(self, source):
        with pytest.raises(AdmissionError) as excinfo:
            self.dispatcher.submit(1, "refs/heads/develop", source=source)
        assert excinfo.value.reason == NO_MATCHING_TRIGGER

    def test_schedule_trigger(self):
        build = self.dispatcher.submit(1, "main", source="schedule")
        assert build.source == "schedule"

    def test_webhook_commit_is_kept(self):
        build = self.dispatcher.submit(1, "refs/tags/v1.2", source="webhook", commit=COMMIT)
        assert build.ref_type == "tag"
        assert build.commit_hash == COMMIT

    def test_abbreviated_commit(self):
        build = self.dispatcher.submit(1, COMMIT[:10])
        assert build.ref_type == "commit"
        assert build.commit_hash == COMMIT[:10]

    @pytest.mark.parametrize("ref,source", [
        ("", "manual"),
        ("   ", "manual"),
        ("main", "cron"),
    ])
    def test_invalid_input(self, ref, source):
        with pytest.raises(ValidationError):
            self.dispatcher.submit(1, ref, source=source)


class TestConcurrentSubmit:
    """ Needs a database file, the in-memory one is a single connection. """

    def setup_method(self, test_method):
        self.tmpdir = tempfile.mkdtemp(prefix="ci-orchestrator-test-")
        self.db = Database("sqlite:///" + os.path.join(self.tmpdir, "test.db"))
        self.db.create_tables()
        with self.db.session_scope() as session:
            session.add(models.Project(id=1, name="demo", git_url=REPO_URL))
            session.add(models.Pipeline(id=1, project_id=1, name="web"))

    def teardown_method(self, test_method):
        self.db.engine.dispose()
        shutil.rmtree(self.tmpdir)

    def test_exactly_one_submission_wins(self):
        dispatcher = Dispatcher(self.db, conf, mock.Mock())
        workers = 8
        barrier = threading.Barrier(workers)
        accepted = []
        rejected = []
        unexpected = []

        def submit():
            barrier.wait()
            try:
                accepted.append(dispatcher.submit(1, "main").id)
            except AdmissionError as e:
                rejected.append(e.reason)
            except Exception as e:
                unexpected.append(e)

        threads = [threading.Thread(target=submit) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert unexpected == []
        assert len(accepted) == 1
        assert rejected == [BUSY] * (workers - 1)
        with self.db.session_scope() as session:
            assert [b.id for b in models.Build.non_terminal(session)] == accepted


class TestHandleWebhook:

    def setup_method(self, test_method):
        init_data()
        self.orchestrator = mock.Mock()
        self.dispatcher = Dispatcher(db, conf, self.orchestrator)

    def test_push_to_main(self):
        raw, headers = github_request()
        result = self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        assert result["event"] == "push"
        assert result["commit"] == COMMIT
        assert [b["pipeline_id"] for b in result["builds"]] == [1]
        build = result["builds"][0]
        assert build["source"] == "webhook"
        assert build["ref"] == "main"
        assert build["commit_hash"] == COMMIT
        assert result["skipped"] == [
            {"pipeline_id": 2, "reason": NO_MATCHING_TRIGGER},
            {"pipeline_id": 3, "reason": DISABLED},
        ]

    def test_push_to_release_branch(self):
        raw, headers = github_request(ref="refs/heads/release/2.0")
        result = self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        assert [b["pipeline_id"] for b in result["builds"]] == [2]

    def test_tag_push(self):
        raw, headers = github_request(ref="refs/tags/v2.0")
        result = self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        assert result["event"] == "tag_push"
        assert [b["ref_type"] for b in result["builds"]] == ["tag"]

    def test_busy_pipeline_is_skipped(self):
        self.dispatcher.submit(1, "main")
        raw, headers = github_request()
        result = self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        assert result["builds"] == []
        assert {"pipeline_id": 1, "reason": BUSY} in result["skipped"]

    def test_ping_starts_nothing(self):
        raw, headers = github_request(event="ping")
        result = self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        assert result["event"] == "ping"
        assert result["builds"] == []
        self.orchestrator.start.assert_not_called()

    def test_bad_signature(self):
        raw, headers = github_request(secret="not-the-secret")
        with pytest.raises(Forbidden):
            self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        self.orchestrator.start.assert_not_called()

    def test_unknown_project(self):
        raw, headers = github_request()
        with pytest.raises(NotFound):
            self.dispatcher.handle_webhook("github", "nope", raw, headers)

    def test_wrong_provider(self):
        raw, headers = github_request()
        with pytest.raises(ValidationError):
            self.dispatcher.handle_webhook("gitlab", WEBHOOK_SECRET, raw, headers)

    def test_foreign_repository(self):
        raw, headers = github_request(clone_url="https://git.example.com/team/other.git")
        payload = json.loads(raw)
        payload["repository"].pop("ssh_url")
        raw = json.dumps(payload).encode("utf-8")
        signature = hmac.new(b"github-test-secret", raw, hashlib.sha256).hexdigest()
        headers["X-Hub-Signature-256"] = "sha256=" + signature
        with pytest.raises(ValidationError):
            self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)

    def test_project_signing_secret(self):
        with db.session_scope() as session:
            session.get(models.Project, 1).webhook_signing_secret = "demo-signing-key"
        raw, headers = github_request(secret="demo-signing-key")
        result = self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        assert [b["pipeline_id"] for b in result["builds"]] == [1]

        # The provider wide secret no longer signs events of this project
        raw, headers = github_request(secret="github-test-secret")
        with pytest.raises(Forbidden):
            self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)

    def test_url_secret_does_not_sign(self):
        raw, headers = github_request(secret=WEBHOOK_SECRET)
        with mock.patch.object(conf, "webhook_secrets", {}):
            with pytest.raises(Forbidden):
                self.dispatcher.handle_webhook("github", WEBHOOK_SECRET, raw, headers)
        self.orchestrator.start.assert_not_called()
