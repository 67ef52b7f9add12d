# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

import datetime

from ci_orchestrator import conf, db, models
from ci_orchestrator.build_logs import ExecutionLogs
from ci_orchestrator.builder import GenericImageBuilder
from ci_orchestrator.cluster import ReadinessInfo
from ci_orchestrator.control import Control
from ci_orchestrator.errors import SourceError
from ci_orchestrator.scheduler.executor import Executor
from ci_orchestrator.scm import WorkingCopy

assert conf.sqlalchemy_database_uri.startswith("sqlite")

REPO_URL = "https://git.example.com/team/demo.git"
COMMIT = "3f4a1c9e2b7d8a6f5e4c3b2a1908f7e6d5c4b3a2"
WEBHOOK_SECRET = "demo-hook"


def clean_database():
    db.drop_tables()
    db.create_tables()


def init_data():
    """ One project with three pipelines:

    1. "web" building main and v* tags on push
    2. "worker" building release/* branches on push
    3. "legacy", disabled
    """
    clean_database()
    with db.session_scope() as session:
        session.add(models.Project(
            id=1, name="demo", git_url=REPO_URL, git_provider="github",
            webhook_secret=WEBHOOK_SECRET))
        session.add(models.Pipeline(id=1, project_id=1, name="web", config="port: 8000\n"))
        session.add(models.Pipeline(id=2, project_id=1, name="worker", config=""))
        session.add(models.Pipeline(id=3, project_id=1, name="legacy", config="",
                                    enabled=False))
        session.add(models.Trigger(pipeline_id=1, kind="webhook", branch="main", tag="v*"))
        session.add(models.Trigger(pipeline_id=1, kind="schedule", branch="main",
                                   schedule="0 3 * * *"))
        session.add(models.Trigger(pipeline_id=2, kind="webhook", branch="release/*"))
        session.add(models.Trigger(pipeline_id=3, kind="webhook", branch="*"))


def make_build(pipeline_id=1, state="success", ref="main", image_tag="20240101-000000-b1",
               **kwargs):
    """ Inserts a build as if some orchestrator had driven it to state. """
    now = datetime.datetime(2024, 1, 1)
    with db.session_scope() as session:
        build = models.Build(
            pipeline_id=pipeline_id,
            ref=ref,
            ref_type="branch",
            source="manual",
            commit_hash=COMMIT,
            state=state,
            image_name="registry.example.local/demo/web",
            image_tag=image_tag,
            time_submitted=now,
            time_modified=now,
            **kwargs)
        if not build.is_terminal:
            build.active_pipeline_id = pipeline_id
        session.add(build)
        session.flush()
        return build.id


def make_deployment(build_id, state="success", environment="prod", namespace="ns1",
                    service_name="svc1", revision="1", **kwargs):
    now = datetime.datetime(2024, 1, 1)
    with db.session_scope() as session:
        deployment = models.Deployment(
            build_id=build_id,
            environment=environment,
            replicas=1,
            namespace=namespace,
            service_name=service_name,
            state=state,
            revision=revision,
            time_submitted=now,
            time_modified=now,
            **kwargs)
        if not deployment.is_terminal:
            deployment.active_key = models.Deployment.make_active_key(build_id, environment)
        session.add(deployment)
        session.flush()
        return deployment.id


def make_control(source=None, image_builder=None, cluster=None, executor=None):
    """ A Control running everything synchronously against in-memory fakes. """
    return Control(
        db, conf,
        source=source or FakeSource(),
        image_builder=image_builder or FakeImageBuilder(),
        cluster=cluster or FakeCluster(),
        executor=executor or Executor(synchronous=True),
        logs=ExecutionLogs(conf.log_buffer_max_bytes, conf.log_level),
    )


class FakeSource(object):
    """ Hands out working copies without touching git.

    ``errors`` is consumed one item per acquire call, None meaning success.
    Errors are raised with the partial working copy attached.
    """

    def __init__(self, commit=COMMIT, errors=None):
        self.commit = commit
        self.errors = list(errors or [])
        self.acquired = []
        self.released = []

    def acquire(self, repo_url, ref, credentials=None, cancel=None, timeout=None,
                on_output=None):
        wc = WorkingCopy("/tmp/wc-%d" % (len(self.acquired) + 1), ref, repo_url=repo_url)
        self.acquired.append(wc)
        if on_output is not None:
            on_output("Cloning into '%s'...\n" % wc.path)
        error = self.errors.pop(0) if self.errors else None
        if error is not None:
            if isinstance(error, SourceError):
                error.working_copy = wc
            raise error
        wc.commit = self.commit
        return wc

    def release(self, working_copy):
        self.released.append(working_copy)


class FakeImageBuilder(object):
    """ Records builds and pushes. ``on_build`` runs in the middle of a build. """

    def __init__(self, build_error=None, push_errors=None, on_build=None):
        self.build_error = build_error
        self.push_errors = list(push_errors or [])
        self.on_build = on_build
        self.builds = []
        self.pushed = []

    def build(self, working_copy, image_name, image_tag, build_args=None, labels=None,
              dockerfile=None, cancel=None, timeout=None, on_output=None):
        GenericImageBuilder.validate(working_copy, image_name, image_tag)
        self.builds.append({
            "working_copy": working_copy,
            "image_name": image_name,
            "image_tag": image_tag,
            "build_args": build_args,
            "labels": labels,
            "dockerfile": dockerfile,
        })
        if on_output is not None:
            on_output("Step 1/1 : FROM scratch\n")
        if self.on_build is not None:
            self.on_build()
        if self.build_error is not None:
            raise self.build_error
        return "%s:%s" % (image_name, image_tag)

    def push(self, image_ref, credentials=None, cancel=None, timeout=None, on_output=None):
        error = self.push_errors.pop(0) if self.push_errors else None
        if error is not None:
            raise error
        self.pushed.append(image_ref)


class FakeCluster(object):
    """ Keeps the applied workloads in memory, every apply is a new revision.
    ``on_status`` runs whenever readiness is polled.
    """

    def __init__(self, supports_revision_history=True, ready=True, failed=False,
                 apply_errors=None, rollback_error=None, on_status=None):
        self.supports_revision_history = supports_revision_history
        self.ready = ready
        self.failed = failed
        self.apply_errors = list(apply_errors or [])
        self.rollback_error = rollback_error
        self.on_status = on_status
        self.applied = []
        self.rolled_back = []
        self.scaled = []
        self.deleted = []
        self.workloads = {}
        self.revision = 0

    def apply(self, spec, cancel=None, timeout=None):
        error = self.apply_errors.pop(0) if self.apply_errors else None
        if error is not None:
            raise error
        self.applied.append(spec)
        self.workloads[spec.ref] = spec
        self.revision += 1
        return str(self.revision)

    def scale(self, ref, replicas, timeout=None):
        self.scaled.append((ref, replicas))

    def get_status(self, ref, timeout=None):
        if self.on_status is not None:
            self.on_status()
        spec = self.workloads.get(ref)
        desired = spec.replicas if spec is not None else 1
        if self.failed:
            return ReadinessInfo(desired, failed=True, message="CrashLoopBackOff")
        if not self.ready:
            return ReadinessInfo(desired, 0, 0, str(self.revision))
        return ReadinessInfo(desired, desired, desired, str(self.revision))

    def rollback(self, ref, timeout=None):
        self.rolled_back.append(ref)
        if self.rollback_error is not None:
            raise self.rollback_error
        self.revision += 1
        return str(self.revision)

    def delete(self, ref, timeout=None):
        self.deleted.append(ref)
        self.workloads.pop(ref, None)

    def get_logs(self, ref, tail_lines=100, timeout=None):
        return "==> %s-0 <==\nlistening on :8000\n" % ref.name
