# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" The build orchestrator.

Drives one build through ``pending -> cloning -> building -> pushing ->
success``. Every state is persisted before the stage it names starts, so
a crash leaves the build in the state it was attempting. The working copy
is released exactly once, whatever way the build ends.
"""

import logging

import yaml

from ci_orchestrator import models
from ci_orchestrator.build_logs import build_key
from ci_orchestrator.errors import (
    INTERNAL,
    INVALID_INPUT,
    WRONG_STATE,
    AdapterError,
    AdmissionError,
    Cancelled,
    NotFound,
    SourceError,
)
from ci_orchestrator.utils import make_image_tag, slugify, truncate

log = logging.getLogger(__name__)

# The stage each in-flight state stands for, as recorded in failed_stage.
STAGES = {
    models.BUILD_STATES["cloning"]: "clone",
    models.BUILD_STATES["building"]: "build",
    models.BUILD_STATES["pushing"]: "push",
}


class PipelineConfigError(ValueError):
    pass


def parse_pipeline_config(text):
    """ Reads the YAML build configuration of a pipeline.

    Every key is optional. An empty configuration builds the Dockerfile at
    the root of the repository and pushes the result.
    """
    try:
        data = yaml.safe_load(text or "")
    except yaml.YAMLError as e:
        raise PipelineConfigError("Pipeline configuration is not valid YAML: %s" % e)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise PipelineConfigError("Pipeline configuration must be a mapping, got %s"
                                  % type(data).__name__)

    for key in ("build_args", "labels"):
        value = data.get(key) or {}
        if not isinstance(value, dict):
            raise PipelineConfigError("%r must be a mapping" % key)
        data[key] = dict((str(k), str(v)) for k, v in value.items())

    port = data.get("port")
    if port is not None:
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise PipelineConfigError("Invalid port %r" % port)

    data.setdefault("image", None)
    data.setdefault("dockerfile", None)
    data.setdefault("port", None)
    data["push"] = bool(data.get("push", True))
    return data


class _Context(object):
    """ What the orchestrator reads once, before the first stage. """

    def __init__(self, build, pipeline, project):
        self.build_id = build.id
        self.ref = build.full_ref
        self.commit = build.commit_hash
        self.time_submitted = build.time_submitted
        self.pipeline_id = pipeline.id
        self.pipeline_name = pipeline.name
        self.config_text = pipeline.config
        self.project_id = project.id
        self.project_name = project.name
        self.repo_url = project.git_url


class _Outcome(object):
    def __init__(self, state, reason=None, stage=None, kind=None, image_name=None,
                 image_tag=None):
        self.state = state
        self.reason = reason
        self.stage = stage
        self.kind = kind
        self.image_name = image_name
        self.image_tag = image_tag

    def __repr__(self):
        return "<_Outcome %s, stage=%r, kind=%r>" % (self.state, self.stage, self.kind)


class BuildOrchestrator(object):
    """
    :param db: ci_orchestrator.db_session.Database
    :param config: ci_orchestrator.config.Config
    :param source: source adapter, see ci_orchestrator.scm.GitSource
    :param image_builder: ci_orchestrator.builder.GenericImageBuilder
    :param logs: ci_orchestrator.build_logs.ExecutionLogs
    :param credentials: ci_orchestrator.credentials.ConfigCredentials
    :param executor: ci_orchestrator.scheduler.executor.Executor
    """

    def __init__(self, db, config, source, image_builder, logs, credentials, executor):
        self.db = db
        self.config = config
        self.source = source
        self.image_builder = image_builder
        self.logs = logs
        self.credentials = credentials
        self.executor = executor

    def start(self, build_id):
        """ Hands a pending build over to its own thread. """
        return self.executor.submit(build_key(build_id), self.run, build_id)

    def image_name(self, ctx, pipeline_config):
        if pipeline_config.get("image"):
            return str(pipeline_config["image"])
        return "%s/%s/%s" % (
            self.config.registry, slugify(ctx.project_name), slugify(ctx.pipeline_name))

    def run(self, build_id, cancel):
        key = build_key(build_id)
        self.logs.start(key)
        try:
            self._run(build_id, key, cancel)
        finally:
            self.logs.discard(key)

    def _run(self, build_id, key, cancel):
        with self.db.session_scope() as session:
            build = session.get(models.Build, build_id)
            if build is None:
                log.error("Build %r vanished before it started", build_id)
                return
            if build.state != models.BUILD_STATES["pending"]:
                log.warning("%r is not pending, not running it", build)
                return
            pipeline = session.get(models.Pipeline, build.pipeline_id)
            project = session.get(models.Project, pipeline.project_id)
            ctx = _Context(build, pipeline, project)

        log.info("Starting build %r of pipeline %r at %s", build_id, ctx.pipeline_name, ctx.ref)
        # The working copy to release, or what a failed acquire left behind
        holder = {"wc": None}
        try:
            outcome = self._execute(ctx, key, cancel, holder)
        except Cancelled as e:
            outcome = _Outcome("cancelled", reason=str(e))
        except PipelineConfigError as e:
            outcome = _Outcome("failed", reason=str(e), stage="config", kind=INVALID_INPUT)
        except AdapterError as e:
            outcome = _Outcome("failed", reason=str(e), stage=e.stage, kind=e.kind)
        except Exception as e:
            log.exception("Build %r failed unexpectedly", build_id)
            outcome = _Outcome("failed", reason="%s: %s" % (type(e).__name__, e), kind=INTERNAL)
        finally:
            self._release(holder["wc"])

        self._settle(build_id, key, outcome, cancel)

    def _execute(self, ctx, key, cancel, holder):
        self._advance(ctx.build_id, key, "cloning", cancel)
        pipeline_config = parse_pipeline_config(ctx.config_text)
        output = self.logs.writer(key)

        # Prefer the exact commit an event announced over a moving branch
        ref = ctx.commit or ctx.ref
        wc = self._acquire(ref, ctx, cancel, output, holder)

        image_name = self.image_name(ctx, pipeline_config)
        now = self._advance(ctx.build_id, key, "building", cancel, commit_hash=wc.commit)
        image_tag = make_image_tag(ctx.build_id, now)
        labels = {
            "org.opencontainers.image.revision": wc.commit,
            "ci-orchestrator.build-id": str(ctx.build_id),
            "ci-orchestrator.pipeline-id": str(ctx.pipeline_id),
        }
        labels.update(pipeline_config["labels"])
        image_ref = self.image_builder.build(
            wc, image_name, image_tag,
            build_args=pipeline_config["build_args"],
            labels=labels,
            dockerfile=pipeline_config["dockerfile"],
            cancel=cancel,
            timeout=self.config.stage_timeout("build"),
            on_output=output,
        )

        self._advance(ctx.build_id, key, "pushing", cancel)
        if pipeline_config["push"]:
            credentials = self.credentials.registry(ctx.project_id)
            self._call_with_retry(
                "push", cancel, self.image_builder.push, image_ref,
                credentials=credentials, cancel=cancel,
                timeout=self.config.stage_timeout("push"), on_output=output)
        else:
            log.info("Pushing is disabled for pipeline %r, keeping %s local",
                     ctx.pipeline_name, image_ref)

        return _Outcome("success", image_name=image_name, image_tag=image_tag)

    def _acquire(self, ref, ctx, cancel, output, holder):
        """ Clones once, leaving in holder whatever working copy has to be
        released, partial or not.

        A failed clone is never retried, a fresh build is the retry.
        """
        try:
            wc = self.source.acquire(
                ctx.repo_url, ref, credentials=self.credentials.git(ctx.project_id),
                cancel=cancel, timeout=self.config.stage_timeout("clone"), on_output=output)
        except SourceError as e:
            holder["wc"] = e.working_copy
            raise
        holder["wc"] = wc
        return wc

    def _call_with_retry(self, stage, token, fn, *args, **kwargs):
        """ Calls fn, once more after a backoff if it fails transiently.

        Keyword arguments, cancel included, go to fn untouched.
        """
        try:
            return fn(*args, **kwargs)
        except AdapterError as e:
            if not e.retryable:
                raise
            backoff = self.config.transient_retry_backoff
            log.warning("Transient %s failure, retrying once in %ss: %s", stage, backoff, e)
            if token.wait(backoff):
                raise Cancelled("Cancelled while waiting to retry %s" % stage)
            return fn(*args, **kwargs)

    def _release(self, wc):
        if wc is None:
            return
        try:
            self.source.release(wc)
        except Exception:
            log.exception("Failed to release working copy %r", wc)

    def _advance(self, build_id, key, state, cancel, **fields):
        """ Persists the next state before the stage it names runs.

        :returns: the time of the transition
        :raises: Cancelled if cancellation was requested meanwhile
        """
        with self.db.session_scope() as session:
            build = session.get(models.Build, build_id)
            if build.cancel_requested:
                cancel.cancel()
            cancel.check()
            for name, value in fields.items():
                setattr(build, name, value)
            build.transition(state)
            build.logs = self.logs.read(key)
            return build.time_modified

    def _settle(self, build_id, key, outcome, cancel):
        with self.db.session_scope() as session:
            build = session.get(models.Build, build_id)
            if build.is_terminal:
                log.warning("%r settled meanwhile, keeping it", build)
                return
            if outcome.state == "success" and (cancel.cancelled or build.cancel_requested):
                # Finished anyway, but somebody asked for it to stop
                outcome = _Outcome("cancelled", reason="Cancelled on request")
            if outcome.state == "failed" and build.state == models.BUILD_STATES["pending"]:
                # Never started, pending has no way to failed
                outcome = _Outcome("cancelled", reason=outcome.reason)

            if outcome.state == "success":
                build.image_name = outcome.image_name
                build.image_tag = outcome.image_tag
            elif outcome.state == "failed":
                build.failed_stage = outcome.stage or STAGES.get(build.state)
                build.error_kind = outcome.kind
            reason = truncate(outcome.reason, self.config.error_summary_max_length)
            if outcome.state == "failed":
                log.error("Build %r failed in %s stage: %s", build_id, build.failed_stage, reason)
            build.transition(outcome.state, state_reason=reason)
            build.logs = self.logs.read(key)

    def cancel(self, build_id):
        """ Requests cancellation of a build.

        A pending build nobody runs is cancelled right away, a running one
        is interrupted at its next adapter call boundary.

        :returns: the build JSON snapshot
        """
        with self.db.session_scope() as session:
            build = session.get(models.Build, build_id)
            if build is None:
                raise NotFound("No such build: %r" % build_id)
            if build.is_terminal:
                raise AdmissionError(
                    WRONG_STATE, "Build %r is already %s" % (build_id, build.state_name))
            build.cancel_requested = True
            if (build.state == models.BUILD_STATES["pending"]
                    and not self.executor.is_running(build_key(build_id))):
                build.transition("cancelled", state_reason="Cancelled on request")
            snapshot = build.json()
        self.executor.cancel(build_key(build_id))
        return snapshot
