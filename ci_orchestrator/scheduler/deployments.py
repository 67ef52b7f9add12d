# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" The deployment orchestrator.

Deployments go ``pending -> applying -> success``. A successful deployment
can be rolled back, ``rollback_requested -> rolling_back -> success``, in
place: the record is kept and only its state and revision change.
"""

import logging
import threading
import time

from sqlalchemy.exc import IntegrityError

from ci_orchestrator import models
from ci_orchestrator.build_logs import deployment_key
from ci_orchestrator.cluster import GenericClusterBackend, WorkloadRef, WorkloadSpec
from ci_orchestrator.errors import (
    BUSY,
    INTERNAL,
    INVALID_INPUT,
    NOT_FOUND,
    WRONG_STATE,
    AdapterError,
    AdmissionError,
    Cancelled,
    ClusterError,
    NotFound,
    StageTimeoutError,
    ValidationError,
)
from ci_orchestrator.scheduler.builds import PipelineConfigError, parse_pipeline_config
from ci_orchestrator.utils import slugify, truncate

log = logging.getLogger(__name__)


class _Outcome(object):
    def __init__(self, state, reason=None, kind=None, revision=None, rollback_build_id=None):
        self.state = state
        self.reason = reason
        self.kind = kind
        self.revision = revision
        self.rollback_build_id = rollback_build_id


class DeploymentOrchestrator(object):
    """
    :param db: ci_orchestrator.db_session.Database
    :param config: ci_orchestrator.config.Config
    :param cluster: ci_orchestrator.cluster.GenericClusterBackend
    :param logs: ci_orchestrator.build_logs.ExecutionLogs
    :param executor: ci_orchestrator.scheduler.executor.Executor
    :param credentials: ci_orchestrator.credentials.ConfigCredentials, environments
        it gives a kubeconfig of their own are deployed through a backend of
        their own
    """

    def __init__(self, db, config, cluster, logs, executor, credentials=None):
        self.db = db
        self.config = config
        self.cluster = cluster
        self.logs = logs
        self.executor = executor
        self.credentials = credentials
        self._clusters = {}
        self._lock = threading.Lock()

    def cluster_for(self, environment):
        """ Returns the cluster backend serving environment. """
        if self.credentials is None:
            return self.cluster
        kubeconfig = self.credentials.cluster(environment)
        if not kubeconfig or kubeconfig == self.config.kubeconfig:
            return self.cluster
        with self._lock:
            if kubeconfig not in self._clusters:
                log.debug("Using %s for environment %s", kubeconfig, environment)
                self._clusters[kubeconfig] = GenericClusterBackend.create(
                    self.config, kubeconfig=kubeconfig)
            return self._clusters[kubeconfig]

    # Admission

    def deploy(self, build_id, environment, replicas=1, namespace=None, service_name=None,
               ingress_host=""):
        """ Creates a pending deployment of a successful build and starts it.

        :returns: ci_orchestrator.models.Deployment
        :raises: NotFound, ValidationError, AdmissionError
        """
        if not environment or not str(environment).strip():
            raise ValidationError("A deployment needs an environment")
        try:
            replicas = int(replicas)
        except (TypeError, ValueError):
            raise ValidationError("Invalid replica count %r" % (replicas,))
        if replicas < 0:
            raise ValidationError("Invalid replica count %r" % replicas)
        namespace = namespace or self.config.default_namespace

        with self.db.session_scope() as session:
            build = session.get(models.Build, build_id)
            if build is None:
                raise NotFound("No such build: %r" % build_id)
            if build.state != models.BUILD_STATES["success"]:
                raise ValidationError("Build %r is %s, only successful builds can be deployed"
                                      % (build_id, build.state_name))
            if not service_name:
                pipeline = session.get(models.Pipeline, build.pipeline_id)
                service_name = slugify("%s-%s" % (pipeline.name, environment))
            active = models.Deployment.active_for(session, build_id, environment)
            if active is not None:
                raise AdmissionError(BUSY, "Build %r is being deployed to %s by deployment %r"
                                     % (build_id, environment, active.id))

        try:
            with self.db.session_scope() as session:
                deployment = models.Deployment.create(
                    session, build_id, environment, replicas, namespace, service_name,
                    ingress_host=ingress_host)
        except IntegrityError:
            raise AdmissionError(BUSY, "Build %r is being deployed to %s" % (
                build_id, environment))

        log.info("Admitted %r", deployment)
        self.executor.submit(deployment_key(deployment.id), self.run, deployment.id)
        return deployment

    def rollback(self, deployment_id):
        """ Rolls a successful deployment back to what ran before it.

        :returns: the deployment JSON snapshot
        :raises: NotFound, AdmissionError
        """
        try:
            with self.db.session_scope() as session:
                deployment = session.get(models.Deployment, deployment_id)
                if deployment is None:
                    raise NotFound("No such deployment: %r" % deployment_id)
                if deployment.state != models.DEPLOYMENT_STATES["success"]:
                    raise AdmissionError(WRONG_STATE, "Deployment %r is %s, only successful "
                                         "deployments can be rolled back"
                                         % (deployment_id, deployment.state_name))
                deployment.transition("rollback_requested")
                session.flush()
                snapshot = deployment.json()
        except IntegrityError:
            raise AdmissionError(BUSY, "Another deployment of the same build to the same "
                                 "environment is in progress")

        self.executor.submit(deployment_key(deployment_id), self.run_rollback, deployment_id)
        return snapshot

    def cancel(self, deployment_id):
        """ Requests cancellation of a pending or applying deployment.

        :returns: the deployment JSON snapshot
        """
        key = deployment_key(deployment_id)
        with self.db.session_scope() as session:
            deployment = session.get(models.Deployment, deployment_id)
            if deployment is None:
                raise NotFound("No such deployment: %r" % deployment_id)
            if deployment.state not in (models.DEPLOYMENT_STATES["pending"],
                                        models.DEPLOYMENT_STATES["applying"]):
                raise AdmissionError(WRONG_STATE, "Deployment %r is %s and cannot be cancelled"
                                     % (deployment_id, deployment.state_name))
            if not self.executor.is_running(key):
                deployment.transition("cancelled", state_reason="Cancelled on request")
            snapshot = deployment.json()
        self.executor.cancel(key)
        return snapshot

    # Execution

    def run(self, deployment_id, cancel):
        key = deployment_key(deployment_id)
        self.logs.start(key)
        try:
            self._run(deployment_id, key, cancel)
        finally:
            self.logs.discard(key)

    def _run(self, deployment_id, key, cancel):
        with self.db.session_scope() as session:
            deployment = session.get(models.Deployment, deployment_id)
            if deployment is None or deployment.state != models.DEPLOYMENT_STATES["pending"]:
                log.warning("Deployment %r is not pending, not running it", deployment_id)
                return

        try:
            self._advance(deployment_id, key, "applying", cancel)
            with self.db.session_scope() as session:
                deployment = session.get(models.Deployment, deployment_id)
                spec = self._workload_spec(session, deployment, deployment.build_id)
                cluster = self.cluster_for(deployment.environment)
            log.info("Applying %r", spec)
            revision = self._call_with_retry(
                cancel, cluster.apply, spec, cancel=cancel,
                timeout=self.config.stage_timeout("apply"))
            info = self.wait_ready(cluster, spec.ref, cancel)
            outcome = _Outcome("success", revision=info.revision or revision or "")
        except Cancelled as e:
            outcome = _Outcome("cancelled", reason=str(e))
        except AdapterError as e:
            outcome = _Outcome("failed", reason=str(e), kind=e.kind)
        except PipelineConfigError as e:
            outcome = _Outcome("failed", reason=str(e), kind=INVALID_INPUT)
        except Exception as e:
            log.exception("Deployment %r failed unexpectedly", deployment_id)
            outcome = _Outcome("failed", reason="%s: %s" % (type(e).__name__, e), kind=INTERNAL)

        self._settle(deployment_id, key, outcome, cancel)

    def run_rollback(self, deployment_id, cancel):
        key = deployment_key(deployment_id)
        self.logs.start(key)
        try:
            self._run_rollback(deployment_id, key, cancel)
        finally:
            self.logs.discard(key)

    def _run_rollback(self, deployment_id, key, cancel):
        with self.db.session_scope() as session:
            deployment = session.get(models.Deployment, deployment_id)
            if deployment.state != models.DEPLOYMENT_STATES["rollback_requested"]:
                log.warning("%r has no rollback pending", deployment)
                return
            ref = WorkloadRef(deployment.service_name, deployment.namespace)
            cluster = self.cluster_for(deployment.environment)
            # Holds the previous logs so the rollback output is appended
            self.logs.append(key, deployment.logs or "")

        try:
            self._advance(deployment_id, key, "rolling_back", None)
            revision = None
            rollback_build_id = None
            if cluster.supports_revision_history:
                try:
                    revision = cluster.rollback(
                        ref, timeout=self.config.stage_timeout("apply"))
                except ClusterError as e:
                    if e.kind != NOT_FOUND:
                        raise
                    log.info("No revision history for %r, redeploying the previous build: %s",
                             ref, e)
            if revision is None:
                rollback_build_id, revision = self._redeploy_previous(
                    deployment_id, cluster, cancel)
            info = self.wait_ready(cluster, ref, cancel)
            outcome = _Outcome("success", revision=info.revision or revision or "",
                               rollback_build_id=rollback_build_id)
        except AdapterError as e:
            outcome = _Outcome("failed", reason=str(e), kind=e.kind)
        except Cancelled as e:
            outcome = _Outcome("failed", reason=str(e), kind=INTERNAL)
        except PipelineConfigError as e:
            outcome = _Outcome("failed", reason=str(e), kind=INVALID_INPUT)
        except Exception as e:
            log.exception("Rollback of deployment %r failed unexpectedly", deployment_id)
            outcome = _Outcome("failed", reason="%s: %s" % (type(e).__name__, e), kind=INTERNAL)

        self._settle(deployment_id, key, outcome, cancel)

    def _redeploy_previous(self, deployment_id, cluster, cancel):
        """ Applies the image of the build that ran in the same environment
        before this deployment's build.

        :returns: tuple (build id, revision)
        """
        with self.db.session_scope() as session:
            deployment = session.get(models.Deployment, deployment_id)
            build = session.get(models.Build, deployment.build_id)
            previous = None
            for candidate in models.Deployment.earlier_settled(session, deployment):
                if candidate.build_id == deployment.build_id:
                    continue
                candidate_build = session.get(models.Build, candidate.build_id)
                if (candidate_build.pipeline_id == build.pipeline_id
                        and candidate_build.state == models.BUILD_STATES["success"]):
                    previous = candidate_build
                    break
            if previous is None:
                raise ClusterError(NOT_FOUND, "Nothing ran in %s before build %r" % (
                    deployment.environment, deployment.build_id))
            spec = self._workload_spec(session, deployment, previous.id)
            previous_id = previous.id

        log.info("Redeploying build %r: %r", previous_id, spec)
        revision = self._call_with_retry(
            cancel, cluster.apply, spec, cancel=cancel,
            timeout=self.config.stage_timeout("apply"))
        return previous_id, revision

    def _workload_spec(self, session, deployment, build_id):
        build = session.get(models.Build, build_id)
        pipeline = session.get(models.Pipeline, build.pipeline_id)
        pipeline_config = parse_pipeline_config(pipeline.config)
        return WorkloadSpec(
            name=deployment.service_name,
            namespace=deployment.namespace,
            image=build.image_ref,
            replicas=deployment.replicas,
            port=pipeline_config["port"],
            ingress_host=deployment.ingress_host,
            labels={
                "ci-orchestrator/environment": slugify(deployment.environment),
                "ci-orchestrator/build": str(build.id),
            },
            config=self.config,
        )

    def wait_ready(self, cluster, ref, cancel):
        """ Polls the workload until all desired replicas are available.

        :returns: ci_orchestrator.cluster.ReadinessInfo
        :raises: StageTimeoutError, ClusterError, Cancelled
        """
        timeout = self.config.stage_timeout("readiness")
        deadline = time.monotonic() + timeout
        while True:
            info = cluster.get_status(ref, timeout=self.config.stage_timeout("apply"))
            log.debug("%r: %r", ref, info)
            if info.ready:
                log.info("%r is ready, %d/%d replicas available", ref, info.available,
                         info.desired)
                return info
            if info.failed:
                raise ClusterError(INVALID_INPUT, "%r failed to roll out: %s" % (
                    ref, info.message), stage="readiness")
            if time.monotonic() >= deadline:
                raise StageTimeoutError("readiness", timeout)
            if cancel is not None:
                if cancel.wait(self.config.readiness_poll_interval):
                    raise Cancelled("Cancelled while waiting for %r" % ref)
            else:
                time.sleep(self.config.readiness_poll_interval)

    def _call_with_retry(self, token, fn, *args, **kwargs):
        """ Calls fn, once more after a backoff if it fails transiently.

        Keyword arguments, cancel included, go to fn untouched.
        """
        try:
            return fn(*args, **kwargs)
        except AdapterError as e:
            if not e.retryable:
                raise
            backoff = self.config.transient_retry_backoff
            log.warning("Transient cluster failure, retrying once in %ss: %s", backoff, e)
            if token is not None and token.wait(backoff):
                raise Cancelled("Cancelled while waiting to retry")
            return fn(*args, **kwargs)

    def _advance(self, deployment_id, key, state, cancel):
        with self.db.session_scope() as session:
            deployment = session.get(models.Deployment, deployment_id)
            if cancel is not None:
                cancel.check()
            deployment.transition(state)
            deployment.logs = self.logs.read(key)

    def _settle(self, deployment_id, key, outcome, cancel):
        with self.db.session_scope() as session:
            deployment = session.get(models.Deployment, deployment_id)
            if deployment.is_terminal:
                log.warning("%r settled meanwhile, keeping it", deployment)
                return
            rolling_back = deployment.state == models.DEPLOYMENT_STATES["rolling_back"]
            if outcome.state == "success" and cancel is not None and cancel.cancelled \
                    and not rolling_back:
                outcome = _Outcome("cancelled", reason="Cancelled on request")
            if outcome.state == "failed" and \
                    deployment.state == models.DEPLOYMENT_STATES["pending"]:
                # Never started, pending has no way to failed
                outcome = _Outcome("cancelled", reason=outcome.reason)
            if outcome.state == "cancelled" and deployment.state not in (
                    models.DEPLOYMENT_STATES["pending"], models.DEPLOYMENT_STATES["applying"]):
                outcome = _Outcome("failed", reason=outcome.reason, kind=INTERNAL)

            if outcome.state == "success":
                deployment.revision = outcome.revision
                if rolling_back:
                    deployment.rollback_build_id = outcome.rollback_build_id
            elif outcome.state == "failed":
                deployment.error_kind = outcome.kind
            reason = truncate(outcome.reason, self.config.error_summary_max_length)
            if outcome.state == "failed":
                log.error("Deployment %r failed: %s", deployment_id, reason)
            deployment.transition(outcome.state, state_reason=reason)
            deployment.logs = self.logs.read(key)
