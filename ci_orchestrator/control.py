# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" The status and control surface.

Wires the adapters, the orchestrators and the dispatcher together and
exposes the operations the web views and the CLI call. Every operation
either reads or starts work in the background, and returns a JSON-ready
snapshot right away.
"""

import logging

from ci_orchestrator import models
from ci_orchestrator.build_logs import ExecutionLogs, build_key, deployment_key
from ci_orchestrator.builder import GenericImageBuilder
from ci_orchestrator.cluster import GenericClusterBackend, WorkloadRef
from ci_orchestrator.credentials import ConfigCredentials
from ci_orchestrator.errors import NotFound, ValidationError
from ci_orchestrator.scheduler.builds import BuildOrchestrator
from ci_orchestrator.scheduler.deployments import DeploymentOrchestrator
from ci_orchestrator.scheduler.dispatcher import Dispatcher
from ci_orchestrator.scheduler.executor import Executor
from ci_orchestrator.scm import GitSource

log = logging.getLogger(__name__)


class Control(object):
    """ Adapters left out are built from the configuration. """

    def __init__(self, db, config, source=None, image_builder=None, cluster=None,
                 credentials=None, executor=None, logs=None):
        self.db = db
        self.config = config
        self.source = source or GitSource(config.workspace_dir, config.scm_allowed_schemes)
        self.image_builder = image_builder or GenericImageBuilder.create(config)
        self.cluster = cluster or GenericClusterBackend.create(config)
        self.credentials = credentials or ConfigCredentials(config)
        self.executor = executor or Executor(config.max_workers)
        self.logs = logs or ExecutionLogs(config.log_buffer_max_bytes, config.log_level)

        self.builds = BuildOrchestrator(
            db, config, self.source, self.image_builder, self.logs, self.credentials,
            self.executor)
        self.deployments = DeploymentOrchestrator(
            db, config, self.cluster, self.logs, self.executor, self.credentials)
        self.dispatcher = Dispatcher(db, config, self.builds)

    def __repr__(self):
        return "<Control %r, %r>" % (self.db, self.executor)

    # Builds

    def submit(self, pipeline_id, ref, source="manual", commit=None):
        build = self.dispatcher.submit(pipeline_id, ref, source=source, commit=commit)
        return self.get_build(build.id)

    def handle_webhook(self, provider, project_secret, raw_payload, headers):
        return self.dispatcher.handle_webhook(provider, project_secret, raw_payload, headers)

    def get_build(self, build_id):
        with self.db.session_scope() as session:
            return self._build(session, build_id).json()

    def list_builds(self, pipeline_id):
        with self.db.session_scope() as session:
            if session.get(models.Pipeline, pipeline_id) is None:
                raise NotFound("No such pipeline: %r" % pipeline_id)
            return [b.json() for b in models.Build.by_pipeline(session, pipeline_id)]

    def get_build_logs(self, build_id):
        """ Live output while the build runs here, the persisted log otherwise. """
        live = self.logs.read(build_key(build_id))
        if live is not None:
            return live
        with self.db.session_scope() as session:
            return self._build(session, build_id).logs or ""

    def cancel_build(self, build_id):
        return self.builds.cancel(build_id)

    # Deployments

    def deploy(self, build_id, environment, replicas=1, namespace=None, service_name=None,
               ingress_host=""):
        deployment = self.deployments.deploy(
            build_id, environment, replicas=replicas, namespace=namespace,
            service_name=service_name, ingress_host=ingress_host)
        return self.get_deployment(deployment.id)

    def get_deployment(self, deployment_id):
        with self.db.session_scope() as session:
            return self._deployment(session, deployment_id).json()

    def list_deployments(self, build_id):
        with self.db.session_scope() as session:
            self._build(session, build_id)
            return [d.json() for d in models.Deployment.by_build(session, build_id)]

    def get_deployment_logs(self, deployment_id):
        live = self.logs.read(deployment_key(deployment_id))
        if live is not None:
            return live
        with self.db.session_scope() as session:
            return self._deployment(session, deployment_id).logs or ""

    def rollback(self, deployment_id):
        self.deployments.rollback(deployment_id)
        return self.get_deployment(deployment_id)

    def cancel_deployment(self, deployment_id):
        return self.deployments.cancel(deployment_id)

    def get_workload_logs(self, deployment_id, tail_lines=100):
        """ Output of the running workload, fetched from the cluster. """
        try:
            tail_lines = int(tail_lines)
        except (TypeError, ValueError):
            raise ValidationError("Invalid tail_lines %r" % (tail_lines,))
        if tail_lines <= 0:
            raise ValidationError("tail_lines must be positive")
        with self.db.session_scope() as session:
            deployment = self._deployment(session, deployment_id)
            ref = WorkloadRef(deployment.service_name, deployment.namespace)
            cluster = self.deployments.cluster_for(deployment.environment)
        return cluster.get_logs(ref, tail_lines=tail_lines,
                                timeout=self.config.stage_timeout("apply"))

    @staticmethod
    def _build(session, build_id):
        build = session.get(models.Build, build_id)
        if build is None:
            raise NotFound("No such build: %r" % build_id)
        return build

    @staticmethod
    def _deployment(session, deployment_id):
        deployment = session.get(models.Deployment, deployment_id)
        if deployment is None:
            raise NotFound("No such deployment: %r" % deployment_id)
        return deployment


_control = None


def get_control():
    """ Returns the Control of this process, built on first use. """
    global _control
    if _control is None:
        from ci_orchestrator import build_logs, conf, db
        _control = Control(db, conf, logs=build_logs)
    return _control


def set_control(control):
    global _control
    _control = control
