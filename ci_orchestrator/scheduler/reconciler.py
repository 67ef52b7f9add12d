# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" The reconciliation poller.

Settles builds and deployments a crashed process left in flight, which
also frees their pipeline or environment for new executions.
"""

import datetime
import logging
import operator
import threading

from ci_orchestrator import models
from ci_orchestrator.build_logs import build_key, deployment_key
from ci_orchestrator.errors import INTERNAL
from ci_orchestrator.scheduler.builds import STAGES
from ci_orchestrator.utils import utcnow

log = logging.getLogger(__name__)

LOST = "lost execution"


class Reconciler(threading.Thread):
    """
    :param db: ci_orchestrator.db_session.Database
    :param config: ci_orchestrator.config.Config
    :param executor: executions of this process, never touched here
    """

    def __init__(self, db, config, executor, *args, **kwargs):
        self.db = db
        self.config = config
        self.executor = executor
        self._stop_event = threading.Event()
        kwargs.setdefault("name", "reconciler")
        super(Reconciler, self).__init__(*args, **kwargs)
        self.daemon = True

    def stop(self):
        self._stop_event.set()

    def run(self):
        while not self._stop_event.is_set():
            try:
                self.reconcile_once()
            except Exception:
                log.exception("Reconciliation failed")
            log.info("Polling thread sleeping, %rs", self.config.polling_interval)
            self._stop_event.wait(self.config.polling_interval)

    def reconcile_once(self, now=None):
        """ Runs one pass.

        :returns: tuple (settled build ids, settled deployment ids)
        """
        now = now or utcnow()
        cutoff = now - datetime.timedelta(seconds=self.config.stale_execution_timeout)
        with self.db.session_scope() as session:
            self.log_summary(session)
            builds = self.fail_lost_builds(session, cutoff)
            deployments = self.fail_lost_deployments(session, cutoff)
        return builds, deployments

    def _is_lost(self, record, key, cutoff):
        if self.executor is not None and self.executor.is_running(key):
            return False
        return (record.time_modified or record.time_submitted) < cutoff

    def fail_lost_builds(self, session, cutoff):
        settled = []
        for build in models.Build.non_terminal(session):
            if not self._is_lost(build, build_key(build.id), cutoff):
                continue
            log.warning("%r has no live execution, settling it", build)
            if build.state == models.BUILD_STATES["pending"]:
                build.transition("cancelled", state_reason=LOST)
            else:
                build.failed_stage = STAGES.get(build.state)
                build.error_kind = INTERNAL
                build.transition("failed", state_reason=LOST)
            settled.append(build.id)
        return settled

    def fail_lost_deployments(self, session, cutoff):
        settled = []
        for deployment in models.Deployment.non_terminal(session):
            if not self._is_lost(deployment, deployment_key(deployment.id), cutoff):
                continue
            log.warning("%r has no live execution, settling it", deployment)
            if deployment.state == models.DEPLOYMENT_STATES["pending"]:
                deployment.transition("cancelled", state_reason=LOST)
            else:
                deployment.error_kind = INTERNAL
                deployment.transition("failed", state_reason=LOST)
            settled.append(deployment.id)
        return settled

    def log_summary(self, session):
        log.info("Current status:")
        if self.executor is not None:
            log.info("  * %i executions running in this process.",
                     len(self.executor.running_keys()))
        for name, code in sorted(models.BUILD_STATES.items(), key=operator.itemgetter(1)):
            count = session.query(models.Build).filter_by(state=code).count()
            if count:
                log.info("  * %i builds in the %s state.", count, name)
        for name, code in sorted(models.DEPLOYMENT_STATES.items(), key=operator.itemgetter(1)):
            count = session.query(models.Deployment).filter_by(state=code).count()
            if count:
                log.info("  * %i deployments in the %s state.", count, name)
