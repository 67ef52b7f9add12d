# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" The trigger dispatcher.

Turns manual runs, webhook events and scheduled runs into pending builds.
A pipeline runs at most one build at a time. That is enforced by the
unique ``builds.active_pipeline_id`` column, so a submission losing the
race is rejected with AdmissionError(Busy) instead of queued.
"""

import logging

from sqlalchemy.exc import IntegrityError

from ci_orchestrator import models
from ci_orchestrator.errors import (
    BUSY,
    DISABLED,
    NO_MATCHING_TRIGGER,
    AdmissionError,
    Forbidden,
    NotFound,
    ValidationError,
)
from ci_orchestrator.webhooks import WebhookDecoder

log = logging.getLogger(__name__)


class Dispatcher(object):
    """
    :param db: ci_orchestrator.db_session.Database
    :param config: ci_orchestrator.config.Config
    :param build_orchestrator: receives every admitted build
    """

    def __init__(self, db, config, build_orchestrator):
        self.db = db
        self.config = config
        self.build_orchestrator = build_orchestrator

    def submit(self, pipeline_id, ref, source="manual", commit=None):
        """ Admits a build of pipeline_id at ref and starts it.

        :returns: the pending ci_orchestrator.models.Build
        :raises: NotFound, ValidationError, AdmissionError
        """
        if source not in models.BUILD_SOURCES:
            raise ValidationError("Unknown build source %r" % source)
        if not ref or not str(ref).strip():
            raise ValidationError("A build needs a ref")

        with self.db.session_scope() as session:
            pipeline = session.get(models.Pipeline, pipeline_id)
            if pipeline is None:
                raise NotFound("No such pipeline: %r" % pipeline_id)
            if not pipeline.enabled:
                raise AdmissionError(DISABLED, "Pipeline %r is disabled" % pipeline_id)
            if source != "manual" and not pipeline.matching_triggers(ref, source):
                raise AdmissionError(
                    NO_MATCHING_TRIGGER,
                    "No active %s trigger of pipeline %r matches %s" % (source, pipeline_id, ref))
            active = models.Build.active_for_pipeline(session, pipeline_id)
            if active is not None:
                raise AdmissionError(
                    BUSY, "Pipeline %r is busy with build %r" % (pipeline_id, active.id))

        try:
            with self.db.session_scope() as session:
                build = models.Build.create(
                    session, pipeline_id, ref, source=source, commit_hash=commit)
        except IntegrityError:
            raise AdmissionError(BUSY, "Pipeline %r is busy" % pipeline_id)

        log.info("Admitted %r from %s", build, source)
        self.build_orchestrator.start(build.id)
        return build

    def handle_webhook(self, provider, project_secret, raw_payload, headers):
        """ Submits a build for every pipeline of the project a push event
        triggers.

        :returns: dict with the decoded event, the started builds and the
            pipelines that were skipped with the reason why
        :raises: NotFound, Forbidden, ValidationError
        """
        with self.db.session_scope() as session:
            project = models.Project.by_webhook_secret(session, project_secret)
            if project is None:
                raise NotFound("No project for this webhook")
            if project.git_provider and project.git_provider != provider:
                raise ValidationError("Project %r is hosted on %s, not %s" % (
                    project.id, project.git_provider, provider))
            # Never the URL secret
            secret = (project.webhook_signing_secret
                      or self.config.webhook_secrets.get(provider))
            if not secret:
                raise Forbidden("No webhook signing secret is configured for project %r"
                                % project.id)
            event = WebhookDecoder.for_provider(provider, secret).decode(raw_payload, headers)
            if event.repo_urls and not any(
                    models.Project.same_repository(project.git_url, url)
                    for url in event.repo_urls):
                raise ValidationError("Event for %s does not belong to project %r" % (
                    event.repo_identity, project.id))
            pipeline_ids = [p.id for p in models.Pipeline.by_project(session, project.id)]

        result = {
            "event": event.event_kind,
            "ref": event.ref,
            "commit": event.commit,
            "builds": [],
            "skipped": [],
        }
        if not event.buildable:
            log.info("Ignoring %r", event)
            return result

        for pipeline_id in pipeline_ids:
            try:
                build = self.submit(pipeline_id, event.ref, source="webhook", commit=event.commit)
            except AdmissionError as e:
                log.info("Webhook did not start pipeline %r: %s", pipeline_id, e)
                result["skipped"].append({"pipeline_id": pipeline_id, "reason": e.reason})
            else:
                result["builds"].append(build.json())
        return result
