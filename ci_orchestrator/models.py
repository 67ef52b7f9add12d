# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" SQLAlchemy Database models for the Flask app and the orchestrators.

Entities reference their parents by id only. Admission of executions is
enforced by unique columns that only hold a value while the execution is
in flight (``Build.active_pipeline_id`` and ``Deployment.active_key``), so
two orchestrator processes can never both admit work for the same slot.
"""

import fnmatch
import logging

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship, validates

from ci_orchestrator.errors import InternalError
from ci_orchestrator.utils import format_ref, parse_ref, utcnow

log = logging.getLogger(__name__)

BUILD_STATES = {
    # Created by the dispatcher, waiting for the orchestrator to pick it up.
    "pending": 0,
    # Acquiring a working copy of the repository.
    "cloning": 1,
    # Building the container image from the working copy.
    "building": 2,
    # Publishing the image to the registry.
    "pushing": 3,
    # All is good, the image coordinates are recorded.
    "success": 4,
    # Some stage failed, see failed_stage/error_kind/state_reason.
    "failed": 5,
    # Cancelled on request.
    "cancelled": 6,
}

INVERSE_BUILD_STATES = {v: k for k, v in BUILD_STATES.items()}

BUILD_TERMINAL_STATES = frozenset([
    BUILD_STATES["success"], BUILD_STATES["failed"], BUILD_STATES["cancelled"]])

BUILD_TRANSITIONS = {
    BUILD_STATES["pending"]: (BUILD_STATES["cloning"], BUILD_STATES["cancelled"]),
    BUILD_STATES["cloning"]: (
        BUILD_STATES["building"], BUILD_STATES["failed"], BUILD_STATES["cancelled"]),
    BUILD_STATES["building"]: (
        BUILD_STATES["pushing"], BUILD_STATES["failed"], BUILD_STATES["cancelled"]),
    BUILD_STATES["pushing"]: (
        BUILD_STATES["success"], BUILD_STATES["failed"], BUILD_STATES["cancelled"]),
}

DEPLOYMENT_STATES = {
    "pending": 0,
    "applying": 1,
    "success": 2,
    "failed": 3,
    "cancelled": 4,
    # Only reachable from success.
    "rollback_requested": 5,
    "rolling_back": 6,
}

INVERSE_DEPLOYMENT_STATES = {v: k for k, v in DEPLOYMENT_STATES.items()}

DEPLOYMENT_TERMINAL_STATES = frozenset([
    DEPLOYMENT_STATES["success"], DEPLOYMENT_STATES["failed"],
    DEPLOYMENT_STATES["cancelled"]])

DEPLOYMENT_TRANSITIONS = {
    DEPLOYMENT_STATES["pending"]: (
        DEPLOYMENT_STATES["applying"], DEPLOYMENT_STATES["cancelled"]),
    DEPLOYMENT_STATES["applying"]: (
        DEPLOYMENT_STATES["success"], DEPLOYMENT_STATES["failed"],
        DEPLOYMENT_STATES["cancelled"]),
    DEPLOYMENT_STATES["success"]: (DEPLOYMENT_STATES["rollback_requested"],),
    DEPLOYMENT_STATES["rollback_requested"]: (
        DEPLOYMENT_STATES["rolling_back"], DEPLOYMENT_STATES["failed"]),
    DEPLOYMENT_STATES["rolling_back"]: (
        DEPLOYMENT_STATES["success"], DEPLOYMENT_STATES["failed"]),
}

TRIGGER_KINDS = ("webhook", "schedule", "manual")
BUILD_SOURCES = TRIGGER_KINDS
REF_TYPES = ("branch", "tag", "commit")


def _state_validator(states):
    def validate(self, key, field):
        if field in states.values():
            return field
        if field in states:
            return states[field]
        raise ValueError("%s: %s, not in %r" % (key, field, states))
    return validate


Base = declarative_base()


class Project(Base):
    __tablename__ = "projects"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    git_url = Column(String, nullable=False)
    git_provider = Column(String)
    owner_id = Column(Integer)
    # Part of the webhook URL, identifies the project an event belongs to.
    webhook_secret = Column(String, unique=True)
    # Key the provider signs events with, never part of a URL.
    webhook_signing_secret = Column(String)

    def __repr__(self):
        return "<Project %s, id=%r>" % (self.name, self.id)

    @classmethod
    def by_webhook_secret(cls, session, secret):
        return session.query(cls).filter_by(webhook_secret=secret).first()

    @staticmethod
    def same_repository(url_a, url_b):
        """ Tells whether two clone URLs point to the same repository,
        whatever the protocol they use.
        """
        return _normalize_git_url(url_a) == _normalize_git_url(url_b)


def _normalize_git_url(url):
    """ "git@host:org/repo.git" and "https://host/org/repo" both become
    "host/org/repo".
    """
    url = (url or "").strip().rstrip("/")
    if "://" in url:
        url = url.split("://", 1)[1]
    elif ":" in url:
        # scp-like syntax
        url = url.replace(":", "/", 1)
    host, sep, path = url.partition("/")
    url = host.rsplit("@", 1)[-1] + sep + path
    if url.endswith(".git"):
        url = url[:-4]
    return url.lower()


class Pipeline(Base):
    __tablename__ = "pipelines"
    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    # Opaque to everything but the build orchestrator.
    config = Column(Text, default="")
    enabled = Column(Boolean, nullable=False, default=True)

    triggers = relationship("Trigger", lazy="selectin", order_by="Trigger.id")

    def __repr__(self):
        return "<Pipeline %s, id=%r, project_id=%r, enabled=%r>" % (
            self.name, self.id, self.project_id, self.enabled)

    def matching_triggers(self, ref, source):
        """ Returns the active triggers of kind ``source`` matching ref. """
        return [t for t in self.triggers if t.kind == source and t.matches(ref)]

    @classmethod
    def by_project(cls, session, project_id):
        return session.query(cls).filter_by(project_id=project_id).order_by(cls.id).all()


class Trigger(Base):
    __tablename__ = "triggers"
    id = Column(Integer, primary_key=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id"), nullable=False)
    kind = Column(String, nullable=False)
    # Shell-style patterns, e.g. "release/*"
    branch = Column(String, default="")
    tag = Column(String, default="")
    # Cron expression, evaluated by the external scheduler
    schedule = Column(String, default="")
    active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return "<Trigger %s, id=%r, pipeline_id=%r, branch=%r, tag=%r>" % (
            self.kind, self.id, self.pipeline_id, self.branch, self.tag)

    @validates("kind")
    def validate_kind(self, key, kind):
        if kind not in TRIGGER_KINDS:
            raise ValueError("%s: %s, not in %r" % (key, kind, TRIGGER_KINDS))
        return kind

    @validates("schedule")
    def validate_schedule(self, key, schedule):
        if schedule and len(schedule.split()) != 5:
            raise ValueError("%s: %r is not a five field cron expression" % (key, schedule))
        return schedule

    def matches(self, ref):
        """ Tells whether an event for ref should start a build.

        An empty branch pattern matches every branch. Tags only match when
        the trigger names a tag pattern. A bare commit only matches a
        trigger accepting every branch.
        """
        if not self.active:
            return False
        name, ref_type = parse_ref(ref)
        if ref_type == "tag":
            return bool(self.tag) and fnmatch.fnmatchcase(name, self.tag)
        if ref_type == "commit":
            return self.branch in ("", "*", None)
        return fnmatch.fnmatchcase(name, self.branch or "*")


class Build(Base):
    __tablename__ = "builds"
    id = Column(Integer, primary_key=True)
    pipeline_id = Column(Integer, ForeignKey("pipelines.id"), nullable=False)
    ref = Column(String, nullable=False)
    ref_type = Column(String, nullable=False, default="branch")
    source = Column(String, nullable=False, default="manual")
    # Resolved by the source adapter, or given by the webhook event.
    commit_hash = Column(String)
    state = Column(Integer, nullable=False)
    failed_stage = Column(String)
    error_kind = Column(String)
    state_reason = Column(String)
    logs = Column(Text, default="")
    image_name = Column(String)
    image_tag = Column(String)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    # Holds pipeline_id while the build is not terminal.
    active_pipeline_id = Column(Integer, unique=True)
    time_submitted = Column(DateTime, nullable=False)
    time_started = Column(DateTime)
    time_modified = Column(DateTime)
    time_completed = Column(DateTime)

    validate_state = validates("state")(_state_validator(BUILD_STATES))

    def __repr__(self):
        return "<Build id=%r, pipeline_id=%r, ref=%r, state=%r>" % (
            self.id, self.pipeline_id, self.ref, INVERSE_BUILD_STATES.get(self.state))

    @property
    def state_name(self):
        return INVERSE_BUILD_STATES[self.state]

    @property
    def is_terminal(self):
        return self.state in BUILD_TERMINAL_STATES

    @property
    def image_ref(self):
        if not self.image_name or not self.image_tag:
            return None
        return "%s:%s" % (self.image_name, self.image_tag)

    @property
    def full_ref(self):
        return format_ref(self.ref, self.ref_type)

    @classmethod
    def create(cls, session, pipeline_id, ref, source="manual", commit_hash=None):
        """ Inserts a pending build.

        The flush raises sqlalchemy.exc.IntegrityError when another build of
        the pipeline is still in flight.
        """
        if source not in BUILD_SOURCES:
            raise ValueError("Unknown build source: %r" % source)
        name, ref_type = parse_ref(ref)
        now = utcnow()
        build = cls(
            pipeline_id=pipeline_id,
            ref=name,
            ref_type=ref_type,
            source=source,
            commit_hash=commit_hash or (name if ref_type == "commit" else None),
            state="pending",
            active_pipeline_id=pipeline_id,
            time_submitted=now,
            time_modified=now,
        )
        session.add(build)
        session.flush()
        return build

    def transition(self, state, state_reason=None):
        """ Moves the build forward, refusing anything but a legal transition. """
        new_state = BUILD_STATES[state] if state in BUILD_STATES else state
        if new_state not in BUILD_TRANSITIONS.get(self.state, ()):
            raise InternalError("Build %r cannot move from %s to %s" % (
                self.id, self.state_name, INVERSE_BUILD_STATES.get(new_state, new_state)))

        now = utcnow()
        log.info("Build %r: %s -> %s", self.id, self.state_name, INVERSE_BUILD_STATES[new_state])
        self.state = new_state
        self.time_modified = now
        if state_reason is not None:
            self.state_reason = state_reason
        if new_state == BUILD_STATES["cloning"]:
            self.time_started = now
        if new_state in BUILD_TERMINAL_STATES:
            self.time_completed = now
            self.active_pipeline_id = None

    @classmethod
    def active_for_pipeline(cls, session, pipeline_id):
        return session.query(cls).filter_by(active_pipeline_id=pipeline_id).first()

    @classmethod
    def by_pipeline(cls, session, pipeline_id):
        return session.query(cls).filter_by(pipeline_id=pipeline_id).order_by(cls.id.desc()).all()

    @classmethod
    def non_terminal(cls, session):
        return session.query(cls).filter(cls.state.notin_(BUILD_TERMINAL_STATES)).all()

    def json(self):
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "ref": self.ref,
            "ref_type": self.ref_type,
            "source": self.source,
            "commit_hash": self.commit_hash,
            "state": self.state,
            "state_name": self.state_name,
            "state_reason": self.state_reason,
            "failed_stage": self.failed_stage,
            "error_kind": self.error_kind,
            "image_name": self.image_name,
            "image_tag": self.image_tag,
            "cancel_requested": self.cancel_requested,
            "time_submitted": _isoformat(self.time_submitted),
            "time_started": _isoformat(self.time_started),
            "time_modified": _isoformat(self.time_modified),
            "time_completed": _isoformat(self.time_completed),
        }


class Deployment(Base):
    __tablename__ = "deployments"
    id = Column(Integer, primary_key=True)
    build_id = Column(Integer, ForeignKey("builds.id"), nullable=False)
    environment = Column(String, nullable=False)
    replicas = Column(Integer, nullable=False, default=1)
    namespace = Column(String, nullable=False)
    service_name = Column(String, nullable=False)
    ingress_host = Column(String, default="")
    state = Column(Integer, nullable=False)
    error_kind = Column(String)
    state_reason = Column(String)
    logs = Column(Text, default="")
    # Workload revision reported by the cluster once the deployment settled.
    revision = Column(String)
    # Build whose image a rollback without revision history redeployed.
    rollback_build_id = Column(Integer)
    # "<build_id>:<environment>" while the deployment is not terminal.
    active_key = Column(String, unique=True)
    time_submitted = Column(DateTime, nullable=False)
    time_started = Column(DateTime)
    time_modified = Column(DateTime)
    time_completed = Column(DateTime)

    validate_state = validates("state")(_state_validator(DEPLOYMENT_STATES))

    def __repr__(self):
        return "<Deployment id=%r, build_id=%r, environment=%r, state=%r>" % (
            self.id, self.build_id, self.environment,
            INVERSE_DEPLOYMENT_STATES.get(self.state))

    @staticmethod
    def make_active_key(build_id, environment):
        return "%s:%s" % (build_id, environment)

    @property
    def state_name(self):
        return INVERSE_DEPLOYMENT_STATES[self.state]

    @property
    def is_terminal(self):
        return self.state in DEPLOYMENT_TERMINAL_STATES

    @classmethod
    def create(cls, session, build_id, environment, replicas, namespace, service_name,
               ingress_host=""):
        """ Inserts a pending deployment.

        The flush raises sqlalchemy.exc.IntegrityError when another deployment
        of the same build to the same environment is still in flight.
        """
        now = utcnow()
        deployment = cls(
            build_id=build_id,
            environment=environment,
            replicas=replicas,
            namespace=namespace,
            service_name=service_name,
            ingress_host=ingress_host or "",
            state="pending",
            active_key=cls.make_active_key(build_id, environment),
            time_submitted=now,
            time_modified=now,
        )
        session.add(deployment)
        session.flush()
        return deployment

    def transition(self, state, state_reason=None):
        new_state = DEPLOYMENT_STATES[state] if state in DEPLOYMENT_STATES else state
        if new_state not in DEPLOYMENT_TRANSITIONS.get(self.state, ()):
            raise InternalError("Deployment %r cannot move from %s to %s" % (
                self.id, self.state_name,
                INVERSE_DEPLOYMENT_STATES.get(new_state, new_state)))

        now = utcnow()
        log.info("Deployment %r: %s -> %s", self.id, self.state_name,
                 INVERSE_DEPLOYMENT_STATES[new_state])
        self.state = new_state
        self.time_modified = now
        if state_reason is not None:
            self.state_reason = state_reason
        if new_state in (DEPLOYMENT_STATES["applying"], DEPLOYMENT_STATES["rolling_back"]):
            self.time_started = now
        if new_state == DEPLOYMENT_STATES["rollback_requested"]:
            self.time_completed = None
            self.active_key = self.make_active_key(self.build_id, self.environment)
        if new_state in DEPLOYMENT_TERMINAL_STATES:
            self.time_completed = now
            self.active_key = None

    @classmethod
    def active_for(cls, session, build_id, environment):
        key = cls.make_active_key(build_id, environment)
        return session.query(cls).filter_by(active_key=key).first()

    @classmethod
    def by_build(cls, session, build_id):
        return session.query(cls).filter_by(build_id=build_id).order_by(cls.id.desc()).all()

    @classmethod
    def non_terminal(cls, session):
        return session.query(cls).filter(cls.state.notin_(DEPLOYMENT_TERMINAL_STATES)).all()

    @classmethod
    def earlier_settled(cls, session, deployment):
        """ Returns the deployments of the same workload that settled before
        deployment, newest first.
        """
        return (
            session.query(cls)
            .filter(cls.environment == deployment.environment)
            .filter(cls.namespace == deployment.namespace)
            .filter(cls.service_name == deployment.service_name)
            .filter(cls.id < deployment.id)
            .filter(cls.revision.isnot(None))
            .order_by(cls.id.desc())
            .all()
        )

    def json(self):
        return {
            "id": self.id,
            "build_id": self.build_id,
            "environment": self.environment,
            "replicas": self.replicas,
            "namespace": self.namespace,
            "service_name": self.service_name,
            "ingress_host": self.ingress_host,
            "state": self.state,
            "state_name": self.state_name,
            "state_reason": self.state_reason,
            "error_kind": self.error_kind,
            "revision": self.revision,
            "rollback_build_id": self.rollback_build_id,
            "time_submitted": _isoformat(self.time_submitted),
            "time_started": _isoformat(self.time_started),
            "time_modified": _isoformat(self.time_modified),
            "time_completed": _isoformat(self.time_completed),
        }


def _isoformat(value):
    return value.isoformat() + "Z" if value else None
