# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""The CI/CD pipeline execution orchestrator.

The orchestrator turns source changes into running workloads and is
responsible for a number of tasks:

- Admitting builds of a pipeline from manual runs, webhooks and
  schedules, one build per pipeline at a time.
- Checking out the source at the requested ref and resolving its commit.
- Building and publishing a container image of every build.
- Deploying the images of successful builds to a cluster, waiting for
  the workloads to become ready, and rolling them back on request.
- Keeping a bounded execution log of every build and deployment.
"""

from importlib.metadata import PackageNotFoundError, version as _dist_version
from logging import getLogger

from flask import Flask

from ci_orchestrator.build_logs import ExecutionLogs
from ci_orchestrator.config import init_config
from ci_orchestrator.db_session import Database
from ci_orchestrator.errors import (
    AdapterError,
    AdmissionError,
    Forbidden,
    NotFound,
    ValidationError,
    json_error,
)
from ci_orchestrator.logger import init_logging, level_flags

try:
    version = _dist_version("ci-orchestrator")
except PackageNotFoundError:
    version = "unknown"
api_version = 1

conf, config_section = init_config()
app = Flask(__name__)
app.config.from_object(config_section)

db = Database(conf.sqlalchemy_database_uri, debug=False)


def create_app(debug=False, verbose=False, quiet=False):
    # logging (intended for the CLI, see manage.py)
    log = getLogger(__name__)
    if debug:
        log.setLevel(level_flags["debug"])
    elif verbose:
        log.setLevel(level_flags["verbose"])
    elif quiet:
        log.setLevel(level_flags["quiet"])

    return app


def load_views():
    from ci_orchestrator import views

    assert views


@app.errorhandler(ValidationError)
def validationerror_error(e):
    """Flask error handler for ValidationError exceptions"""
    return json_error(400, "Bad Request", str(e))


@app.errorhandler(Forbidden)
def forbidden_error(e):
    """Flask error handler for Forbidden exceptions"""
    return json_error(403, "Forbidden", str(e))


@app.errorhandler(NotFound)
def notfound_error(e):
    """Flask error handler for NotFound exceptions"""
    return json_error(404, "Not Found", str(e))


@app.errorhandler(AdmissionError)
def admissionerror_error(e):
    """Flask error handler for AdmissionError exceptions"""
    return json_error(409, "Conflict", str(e), reason=e.reason)


@app.errorhandler(AdapterError)
def adaptererror_error(e):
    """Flask error handler for errors of the external systems"""
    log.warning("%s error from the %s stage: %s", e.kind, e.stage, e)
    return json_error(502, "Bad Gateway", str(e))


@app.errorhandler(RuntimeError)
def runtimeerror_error(e):
    """Flask error handler for RuntimeError exceptions"""
    log.exception("RuntimeError exception raised")
    return json_error(500, "Internal Server Error", str(e))


init_logging(conf)
log = getLogger(__name__)
build_logs = ExecutionLogs(conf.log_buffer_max_bytes, conf.log_level)


load_views()
