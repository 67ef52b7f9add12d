# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
from os import environ, path

confdir = path.abspath(path.dirname(__file__))
# use parent dir as dbdir else fallback to current dir
dbdir = path.abspath(path.join(confdir, "..")) if confdir.endswith("conf") else confdir


class BaseConfiguration(object):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///{0}".format(path.join(dbdir, "ci_orchestrator.db"))
    # Where we should run when running "manage.py run" directly.
    HOST = "0.0.0.0"
    PORT = 5000

    LOG_LEVEL = "info"

    REGISTRY = "registry.hub.docker.com"
    KUBECONFIG = ""
    DEFAULT_NAMESPACE = "default"


class TestConfiguration(BaseConfiguration):
    LOG_LEVEL = "debug"
    SQLALCHEMY_DATABASE_URI = environ.get("DATABASE_URI", "sqlite://")
    DEBUG = True

    REGISTRY = "registry.example.local"

    # Keep the tests fast, in seconds
    CLONE_TIMEOUT = 5
    BUILD_TIMEOUT = 5
    PUSH_TIMEOUT = 5
    APPLY_TIMEOUT = 5
    READINESS_TIMEOUT = 2
    READINESS_POLL_INTERVAL = 0
    TRANSIENT_RETRY_BACKOFF = 0
    POLLING_INTERVAL = 0

    LOG_BUFFER_MAX_BYTES = 64 * 1024
    ERROR_SUMMARY_MAX_LENGTH = 200

    WEBHOOK_SECRETS = {
        "github": "github-test-secret",
        "gitlab": "gitlab-test-secret",
        "gitee": "gitee-test-secret",
    }


class ProdConfiguration(BaseConfiguration):
    LOG_BACKEND = "console"


class DevConfiguration(BaseConfiguration):
    DEBUG = True
    LOG_LEVEL = "debug"
