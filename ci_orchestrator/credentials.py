# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Credential resolution for the adapters.

Secrets are looked up right before an adapter call and handed to that call
only. Nothing here is ever written to the database or to an execution log.
"""

import logging

log = logging.getLogger(__name__)


class Credentials(object):
    def __init__(self, username, password):
        self.username = username
        self.password = password

    def __repr__(self):
        # Keep secrets out of logs and tracebacks
        return "<Credentials username=%r>" % self.username

    def __bool__(self):
        return bool(self.password)


class ConfigCredentials(object):
    """ Resolves credentials from the orchestrator configuration.

    Overrides may be configured as
    ``git_credentials = {project_id: (username, token)}``,
    ``registry_credentials = {project_id: (username, password)}``, and
    ``cluster_kubeconfigs = {environment: path}``.
    """

    def __init__(self, config):
        self.config = config

    def git(self, project_id=None):
        overrides = getattr(self.config, "git_credentials", None) or {}
        if project_id in overrides:
            return Credentials(*overrides[project_id])
        if not self.config.git_token:
            return None
        return Credentials(self.config.git_username, self.config.git_token)

    def registry(self, project_id=None):
        overrides = getattr(self.config, "registry_credentials", None) or {}
        if project_id in overrides:
            return Credentials(*overrides[project_id])
        if not self.config.registry_password:
            return None
        return Credentials(self.config.registry_username, self.config.registry_password)

    def cluster(self, environment=None):
        """ Returns the kubeconfig to use for environment. """
        overrides = getattr(self.config, "cluster_kubeconfigs", None) or {}
        return overrides.get(environment, self.config.kubeconfig)
