# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Configuration handler functions."""

import importlib.util
import os
import sys
import tempfile

from ci_orchestrator import logger

SUPPORTED_IMAGE_BUILDERS = ("docker",)
SUPPORTED_CLUSTER_BACKENDS = ("kubernetes",)

_STAGE_TIMEOUTS = (
    "clone_timeout",
    "build_timeout",
    "push_timeout",
    "apply_timeout",
    "readiness_timeout",
)


def init_config():
    """
    Configure the orchestrator from the configuration module found on disk.

    :return: tuple (Config instance, configuration section class)
    """
    config_module = None
    config_file = os.environ.get("CI_ORCHESTRATOR_CONFIG_FILE")
    if not config_file:
        config_file = "/etc/ci-orchestrator/config.py"
        if not os.path.exists(config_file):
            # Running from a git checkout
            here = os.path.dirname(os.path.abspath(__file__))
            config_file = os.path.join(here, "..", "conf", "config.py")

    if os.path.exists(config_file):
        spec = importlib.util.spec_from_file_location("ci_orchestrator_conf", config_file)
        config_module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(config_module)

    # Tests always run against the test configuration
    if "pytest" in sys.modules or any("py.test" in arg or "pytest" in arg for arg in sys.argv):
        config_section = "TestConfiguration"
    else:
        config_section = os.environ.get("CI_ORCHESTRATOR_CONFIG_SECTION", "ProdConfiguration")

    if config_module is None:
        section = object
    else:
        try:
            section = getattr(config_module, config_section)
        except AttributeError:
            raise ValueError(
                "Configuration section %r not found in %s" % (config_section, config_file))

    return Config(section), section


class Config(object):
    """Class representing the orchestrator configuration."""
    _defaults = {
        "debug": {
            "type": bool,
            "default": False,
            "desc": "Debug mode"},
        "sqlalchemy_database_uri": {
            "type": str,
            "default": "sqlite:///ci_orchestrator.db",
            "desc": "RDB URL."},
        "host": {
            "type": str,
            "default": "0.0.0.0",
            "desc": "Where the web surface listens when run directly."},
        "port": {
            "type": int,
            "default": 5000,
            "desc": "Port of the web surface when run directly."},
        "log_backend": {
            "type": str,
            "default": None,
            "desc": "Log backend"},
        "log_file": {
            "type": str,
            "default": "",
            "desc": "Path to log file"},
        "log_level": {
            "type": str,
            "default": "info",
            "desc": "Log level"},
        "workspace_dir": {
            "type": str,
            "default": os.path.join(tempfile.gettempdir(), "ci-orchestrator"),
            "desc": "Directory where working copies of repositories are checked out."},
        "scm_allowed_schemes": {
            "type": list,
            "default": ["https://", "http://", "git://", "ssh://", "git@", "file://"],
            "desc": "Repository URL prefixes the source adapter accepts."},
        "image_builder": {
            "type": str,
            "default": "docker",
            "desc": "The image builder backend to use."},
        "docker_binary": {
            "type": str,
            "default": "docker",
            "desc": "Path to the docker client binary."},
        "registry": {
            "type": str,
            "default": "registry.hub.docker.com",
            "desc": "Registry prefix of the produced image names."},
        "cluster_backend": {
            "type": str,
            "default": "kubernetes",
            "desc": "The cluster backend to use."},
        "kubeconfig": {
            "type": str,
            "default": "",
            "desc": "Kubeconfig file, empty means in-cluster with ~/.kube/config fallback."},
        "default_namespace": {
            "type": str,
            "default": "default",
            "desc": "Namespace used when a deployment does not name one."},
        "default_container_port": {
            "type": int,
            "default": 8080,
            "desc": "Container port when the pipeline configuration sets none."},
        "health_check_path": {
            "type": str,
            "default": "/health",
            "desc": "HTTP path the liveness and readiness probes hit."},
        "default_cpu_request": {
            "type": str,
            "default": "100m",
            "desc": ""},
        "default_memory_request": {
            "type": str,
            "default": "128Mi",
            "desc": ""},
        "default_cpu_limit": {
            "type": str,
            "default": "500m",
            "desc": ""},
        "default_memory_limit": {
            "type": str,
            "default": "512Mi",
            "desc": ""},
        "clone_timeout": {
            "type": int,
            "default": 600,
            "desc": "Clone stage budget, in seconds."},
        "build_timeout": {
            "type": int,
            "default": 1800,
            "desc": "Image build stage budget, in seconds."},
        "push_timeout": {
            "type": int,
            "default": 600,
            "desc": "Image push stage budget, in seconds."},
        "apply_timeout": {
            "type": int,
            "default": 120,
            "desc": "Cluster apply stage budget, in seconds."},
        "readiness_timeout": {
            "type": int,
            "default": 300,
            "desc": "How long to wait for a workload to become ready, in seconds."},
        "readiness_poll_interval": {
            "type": int,
            "default": 5,
            "desc": "Readiness polling interval, in seconds."},
        "transient_retry_backoff": {
            "type": int,
            "default": 5,
            "desc": "Wait before the single retry of a transient adapter error, in seconds."},
        "log_buffer_max_bytes": {
            "type": int,
            "default": 1024 * 1024,
            "desc": "Size cap of one execution log, oldest output is evicted first."},
        "error_summary_max_length": {
            "type": int,
            "default": 1024,
            "desc": "Maximum length of the error summary stored on a record."},
        "polling_interval": {
            "type": int,
            "default": 60,
            "desc": "Reconciliation polling interval, in seconds."},
        "stale_execution_timeout": {
            "type": int,
            "default": 3600,
            "desc": "Age after which an orphaned execution is failed, in seconds."},
        "max_workers": {
            "type": int,
            "default": 0,
            "desc": "Maximum of concurrently running executions, 0 means unlimited."},
        "webhook_secrets": {
            "type": dict,
            "default": {},
            "desc": "Shared secrets used to verify webhook signatures, per provider."},
        "git_username": {
            "type": str,
            "default": "",
            "desc": "Username for authenticated clones."},
        "git_token": {
            "type": str,
            "default": "",
            "desc": "Token or password for authenticated clones."},
        "registry_username": {
            "type": str,
            "default": "",
            "desc": ""},
        "registry_password": {
            "type": str,
            "default": "",
            "desc": ""},
    }

    def __init__(self, conf_section_obj=None):
        """
        Initialize the Config object with defaults and then override them
        with runtime values.
        """
        for name, values in self._defaults.items():
            self.set_item(name, values["default"])

        if conf_section_obj is None:
            return

        for key in dir(conf_section_obj):
            # skip keys starting with underscore
            if key.startswith("_"):
                continue
            # set item (lower key)
            self.set_item(key.lower(), getattr(conf_section_obj, key))

    def set_item(self, key, value):
        """
        Set value for configuration item. Creates the self._key = value
        attribute and self.key property to set/get/del the attribute.
        """
        if key == "set_item" or key.startswith("_"):
            raise Exception("Configuration item's name is not allowed: %s" % key)

        # customized check & set if there's a corresponding handler
        setifok_func = "_setifok_{}".format(key)
        if hasattr(self, setifok_func):
            getattr(self, setifok_func)(value)
            return

        # managed/registered configuration items
        if key in self._defaults:
            # type conversion for configuration item
            convert = self._defaults[key]["type"]
            if convert in [bool, int, list, str, dict]:
                try:
                    setattr(self, key, convert(value))
                except (TypeError, ValueError):
                    raise TypeError("Configuration value conversion failed for name: %s" % key)
            # if type is None, do not perform any conversion
            elif convert is None:
                setattr(self, key, value)
            # unknown type/unsupported conversion
            else:
                raise TypeError("Unsupported type %s for configuration item name: %s"
                                % (convert, key))
        # passthrough for unmanaged configuration items
        else:
            setattr(self, key, value)

    def stage_timeout(self, stage):
        return getattr(self, "%s_timeout" % stage)

    def _setifok_log_backend(self, s):
        if s is None:
            self.log_backend = "console"
        elif s not in logger.supported_log_backends():
            raise ValueError("Unsupported log backend")
        else:
            self.log_backend = str(s)

    def _setifok_log_file(self, s):
        if s is None:
            self.log_file = ""
        else:
            self.log_file = str(s)

    def _setifok_log_level(self, s):
        level = str(s).lower()
        self.log_level = logger.str_to_log_level(level)

    def _setifok_image_builder(self, s):
        s = str(s)
        if s not in SUPPORTED_IMAGE_BUILDERS:
            raise ValueError("Unsupported image builder: %s." % s)
        self.image_builder = s

    def _setifok_cluster_backend(self, s):
        s = str(s)
        if s not in SUPPORTED_CLUSTER_BACKENDS:
            raise ValueError("Unsupported cluster backend: %s." % s)
        self.cluster_backend = s

    def _setifok_scm_allowed_schemes(self, l):
        if not isinstance(l, (list, tuple)):
            raise TypeError("scm_allowed_schemes needs to be a list.")
        self.scm_allowed_schemes = [str(x) for x in l]

    def _setifok_registry(self, s):
        self.registry = str(s).rstrip("/")

    def _setifok_polling_interval(self, i):
        if not isinstance(i, int):
            raise TypeError("polling_interval needs to be an int")
        if i < 0:
            raise ValueError("polling_interval must be >= 0")
        self.polling_interval = i

    def _setifok_max_workers(self, i):
        if not isinstance(i, int):
            raise TypeError("max_workers needs to be an int")
        if i < 0:
            raise ValueError("max_workers must be >= 0")
        self.max_workers = i

    def _setifok_log_buffer_max_bytes(self, i):
        if not isinstance(i, int) or i <= 0:
            raise ValueError("log_buffer_max_bytes must be a positive int")
        self.log_buffer_max_bytes = i

    def _setifok_webhook_secrets(self, d):
        if not isinstance(d, dict):
            raise TypeError("webhook_secrets needs to be a dict.")
        self.webhook_secrets = dict((str(k), str(v)) for k, v in d.items())


def _make_timeout_setter(name):
    def _setifok(self, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError("%s needs to be a number" % name)
        if value <= 0:
            raise ValueError("%s must be > 0" % name)
        setattr(self, name, value)
    return _setifok


for _name in _STAGE_TIMEOUTS:
    setattr(Config, "_setifok_%s" % _name, _make_timeout_setter(_name))
