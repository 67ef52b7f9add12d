# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

import logging

import pytest

from ci_orchestrator import conf
from ci_orchestrator.config import Config


class Section(object):
    REGISTRY = "registry.example.local/"
    LOG_LEVEL = "warning"
    BUILD_TIMEOUT = 90
    MAX_WORKERS = 4
    SOME_EXTENSION = "kept as is"
    _PRIVATE = "skipped"


class TestConfig:

    def test_defaults(self):
        config = Config()
        assert config.image_builder == "docker"
        assert config.cluster_backend == "kubernetes"
        assert config.default_namespace == "default"
        assert config.error_summary_max_length == 1024
        assert config.webhook_secrets == {}

    def test_section_overrides(self):
        config = Config(Section)
        assert config.registry == "registry.example.local"
        assert config.log_level == logging.WARNING
        assert config.build_timeout == 90
        assert config.stage_timeout("build") == 90
        assert config.max_workers == 4
        assert config.some_extension == "kept as is"
        assert not hasattr(config, "_private")

    def test_test_configuration_is_loaded(self):
        assert conf.sqlalchemy_database_uri.startswith("sqlite")
        assert conf.registry == "registry.example.local"
        assert conf.webhook_secrets["github"] == "github-test-secret"
        assert conf.stage_timeout("readiness") == 2

    @pytest.mark.parametrize("key,value,error", [
        ("image_builder", "kaniko", ValueError),
        ("cluster_backend", "nomad", ValueError),
        ("log_backend", "syslog", ValueError),
        ("clone_timeout", 0, ValueError),
        ("push_timeout", "10", TypeError),
        ("apply_timeout", True, TypeError),
        ("max_workers", -1, ValueError),
        ("polling_interval", 1.5, TypeError),
        ("log_buffer_max_bytes", 0, ValueError),
        ("webhook_secrets", ["s3cret"], TypeError),
        ("scm_allowed_schemes", "https://", TypeError),
        ("port", "http", TypeError),
    ])
    def test_invalid_values(self, key, value, error):
        with pytest.raises(error):
            Config().set_item(key, value)

    @pytest.mark.parametrize("key", ["set_item", "_defaults"])
    def test_reserved_names(self, key):
        with pytest.raises(Exception):
            Config().set_item(key, 1)

    def test_conversion(self):
        config = Config()
        config.set_item("port", "8080")
        config.set_item("scm_allowed_schemes", ("https://", "git@"))
        config.set_item("webhook_secrets", {"github": 1234})
        assert config.port == 8080
        assert config.scm_allowed_schemes == ["https://", "git@"]
        assert config.webhook_secrets == {"github": "1234"}
