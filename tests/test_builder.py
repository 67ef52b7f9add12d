# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

import base64
import json
import os

import mock
import pytest

from ci_orchestrator import conf
from ci_orchestrator.builder import DockerImageBuilder, GenericImageBuilder, registry_host
from ci_orchestrator.credentials import Credentials
from ci_orchestrator.errors import (
    AUTH_FAILED,
    INVALID_INPUT,
    NOT_FOUND,
    TRANSIENT,
    ImageBuildError,
    PushError,
)
from ci_orchestrator.scm import WorkingCopy


@mock.patch("ci_orchestrator.builder.run_command", return_value=(0, ""))
class TestDockerImageBuilder:

    def setup_method(self, test_method):
        self.builder = DockerImageBuilder(conf, docker_binary="docker")
        self.wc = WorkingCopy("/var/tmp/wc-1", "main")

    def test_build(self, run_command):
        image_ref = self.builder.build(
            self.wc, "registry.example.local/demo/web", "20240101-000000-b1",
            build_args={"B": "2", "A": "1"}, labels={"ci-orchestrator/build": "1"},
            dockerfile="docker/Dockerfile", timeout=600)

        assert image_ref == "registry.example.local/demo/web:20240101-000000-b1"
        run_command.assert_called_once_with(
            ["docker", "build", "--tag", image_ref,
             "--file", "/var/tmp/wc-1/docker/Dockerfile",
             "--build-arg", "A=1", "--build-arg", "B=2",
             "--label", "ci-orchestrator/build=1",
             "/var/tmp/wc-1"],
            cancel=None, timeout=600, on_output=None, stage="build")

    def test_build_without_options(self, run_command):
        self.builder.build(self.wc, "demo/web", "t1")
        assert run_command.call_args[0][0] == [
            "docker", "build", "--tag", "demo/web:t1", "/var/tmp/wc-1"]

    @pytest.mark.parametrize("dockerfile", ["../Dockerfile", "/etc/Dockerfile", "a/../../x"])
    def test_dockerfile_outside_of_the_working_copy(self, run_command, dockerfile):
        with pytest.raises(ImageBuildError) as excinfo:
            self.builder.build(self.wc, "demo/web", "t1", dockerfile=dockerfile)
        assert excinfo.value.kind == INVALID_INPUT
        assert not run_command.called

    @pytest.mark.parametrize("wc,image_name,image_tag", [
        (None, "demo/web", "t1"),
        (WorkingCopy(None, "main"), "demo/web", "t1"),
        (WorkingCopy("/var/tmp/wc-1", "main"), "", "t1"),
        (WorkingCopy("/var/tmp/wc-1", "main"), "demo/web", ""),
    ])
    def test_build_invalid_input(self, run_command, wc, image_name, image_tag):
        with pytest.raises(ImageBuildError) as excinfo:
            self.builder.build(wc, image_name, image_tag)
        assert excinfo.value.kind == INVALID_INPUT
        assert excinfo.value.stage == "build"
        assert not run_command.called

    @pytest.mark.parametrize("output,kind", [
        ("Cannot connect to the Docker daemon at unix:///var/run/docker.sock", TRANSIENT),
        ("pull access denied for private/base", AUTH_FAILED),
        ("manifest for python:9 not found: manifest unknown", NOT_FOUND),
        ("failed to solve: process \"/bin/sh -c make\" did not complete", INVALID_INPUT),
    ])
    def test_build_failure(self, run_command, output, kind):
        run_command.return_value = (1, output)
        with pytest.raises(ImageBuildError) as excinfo:
            self.builder.build(self.wc, "demo/web", "t1")
        assert excinfo.value.kind == kind
        assert output in str(excinfo.value)

    def test_push(self, run_command):
        self.builder.push("quay.io/demo/web:t1", timeout=60)
        run_command.assert_called_once_with(
            ["docker", "push", "quay.io/demo/web:t1"], env=None, cancel=None,
            timeout=60, on_output=None, stage="push")

    def test_push_with_credentials(self, run_command):
        seen = {}

        def docker_push(cmd, env=None, **kwargs):
            seen["config_dir"] = env["DOCKER_CONFIG"]
            with open(os.path.join(env["DOCKER_CONFIG"], "config.json")) as f:
                seen["config"] = json.load(f)
            return 0, ""

        run_command.side_effect = docker_push
        self.builder.push("quay.io/demo/web:t1", credentials=Credentials("bot", "pw"))

        auth = seen["config"]["auths"]["quay.io"]["auth"]
        assert base64.b64decode(auth).decode("utf-8") == "bot:pw"
        # The client configuration does not outlive the push
        assert not os.path.exists(seen["config_dir"])

    def test_push_with_empty_credentials(self, run_command):
        self.builder.push("quay.io/demo/web:t1", credentials=Credentials("bot", ""))
        assert run_command.call_args[1]["env"] is None

    @pytest.mark.parametrize("output,kind", [
        ("denied: requested access to the resource is denied", AUTH_FAILED),
        ("unauthorized: authentication required", AUTH_FAILED),
        ("An image does not exist locally with the tag: demo/web", NOT_FOUND),
        ("net/http: TLS handshake timeout", TRANSIENT),
    ])
    def test_push_failure(self, run_command, output, kind):
        run_command.return_value = (1, output)
        with pytest.raises(PushError) as excinfo:
            self.builder.push("quay.io/demo/web:t1")
        assert excinfo.value.kind == kind
        assert excinfo.value.stage == "push"

    def test_push_nothing(self, run_command):
        with pytest.raises(PushError) as excinfo:
            self.builder.push("")
        assert excinfo.value.kind == INVALID_INPUT
        assert not run_command.called


@pytest.mark.parametrize("image_ref,host", [
    ("quay.io/team/app:1", "quay.io"),
    ("localhost/app:1", "localhost"),
    ("registry.local:5000/app:1", "registry.local:5000"),
    ("team/app:1", "docker.io"),
    ("app:1", "docker.io"),
])
def test_registry_host(image_ref, host):
    assert registry_host(image_ref) == host


def test_create_backend():
    builder = GenericImageBuilder.create(conf)
    assert isinstance(builder, DockerImageBuilder)
    assert builder.docker_binary == conf.docker_binary


def test_create_unknown_backend():
    with mock.patch.object(conf, "image_builder", "kaniko"):
        with pytest.raises(ValueError):
            GenericImageBuilder.create(conf)
