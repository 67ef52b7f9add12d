# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""Generic image build functions."""

from abc import ABCMeta, abstractmethod
import base64
import json
import logging
import os
import re
import shutil
import tempfile

from ci_orchestrator.errors import (
    AUTH_FAILED,
    INVALID_INPUT,
    NOT_FOUND,
    TRANSIENT,
    ImageBuildError,
    PushError,
)
from ci_orchestrator.utils import run_command

log = logging.getLogger(__name__)

_build_error_patterns = (
    (TRANSIENT, re.compile(
        r"cannot connect to the docker daemon|is the docker daemon running|"
        r"tls handshake timeout|i/o timeout|connection reset|temporary failure", re.I)),
    (AUTH_FAILED, re.compile(
        r"pull access denied|unauthorized|authentication required", re.I)),
    (NOT_FOUND, re.compile(r"manifest unknown|manifest for .* not found", re.I)),
)

_push_error_patterns = (
    (AUTH_FAILED, re.compile(
        r"denied|unauthorized|authentication required|no basic auth credentials", re.I)),
    (NOT_FOUND, re.compile(
        r"name unknown|repository does not exist|an image does not exist locally|"
        r"no such image", re.I)),
)


def _classify(output, patterns, default):
    for kind, pattern in patterns:
        if pattern.search(output or ""):
            return kind
    return default


def registry_host(image_ref):
    """ Returns the registry part of an image reference.

    >>> registry_host("quay.io/team/app:1")
    'quay.io'
    >>> registry_host("team/app:1")
    'docker.io'
    """
    first, sep, _ = image_ref.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return "docker.io"


class GenericImageBuilder(metaclass=ABCMeta):
    """External Api for image builders"""

    backend = "generic"
    backends = {}

    @classmethod
    def register_backend_class(cls, backend_class):
        GenericImageBuilder.backends[backend_class.backend] = backend_class
        return backend_class

    @classmethod
    def create(cls, config, **extra):
        """
        :param config: instance of ci_orchestrator.config.Config

        Any additional arguments are optional extras which can be passed along
        and are implementation-dependent.
        """
        backend = config.image_builder
        if backend not in GenericImageBuilder.backends:
            raise ValueError("Image builder backend='%s' not recognized" % backend)
        return GenericImageBuilder.backends[backend](config=config, **extra)

    @staticmethod
    def validate(working_copy, image_name, image_tag):
        """ Rejects a build request before anything external is touched. """
        if working_copy is None or not getattr(working_copy, "path", None):
            raise ImageBuildError(INVALID_INPUT, "No working copy to build from")
        if not image_name:
            raise ImageBuildError(INVALID_INPUT, "Empty image name")
        if not image_tag:
            raise ImageBuildError(INVALID_INPUT, "Empty image tag")

    @abstractmethod
    def build(self, working_copy, image_name, image_tag, build_args=None, labels=None,
              dockerfile=None, cancel=None, timeout=None, on_output=None):
        """
        :param working_copy: ci_orchestrator.scm.WorkingCopy to build
        :param image_name: repository part of the image, registry included
        :param image_tag: tag, unique per build
        :param build_args: dict of build time variables
        :param labels: dict of image labels
        :param dockerfile: path of the Dockerfile relative to the working copy
        :param cancel: ci_orchestrator.utils.CancelToken
        :param timeout: budget in seconds
        :param on_output: callable receiving the build output as it is produced
        :returns: the image reference "name:tag"
        :raises: ImageBuildError, StageTimeoutError, Cancelled
        """
        raise NotImplementedError()

    @abstractmethod
    def push(self, image_ref, credentials=None, cancel=None, timeout=None, on_output=None):
        """
        Publishes a previously built image.

        :raises: PushError, StageTimeoutError, Cancelled
        """
        raise NotImplementedError()


class DockerImageBuilder(GenericImageBuilder):
    """ Builds with the docker client, one subprocess per operation. """

    backend = "docker"

    def __init__(self, config, docker_binary=None):
        self.docker_binary = docker_binary or config.docker_binary

    def __repr__(self):
        return "<DockerImageBuilder %s>" % self.docker_binary

    def build(self, working_copy, image_name, image_tag, build_args=None, labels=None,
              dockerfile=None, cancel=None, timeout=None, on_output=None):
        self.validate(working_copy, image_name, image_tag)
        image_ref = "%s:%s" % (image_name, image_tag)
        context = working_copy.path

        cmd = [self.docker_binary, "build", "--tag", image_ref]
        if dockerfile:
            dockerfile_path = os.path.normpath(os.path.join(context, dockerfile))
            if not dockerfile_path.startswith(os.path.normpath(context) + os.sep):
                raise ImageBuildError(
                    INVALID_INPUT, "Dockerfile %r is outside of the working copy" % dockerfile)
            cmd.extend(["--file", dockerfile_path])
        for key, value in sorted((build_args or {}).items()):
            cmd.extend(["--build-arg", "%s=%s" % (key, value)])
        for key, value in sorted((labels or {}).items()):
            cmd.extend(["--label", "%s=%s" % (key, value)])
        cmd.append(context)

        log.info("Building %s from %s", image_ref, context)
        rc, output = run_command(cmd, cancel=cancel, timeout=timeout,
                                 on_output=on_output, stage="build")
        if rc != 0:
            kind = _classify(output, _build_error_patterns, INVALID_INPUT)
            raise ImageBuildError(kind, "docker build of %s failed with %r: %s" % (
                image_ref, rc, output.strip()))
        log.info("Built %s", image_ref)
        return image_ref

    def push(self, image_ref, credentials=None, cancel=None, timeout=None, on_output=None):
        if not image_ref:
            raise PushError(INVALID_INPUT, "Empty image reference")

        env = None
        config_dir = None
        if credentials:
            # Throwaway client configuration, removed right after the push
            config_dir = tempfile.mkdtemp(prefix="docker-auth-")
            auth = base64.b64encode(("%s:%s" % (
                credentials.username, credentials.password)).encode("utf-8")).decode("ascii")
            with open(os.path.join(config_dir, "config.json"), "w") as f:
                json.dump({"auths": {registry_host(image_ref): {"auth": auth}}}, f)
            env = dict(os.environ)
            env["DOCKER_CONFIG"] = config_dir

        log.info("Pushing %s", image_ref)
        try:
            rc, output = run_command([self.docker_binary, "push", image_ref], env=env,
                                     cancel=cancel, timeout=timeout,
                                     on_output=on_output, stage="push")
        finally:
            if config_dir is not None:
                shutil.rmtree(config_dir, ignore_errors=True)

        if rc != 0:
            kind = _classify(output, _push_error_patterns, TRANSIENT)
            raise PushError(kind, "docker push of %s failed with %r: %s" % (
                image_ref, rc, output.strip()))
        log.info("Pushed %s", image_ref)


GenericImageBuilder.register_backend_class(DockerImageBuilder)
