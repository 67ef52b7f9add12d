# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Defines custom exceptions and error handling functions """

from flask import jsonify

# Reasons carried by AdmissionError
BUSY = "Busy"
WRONG_STATE = "WrongState"
DISABLED = "Disabled"
NO_MATCHING_TRIGGER = "NoMatchingTrigger"

# Kinds carried by AdapterError
NOT_FOUND = "NotFound"
AUTH_FAILED = "AuthFailed"
TRANSIENT = "Transient"
INVALID_INPUT = "InvalidInput"
TIMEOUT = "Timeout"
INTERNAL = "Internal"

ADAPTER_ERROR_KINDS = (NOT_FOUND, AUTH_FAILED, TRANSIENT, INVALID_INPUT)


class ValidationError(ValueError):
    pass


class NotFound(ValueError):
    pass


class Forbidden(ValueError):
    pass


class AdmissionError(ValueError):
    """ A concurrency or state conflict, e.g. the pipeline is busy. """

    def __init__(self, reason, message=None):
        self.reason = reason
        super(AdmissionError, self).__init__(message or reason)


class AdapterError(RuntimeError):
    """ A failure of one of the external systems, classified by its adapter. """

    stage = None

    def __init__(self, kind, message, stage=None):
        if kind not in ADAPTER_ERROR_KINDS + (TIMEOUT,):
            raise ValueError("Unknown adapter error kind: %r" % kind)
        self.kind = kind
        if stage is not None:
            self.stage = stage
        super(AdapterError, self).__init__(message)

    @property
    def retryable(self):
        return self.kind == TRANSIENT


class SourceError(AdapterError):
    stage = "clone"

    def __init__(self, kind, message, working_copy=None):
        super(SourceError, self).__init__(kind, message)
        # Whatever Acquire managed to allocate before failing, so that the
        # caller can still hand it to Release.
        self.working_copy = working_copy


class ImageBuildError(AdapterError):
    stage = "build"


class PushError(AdapterError):
    stage = "push"


class ClusterError(AdapterError):
    stage = "apply"


class StageTimeoutError(AdapterError):
    """ A stage exceeded its wall-clock budget. """

    def __init__(self, stage, timeout):
        self.timeout = timeout
        super(StageTimeoutError, self).__init__(
            TIMEOUT, "Stage %r exceeded its %ss budget" % (stage, timeout), stage=stage)


class Cancelled(Exception):
    """ Raised at adapter call boundaries once cancellation was requested. """


class InternalError(RuntimeError):
    pass


def json_error(status, error, message, **extra):
    body = {"status": status, "error": error, "message": message}
    body.update(extra)
    response = jsonify(body)
    response.status_code = status
    return response
