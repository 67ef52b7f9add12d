# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
""" Webhook decoders of the supported source control providers.

A decoder verifies the provider's signature first and only then turns the
payload into a NormalizedEvent. Anything that is neither a branch nor a
tag push decodes fine but carries an event kind the dispatcher ignores.
"""

import base64
import hashlib
import hmac
import json
import logging

from ci_orchestrator.errors import Forbidden, ValidationError

log = logging.getLogger(__name__)

PUSH = "push"
TAG_PUSH = "tag_push"
PING = "ping"
OTHER = "other"

BUILDABLE_EVENTS = (PUSH, TAG_PUSH)

_zero_commit = "0" * 40


class DecodeError(ValidationError):
    pass


class SignatureError(Forbidden):
    pass


class NormalizedEvent(object):
    def __init__(self, repo_identity, ref, commit, event_kind, repo_urls=None):
        self.repo_identity = repo_identity
        self.ref = ref
        self.commit = commit
        self.event_kind = event_kind
        # Every URL the provider knows the repository by
        self.repo_urls = list(repo_urls or ([repo_identity] if repo_identity else []))

    def __repr__(self):
        return "<NormalizedEvent %s %s@%s, %s>" % (
            self.event_kind, self.repo_identity, self.ref, self.commit)

    @property
    def buildable(self):
        return self.event_kind in BUILDABLE_EVENTS and bool(self.ref)


def _lower_headers(headers):
    return dict((str(k).lower(), v) for k, v in dict(headers or {}).items())


def _load(raw_payload):
    if isinstance(raw_payload, bytes):
        raw_payload = raw_payload.decode("utf-8", "replace")
    try:
        payload = json.loads(raw_payload or "")
    except ValueError as e:
        raise DecodeError("Webhook payload is not valid JSON: %s" % e)
    if not isinstance(payload, dict):
        raise DecodeError("Webhook payload is not a JSON object")
    return payload


def _as_bytes(raw_payload):
    if isinstance(raw_payload, bytes):
        return raw_payload
    return (raw_payload or "").encode("utf-8")


class WebhookDecoder(object):
    """ Base of the provider decoders. """

    provider = None
    decoders = {}

    def __init__(self, secret):
        self.secret = secret or ""

    def __repr__(self):
        return "<%s>" % self.__class__.__name__

    @classmethod
    def register(cls, decoder_class):
        WebhookDecoder.decoders[decoder_class.provider] = decoder_class

    @classmethod
    def for_provider(cls, provider, secret):
        try:
            decoder_class = WebhookDecoder.decoders[provider]
        except KeyError:
            raise ValidationError("Unsupported webhook provider: %r" % provider)
        return decoder_class(secret)

    def decode(self, raw_payload, headers):
        """
        :param raw_payload: request body, bytes or str
        :param headers: request headers mapping
        :returns: NormalizedEvent
        :raises: SignatureError, DecodeError
        """
        headers = _lower_headers(headers)
        self.verify(_as_bytes(raw_payload), headers)
        event = self.parse(_load(raw_payload), headers)
        log.debug("Decoded %s webhook into %r", self.provider, event)
        return event

    def verify(self, raw_payload, headers):
        raise NotImplementedError()

    def parse(self, payload, headers):
        raise NotImplementedError()

    def _require_secret(self):
        if not self.secret:
            raise SignatureError("No %s webhook secret configured" % self.provider)

    @staticmethod
    def _push_kind(ref):
        if (ref or "").startswith("refs/tags/"):
            return TAG_PUSH
        return PUSH


class GitHubDecoder(WebhookDecoder):
    provider = "github"

    def verify(self, raw_payload, headers):
        self._require_secret()
        signature = headers.get("x-hub-signature-256", "")
        if not signature.startswith("sha256="):
            raise SignatureError("Missing X-Hub-Signature-256 header")
        expected = hmac.new(self.secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(signature[len("sha256="):].encode("utf-8"),
                                   expected.encode("utf-8")):
            raise SignatureError("GitHub signature mismatch")

    def parse(self, payload, headers):
        event = headers.get("x-github-event", "")
        repository = payload.get("repository") or {}
        urls = [repository.get(key) for key in ("clone_url", "ssh_url", "git_url", "html_url")]
        urls = [u for u in urls if u]
        identity = urls[0] if urls else None

        if event == "ping":
            return NormalizedEvent(identity, None, None, PING, urls)
        if event != "push":
            return NormalizedEvent(identity, None, None, OTHER, urls)

        ref = payload.get("ref")
        commit = payload.get("after")
        if not ref:
            raise DecodeError("GitHub push event without ref")
        if payload.get("deleted") or commit == _zero_commit:
            return NormalizedEvent(identity, ref, None, OTHER, urls)
        return NormalizedEvent(identity, ref, commit, self._push_kind(ref), urls)


class GitLabDecoder(WebhookDecoder):
    provider = "gitlab"

    def verify(self, raw_payload, headers):
        self._require_secret()
        token = headers.get("x-gitlab-token", "")
        if not hmac.compare_digest(token.encode("utf-8"), self.secret.encode("utf-8")):
            raise SignatureError("GitLab token mismatch")

    def parse(self, payload, headers):
        kind = payload.get("object_kind") or ""
        project = payload.get("project") or payload.get("repository") or {}
        urls = [project.get(key) for key in ("git_http_url", "git_ssh_url", "http_url",
                                              "web_url", "url")]
        urls = [u for u in urls if u]
        identity = urls[0] if urls else None

        if kind not in ("push", "tag_push"):
            return NormalizedEvent(identity, None, None, OTHER, urls)

        ref = payload.get("ref")
        commit = payload.get("checkout_sha") or payload.get("after")
        if not ref:
            raise DecodeError("GitLab push event without ref")
        if not commit or commit == _zero_commit:
            return NormalizedEvent(identity, ref, None, OTHER, urls)
        return NormalizedEvent(identity, ref, commit, self._push_kind(ref), urls)


class GiteeDecoder(WebhookDecoder):
    """ Gitee sends either the plain password or, together with
    X-Gitee-Timestamp, a signature over "<timestamp>\\n<secret>".
    """

    provider = "gitee"

    def verify(self, raw_payload, headers):
        self._require_secret()
        token = headers.get("x-gitee-token", "")
        timestamp = headers.get("x-gitee-timestamp")
        if timestamp:
            digest = hmac.new(self.secret.encode("utf-8"),
                              ("%s\n%s" % (timestamp, self.secret)).encode("utf-8"),
                              hashlib.sha256).digest()
            expected = base64.b64encode(digest).decode("ascii")
        else:
            expected = self.secret
        if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            raise SignatureError("Gitee token mismatch")

    def parse(self, payload, headers):
        event = headers.get("x-gitee-event", "")
        repository = payload.get("repository") or payload.get("project") or {}
        urls = [repository.get(key) for key in ("clone_url", "git_http_url", "ssh_url",
                                                 "git_ssh_url", "html_url", "url")]
        urls = [u for u in urls if u]
        identity = urls[0] if urls else None

        if event not in ("Push Hook", "Tag Push Hook"):
            return NormalizedEvent(identity, None, None, OTHER, urls)

        ref = payload.get("ref")
        commit = payload.get("after")
        if not ref:
            raise DecodeError("Gitee push event without ref")
        if payload.get("deleted") or not commit or commit == _zero_commit:
            return NormalizedEvent(identity, ref, None, OTHER, urls)
        return NormalizedEvent(identity, ref, commit, self._push_kind(ref), urls)


WebhookDecoder.register(GitHubDecoder)
WebhookDecoder.register(GitLabDecoder)
WebhookDecoder.register(GiteeDecoder)
