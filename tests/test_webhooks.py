# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT

import base64
import hashlib
import hmac
import json

import pytest

from ci_orchestrator.errors import Forbidden, ValidationError
from ci_orchestrator.webhooks import (
    OTHER,
    PING,
    PUSH,
    TAG_PUSH,
    DecodeError,
    GiteeDecoder,
    GitHubDecoder,
    GitLabDecoder,
    SignatureError,
    WebhookDecoder,
)
from tests import COMMIT, REPO_URL

SECRET = "s3cret"


def github_signature(body, secret=SECRET):
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class TestGitHubDecoder:

    def decode(self, payload, event="push", signature=None, raw=None):
        body = raw if raw is not None else json.dumps(payload).encode("utf-8")
        headers = {
            "X-GitHub-Event": event,
            "X-Hub-Signature-256": signature or github_signature(body),
        }
        return GitHubDecoder(SECRET).decode(body, headers)

    def push(self, ref="refs/heads/main", after=COMMIT, **extra):
        payload = {
            "ref": ref,
            "after": after,
            "repository": {
                "clone_url": REPO_URL,
                "ssh_url": "git@git.example.com:team/demo.git",
                "html_url": "https://git.example.com/team/demo",
            },
        }
        payload.update(extra)
        return payload

    def test_branch_push(self):
        event = self.decode(self.push())
        assert event.event_kind == PUSH
        assert event.ref == "refs/heads/main"
        assert event.commit == COMMIT
        assert event.repo_identity == REPO_URL
        assert event.repo_urls == [REPO_URL, "git@git.example.com:team/demo.git",
                                   "https://git.example.com/team/demo"]
        assert event.buildable

    def test_tag_push(self):
        event = self.decode(self.push(ref="refs/tags/v1.0"))
        assert event.event_kind == TAG_PUSH
        assert event.buildable

    def test_ping(self):
        event = self.decode({"zen": "Keep it simple.", "repository": {"clone_url": REPO_URL}},
                            event="ping")
        assert event.event_kind == PING
        assert not event.buildable

    def test_other_event(self):
        event = self.decode({"action": "opened"}, event="pull_request")
        assert event.event_kind == OTHER
        assert event.repo_identity is None
        assert not event.buildable

    @pytest.mark.parametrize("extra", [
        {"deleted": True, "after": "0" * 40},
        {"after": "0" * 40},
    ])
    def test_deleted_ref(self, extra):
        event = self.decode(self.push(**extra))
        assert event.event_kind == OTHER
        assert event.commit is None

    def test_bad_signature(self):
        with pytest.raises(SignatureError):
            self.decode(self.push(), signature=github_signature(b"{}"))

    def test_non_ascii_signature(self):
        with pytest.raises(SignatureError):
            self.decode(self.push(), signature="sha256=é")

    def test_missing_signature(self):
        body = json.dumps(self.push()).encode("utf-8")
        with pytest.raises(Forbidden):
            GitHubDecoder(SECRET).decode(body, {"X-GitHub-Event": "push"})

    def test_no_secret_configured(self):
        body = json.dumps(self.push()).encode("utf-8")
        headers = {"X-GitHub-Event": "push", "X-Hub-Signature-256": github_signature(body, "")}
        with pytest.raises(SignatureError):
            GitHubDecoder("").decode(body, headers)

    def test_signature_checked_before_parsing(self):
        with pytest.raises(SignatureError):
            self.decode(None, raw=b"not json", signature="sha256=00")

    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b""])
    def test_malformed_payload(self, raw):
        with pytest.raises(DecodeError):
            self.decode(None, raw=raw)

    def test_push_without_ref(self):
        with pytest.raises(ValidationError):
            self.decode({"after": COMMIT})


class TestGitLabDecoder:

    def decode(self, payload, token=SECRET):
        headers = {"X-Gitlab-Event": "Push Hook", "X-Gitlab-Token": token}
        return GitLabDecoder(SECRET).decode(json.dumps(payload), headers)

    def push(self, object_kind="push", ref="refs/heads/main", **extra):
        payload = {
            "object_kind": object_kind,
            "ref": ref,
            "before": "0" * 40,
            "after": COMMIT,
            "checkout_sha": COMMIT,
            "project": {
                "git_http_url": REPO_URL,
                "git_ssh_url": "git@git.example.com:team/demo.git",
            },
        }
        payload.update(extra)
        return payload

    def test_branch_push(self):
        event = self.decode(self.push())
        assert event.event_kind == PUSH
        assert event.commit == COMMIT
        assert event.repo_identity == REPO_URL
        assert "git@git.example.com:team/demo.git" in event.repo_urls

    def test_tag_push(self):
        event = self.decode(self.push(object_kind="tag_push", ref="refs/tags/v2"))
        assert event.event_kind == TAG_PUSH
        assert event.ref == "refs/tags/v2"

    def test_deleted_branch(self):
        event = self.decode(self.push(checkout_sha=None, after="0" * 40))
        assert event.event_kind == OTHER

    def test_merge_request(self):
        event = self.decode({"object_kind": "merge_request", "project": {}})
        assert event.event_kind == OTHER

    def test_wrong_token(self):
        with pytest.raises(SignatureError):
            self.decode(self.push(), token="guess")


class TestGiteeDecoder:

    def decode(self, payload, headers):
        headers = dict(headers, **{"X-Gitee-Event": "Push Hook"})
        return GiteeDecoder(SECRET).decode(json.dumps(payload), headers)

    def push(self, ref="refs/heads/main", **extra):
        payload = {"ref": ref, "after": COMMIT, "repository": {"clone_url": REPO_URL}}
        payload.update(extra)
        return payload

    def test_password(self):
        event = self.decode(self.push(), {"X-Gitee-Token": SECRET})
        assert event.event_kind == PUSH
        assert event.repo_identity == REPO_URL

    def test_signed(self):
        timestamp = "1700000000000"
        digest = hmac.new(SECRET.encode("utf-8"), ("%s\n%s" % (timestamp, SECRET)).encode("utf-8"),
                          hashlib.sha256).digest()
        headers = {
            "X-Gitee-Token": base64.b64encode(digest).decode("ascii"),
            "X-Gitee-Timestamp": timestamp,
        }
        assert self.decode(self.push(ref="refs/tags/v1"), headers).event_kind == TAG_PUSH

    def test_signed_with_the_password(self):
        headers = {"X-Gitee-Token": SECRET, "X-Gitee-Timestamp": "1700000000000"}
        with pytest.raises(SignatureError):
            self.decode(self.push(), headers)

    def test_deleted_branch(self):
        event = self.decode(self.push(deleted=True), {"X-Gitee-Token": SECRET})
        assert event.event_kind == OTHER


def test_for_provider():
    assert isinstance(WebhookDecoder.for_provider("gitlab", SECRET), GitLabDecoder)
    with pytest.raises(ValidationError):
        WebhookDecoder.for_provider("bitbucket", SECRET)
