# -*- coding: utf-8 -*-
# SPDX-License-Identifier: MIT
"""SCM handler functions."""

import logging
import os
import re
import shutil
import tempfile
from urllib.parse import quote, urlsplit, urlunsplit

from ci_orchestrator.errors import (
    AUTH_FAILED,
    INVALID_INPUT,
    NOT_FOUND,
    TRANSIENT,
    SourceError,
)
from ci_orchestrator.utils import parse_ref, run_command

log = logging.getLogger(__name__)

# Checked in order, the first match wins.
_error_patterns = (
    (AUTH_FAILED, re.compile(
        r"authentication failed|could not read username|could not read password|"
        r"permission denied|invalid username or password|http basic: access denied|"
        r"the requested url returned error: 40[13]", re.I)),
    (NOT_FOUND, re.compile(
        r"not found|does not exist|couldn't find remote ref|could not find remote branch|"
        r"did not match any|not a valid object name|unable to read tree|"
        r"does not appear to be a git repository|the requested url returned error: 404",
        re.I)),
    (TRANSIENT, re.compile(
        r"could not resolve host|connection timed out|connection refused|"
        r"connection reset|early eof|rpc failed|the remote end hung up|"
        r"operation timed out|temporary failure|the requested url returned error: 5\d\d",
        re.I)),
)


def classify_git_error(output):
    """ Maps the output of a failed git command to an adapter error kind.

    Unknown failures are considered transient.
    """
    for kind, pattern in _error_patterns:
        if pattern.search(output or ""):
            return kind
    return TRANSIENT


class WorkingCopy(object):
    """ A local checkout owned by exactly one build. """

    def __init__(self, path, ref, commit=None, repo_url=None):
        self.path = path
        self.ref = ref
        self.commit = commit
        self.repo_url = repo_url

    def __repr__(self):
        return "<WorkingCopy %s, ref=%r, commit=%r>" % (self.path, self.ref, self.commit)


class GitSource(object):
    """ Source adapter acquiring working copies with the git client.

    :param str workspace_dir: where the working copies are created
    :param list allowed_schemes: accepted repository URL prefixes, optional
    :param str git_binary: git executable
    """

    def __init__(self, workspace_dir, allowed_schemes=None, git_binary="git"):
        self.workspace_dir = workspace_dir
        self.allowed_schemes = allowed_schemes
        self.git_binary = git_binary

    def __repr__(self):
        return "<GitSource %s>" % self.workspace_dir

    def check_url(self, repo_url):
        if not repo_url:
            raise SourceError(INVALID_INPUT, "Empty repository URL")
        if self.allowed_schemes and not repo_url.startswith(tuple(self.allowed_schemes)):
            raise SourceError(
                INVALID_INPUT, "%s is not in the list of allowed SCMs" % repo_url)

    def acquire(self, repo_url, ref, credentials=None, cancel=None, timeout=None,
                on_output=None):
        """Checkout ref of repo_url into a fresh working copy.

        :param str repo_url: repository to clone
        :param str ref: branch, tag (full or short refs) or commit hash, abbreviated ones included
        :param credentials: ci_orchestrator.credentials.Credentials or None
        :param cancel: ci_orchestrator.utils.CancelToken or None
        :param timeout: budget of each git call, in seconds
        :param on_output: callable receiving the git output line by line
        :returns: WorkingCopy with the resolved commit
        :raises: SourceError, StageTimeoutError, Cancelled
        """
        self.check_url(repo_url)
        name, ref_type = parse_ref(ref)
        if not name:
            raise SourceError(INVALID_INPUT, "Empty ref for %s" % repo_url)

        if not os.path.isdir(self.workspace_dir):
            os.makedirs(self.workspace_dir)
        path = tempfile.mkdtemp(prefix="wc-", dir=self.workspace_dir)
        wc = WorkingCopy(path, ref, repo_url=repo_url)
        clone_url = self._authenticated_url(repo_url, credentials)

        def _out(line):
            if on_output is not None:
                on_output(self._mask(line, clone_url, repo_url))

        try:
            if ref_type == "commit":
                self._run([self.git_binary, "clone", "--quiet", "--no-checkout",
                           clone_url, path], repo_url, clone_url, cancel, timeout, _out)
                self._run([self.git_binary, "checkout", "--quiet", name],
                          repo_url, clone_url, cancel, timeout, _out, cwd=path)
            else:
                self._run([self.git_binary, "clone", "--quiet", "--depth", "1",
                           "--single-branch", "--branch", name, clone_url, path],
                          repo_url, clone_url, cancel, timeout, _out)
            wc.commit = self.resolve_commit(path, cancel=cancel, timeout=timeout)
        except SourceError as e:
            self._cleanup(path)
            e.working_copy = wc
            raise
        except Exception:
            self._cleanup(path)
            raise

        log.info("Checked out %s of %s at %s into %s", ref, repo_url, wc.commit, path)
        return wc

    def resolve_commit(self, path, cancel=None, timeout=None):
        """ Returns the commit HEAD of the checkout at path points to. """
        lines = []
        rc, output = run_command([self.git_binary, "rev-parse", "HEAD"], cwd=path,
                                 env=self._env(), cancel=cancel, timeout=timeout,
                                 on_output=lines.append, stage="clone")
        commit = "".join(lines).strip()
        if rc != 0 or not re.match(r"^[0-9a-f]{40}$", commit):
            raise SourceError(NOT_FOUND, "Cannot resolve HEAD in %s: %s" % (path, output))
        return commit

    def release(self, working_copy):
        """ Removes the working copy. Safe to call more than once and with
        whatever a failed acquire left behind.
        """
        if working_copy is None or not working_copy.path:
            return
        self._cleanup(working_copy.path)

    def _run(self, cmd, repo_url, clone_url, cancel, timeout, on_output, cwd=None):
        rc, output = run_command(cmd, cwd=cwd, env=self._env(), cancel=cancel,
                                 timeout=timeout, on_output=on_output, stage="clone")
        if rc != 0:
            output = self._mask(output, clone_url, repo_url)
            kind = classify_git_error(output)
            raise SourceError(kind, "git %s of %s failed with %r: %s" % (
                cmd[1], repo_url, rc, output.strip()))

    @staticmethod
    def _env():
        env = dict(os.environ)
        # Never wait for a password on a terminal
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_ASKPASS"] = "echo"
        return env

    @staticmethod
    def _authenticated_url(repo_url, credentials):
        if credentials is None or not credentials.password:
            return repo_url
        parts = urlsplit(repo_url)
        if parts.scheme not in ("http", "https"):
            return repo_url
        netloc = parts.netloc.rsplit("@", 1)[-1]
        userinfo = quote(credentials.username or "oauth2", safe="")
        userinfo += ":" + quote(credentials.password, safe="")
        return urlunsplit((parts.scheme, "%s@%s" % (userinfo, netloc), parts.path,
                           parts.query, parts.fragment))

    @staticmethod
    def _mask(text, clone_url, repo_url):
        if clone_url != repo_url:
            text = text.replace(clone_url, repo_url)
        return text

    @staticmethod
    def _cleanup(path):
        if os.path.exists(path):
            log.debug("Removing working copy %s", path)
            shutil.rmtree(path, ignore_errors=True)
