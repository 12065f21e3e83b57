# git.py
# Small, focused wrapper around the Git CLI.
# The runner uses it only to fill in build facts (branch, commit, message)
# when neither the CLI nor the CI backend provides them.

from __future__ import annotations

from typing import Optional

from .errors import ProcessError
from .process import ExecOptions, output


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Run `git <args>` through the process adapter and return trimmed stdout.

    Args:
        args: git arguments, e.g. ["rev-parse", "HEAD"]
        cwd: Repository directory (defaults to the current one)

    Raises:
        ProcessError: git is missing or exited non-zero
    """
    out = output("git", args, ExecOptions(cwd=cwd))
    return out.stdout.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Name of the checked out branch, or None on a detached HEAD.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def head_message(cwd: Optional[str] = None) -> str:
    return _git(["log", "-1", "--format=%B"], cwd=cwd)


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    try:
        return _git(["describe", "--tags", "--exact-match"], cwd=cwd) or None
    except ProcessError:
        return None


def facts(cwd: Optional[str] = None) -> dict:
    """
    Best effort {branch, commit, message, tag}. Outside a repository
    (or without git installed) every value is None.
    """
    try:
        return {
            "branch": current_branch(cwd),
            "commit": head_sha(cwd),
            "message": head_message(cwd),
            "tag": exact_tag(cwd),
        }
    except ProcessError:
        return {"branch": None, "commit": None, "message": None, "tag": None}
