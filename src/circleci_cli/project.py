"""Project and build-filter values, and the current-project lookup from git."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import subprocess

import click


@dataclass(frozen=True)
class Project:
    """An ``<account>/<repository>`` pair."""

    account: str = ""
    repository: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.account and not self.repository

    def __str__(self) -> str:
        if self.is_empty:
            return ""
        return f"{self.account}/{self.repository}"


def parse_project(value: str) -> Project:
    """Parse ``account/repo``, splitting on the first slash."""
    account, sep, repository = value.partition("/")
    if not sep:
        raise ValueError(f"could not parse {value} as '<account>/<repo>'")
    if not account or not repository:
        raise ValueError(f"empty account or repository in {value}")
    return Project(account, repository)


class BuildFilter(str, Enum):
    COMPLETED = "completed"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    RUNNING = "running"

    def __str__(self) -> str:
        return self.value


def parse_filter(value: str) -> BuildFilter:
    try:
        return BuildFilter(value)
    except ValueError:
        choices = ",".join(f.value for f in BuildFilter)
        raise ValueError(f"must be one of {choices}") from None


def _warn(reason: str) -> Project:
    click.echo(f"warning: could not determine current project{reason}", err=True)
    return Project()


def project_from_remotes(output: str) -> Project:
    """Pick the project out of ``git remote -v`` output.

    Uses the first ``origin`` line. Both ``git@host:account/repo.git`` and
    ``https://host/account/repo`` URLs work since the URL is split on ``:``
    and then ``/``. Any malformed input gives a warning and the empty project.
    """
    for line in output.splitlines():
        fields = line.split()
        if not fields or fields[0] != "origin":
            continue

        if len(fields) != 3:
            return _warn(f", unexpected number of fields in {line}")

        url = fields[1]
        parts = url.split(":")[-1].split("/")
        if len(parts) < 2:
            return _warn(f", expected / in {url}")

        repository = parts[-1]
        if repository.endswith(".git"):
            repository = repository[: -len(".git")]
        return Project(parts[-2], repository)

    return _warn(": no origin set")


def current_project() -> Project:
    """Resolve the project from the ``origin`` remote of the working directory."""
    try:
        proc = subprocess.run(
            ["git", "remote", "-v"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        return _warn(f", {exc}")

    if proc.returncode != 0:
        return _warn(f", git exited with status {proc.returncode}: {proc.stdout.strip()}")
    return project_from_remotes(proc.stdout)
