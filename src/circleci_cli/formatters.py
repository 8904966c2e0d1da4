"""Terminal output formatters for CLI.

Colour is applied with click.style; click.echo strips it again when colour
output is disabled or stdout is not a terminal, so formatters always style.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import NamedTuple

import click


class StatusCategory(Enum):
    """Display bucket of a build/action status."""

    NO_TESTS = "no_tests"
    NO_BUILDS = "no_builds"
    SUCCESS = "success"
    FAILURE = "failure"
    RUNNING = "running"
    NONE = "none"


_CATEGORY_COLORS = {
    StatusCategory.NO_TESTS: "yellow",
    StatusCategory.NO_BUILDS: "yellow",
    StatusCategory.SUCCESS: "green",
    StatusCategory.FAILURE: "red",
    StatusCategory.RUNNING: "blue",
}

_STATUS_CATEGORIES = {
    "no_tests": StatusCategory.NO_TESTS,
    "canceled": StatusCategory.NO_TESTS,
    "success": StatusCategory.SUCCESS,
    "fixed": StatusCategory.SUCCESS,
    "failed": StatusCategory.FAILURE,
    "timedout": StatusCategory.FAILURE,
    "failure": StatusCategory.FAILURE,
    "infrastructure_fail": StatusCategory.FAILURE,
    "running": StatusCategory.RUNNING,
}


def status_category(status: str | None) -> StatusCategory:
    return _STATUS_CATEGORIES.get(status or "", StatusCategory.NONE)


def style_category(text: str, category: StatusCategory) -> str:
    color = _CATEGORY_COLORS.get(category)
    if color is None:
        return text
    return click.style(text, fg=color)


def colorize(text: str, status: str | None) -> str:
    """Colour ``text`` by the category of ``status``."""
    return style_category(text, status_category(status))


class Cell(NamedTuple):
    """A table cell whose width is measured on ``text`` before colouring."""

    text: str
    status: str | None = None
    category: StatusCategory | None = None

    def render(self, width: int = 0) -> str:
        # Pad outside the escape codes so alignment survives colouring.
        category = self.category or status_category(self.status)
        return style_category(self.text, category) + " " * (width - len(self.text))


def align_columns(rows: list[list], padding: int = 2) -> str:
    """Align rows into columns.

    Every cell but the last of its row is padded to its column's widest
    cell plus ``padding``. Cells are plain strings or ``Cell`` values.
    """
    cells = [[c if isinstance(c, Cell) else Cell(str(c)) for c in row] for row in rows]
    widths: dict[int, int] = {}
    for row in cells:
        for idx, cell in enumerate(row[:-1]):
            widths[idx] = max(widths.get(idx, 0), len(cell.text))

    lines = []
    for row in cells:
        parts = [cell.render(widths[idx] + padding) for idx, cell in enumerate(row[:-1])]
        if row:
            parts.append(row[-1].render())
        lines.append("".join(parts).rstrip(" "))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_duration(seconds: float) -> str:
    """Render a duration compactly: ``350ms``, ``2m5s``, ``1h2m3.5s``."""
    if seconds < 0:
        return "-" + format_duration(-seconds)
    if seconds == 0:
        return "0s"
    if seconds < 1:
        return f"{seconds * 1000:.3f}".rstrip("0").rstrip(".") + "ms"

    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    out = ""
    if hours:
        out += f"{int(hours)}h"
    if hours or minutes:
        out += f"{int(minutes)}m"
    out += f"{secs:.3f}".rstrip("0").rstrip(".") + "s"
    return out


def _elapsed(start: str | None, stop: str | None) -> str | None:
    started, stopped = parse_time(start), parse_time(stop)
    if started is None or stopped is None:
        return None
    return format_duration((stopped - started).total_seconds())


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

def _latest_build(branch: dict | None) -> dict | None:
    builds = (branch or {}).get("recent_builds") or []
    return builds[0] if builds else None


def format_projects(projects: list[dict], verbose: bool = False) -> str:
    blocks = []
    for project in projects:
        name = f"{project.get('username', '')}/{project.get('reponame', '')}"
        branches = project.get("branches") or {}
        default_branch = project.get("default_branch")

        if not verbose:
            latest = _latest_build(branches.get(default_branch))
            if latest is None:
                blocks.append(style_category(name, StatusCategory.NO_BUILDS))
            else:
                blocks.append(colorize(name, latest.get("status")))
            continue

        rows = []
        for branch_name in sorted(branches):
            latest = _latest_build(branches[branch_name])
            if latest is None:
                continue
            status = latest.get("status", "")
            marker = "*" if branch_name == default_branch else ""
            rows.append([Cell(f"{branch_name}{marker}", status), Cell(status, status)])
        block = name
        if rows:
            block += "\n" + align_columns(rows)
        blocks.append(block + "\n")
    return "\n".join(blocks)


# ---------------------------------------------------------------------------
# Builds
# ---------------------------------------------------------------------------

def build_url(build: dict, host: str) -> str:
    return f"{host.rstrip('/')}/gh/{build.get('username', '')}/{build.get('reponame', '')}/{build.get('build_num', '')}"


def format_recent_builds(builds: list[dict]) -> str:
    rows = []
    for b in builds:
        status = b.get("status") or ""
        rows.append([
            f"{b.get('username', '')}/{b.get('reponame', '')}/{b.get('build_num', '')}",
            Cell(status, status),
            b.get("branch") or "",
            b.get("subject") or "",
        ])
    return align_columns(rows, padding=4)


def format_build_summary(build: dict) -> str:
    status = build.get("status") or ""
    rows = [
        ["Build", str(build.get("build_num", ""))],
        ["Subject", build.get("subject") or ""],
        ["Trigger", build.get("why") or ""],
        ["Author", build.get("author_name") or ""],
        ["Committer", build.get("committer_name") or ""],
        ["Status", Cell(status, status)],
        ["Build Parameters", ""],
    ]
    params = build.get("build_parameters") or {}
    if not params:
        rows.append(["", "None"])
    for key in sorted(params):
        rows.append(["", key, str(params[key])])

    started = parse_time(build.get("start_time"))
    rows.append(["Started", str(started.replace(microsecond=0)) if started else ""])
    duration = _elapsed(build.get("start_time"), build.get("stop_time"))
    if duration is not None:
        rows.append(["Duration", duration])
    return align_columns(rows)


def select_action(step: dict, node: int) -> dict | None:
    """Pick the action of ``step`` that ran on ``node``.

    Serial steps only have one action, shared by every node.
    """
    actions = step.get("actions") or []
    if not actions:
        return None
    action = actions[0]
    if action.get("parallel"):
        if node >= len(actions):
            return None
        action = actions[node]
    return action


def format_step(step: dict, action: dict) -> str:
    status = action.get("status") or ""
    line = colorize(f"* {step.get('name', '')} ({status})", status)
    duration = _elapsed(action.get("start_time"), action.get("end_time"))
    if duration is not None:
        line += colorize(f" ({duration})", status)
    if action.get("name") != step.get("name"):
        line += f"\n\t{action.get('name', '')}"
    return line


def format_action_output(outputs: list[dict]) -> str:
    return "\n".join((o.get("message") or "").strip("\n") for o in outputs)


# ---------------------------------------------------------------------------
# Artifacts, tests, env vars
# ---------------------------------------------------------------------------

def format_artifacts(artifacts: list[dict]) -> str:
    rows = [["Node", "Path", "URL"]]
    for a in artifacts:
        rows.append([str(a.get("node_index", "")), a.get("path") or "", a.get("url") or ""])
    return align_columns(rows)


def format_test_metadata(tests: list[dict]) -> str:
    lines = []
    for t in tests:
        result = t.get("result") or ""
        run_time = format_duration(float(t.get("run_time") or 0))
        lines.append(f"{t.get('file') or ''}: {t.get('name') or ''} {colorize(result, result)} ({run_time})")
        if t.get("message") is not None:
            lines.append(t["message"])
    return "\n".join(lines)


def format_env_vars(env_vars: list[dict]) -> str:
    return "\n".join(f"{v.get('name', '')}={v.get('value', '')}" for v in env_vars)
