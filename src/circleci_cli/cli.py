"""CircleCI CLI: inspect and drive CircleCI builds from the terminal."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import re
import sys

import click
from click.core import ParameterSource

from .client import CircleCIClient, CircleCIError
from .formatters import (
    build_url,
    format_action_output,
    format_artifacts,
    format_build_summary,
    format_env_vars,
    format_projects,
    format_recent_builds,
    format_step,
    format_test_metadata,
    select_action,
)
from .project import BuildFilter, Project, current_project, parse_filter, parse_project

_DEFAULT_HOST = "https://circleci.com"
_COLOR_MODES = ("auto", "always", "never")
_TRUTHY = {"1", "true", "yes", "on"}

_UNAUTHORIZED_NO_TOKEN = (
    "unauthorized -- please supply API token either using -t or using the CIRCLE_TOKEN environment variable"
)
_UNAUTHORIZED_BAD_TOKEN = "unauthorized -- supplied API token is not valid for this action"

_COMMAND_ALIASES = {
    "recent": "recent-builds",
    "artifacts": "list-artifacts",
    "retry": "retry-build",
    "cancel": "cancel-build",
}


class CircleCIGroup(click.Group):
    """Command group with verb aliases; usage errors exit with status 1."""

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, _COMMAND_ALIASES.get(cmd_name, cmd_name))

    def resolve_command(self, ctx, args):
        _, cmd, args = super().resolve_command(ctx, args)
        return (cmd.name if cmd else None), cmd, args

    def main(self, args=None, prog_name=None, complete_var=None, standalone_mode=True, **extra):
        if not standalone_mode:
            return super().main(args, prog_name, complete_var, standalone_mode, **extra)
        try:
            rv = super().main(args, prog_name, complete_var, False, **extra)
        except click.ClickException as e:
            e.show()
            sys.exit(1)
        except click.Abort:
            click.echo("Aborted!", err=True)
            sys.exit(1)
        sys.exit(rv if isinstance(rv, int) else 0)


class ProjectType(click.ParamType):
    name = "account/repo"

    def convert(self, value, param, ctx):
        if isinstance(value, Project):
            return value
        try:
            return parse_project(value)
        except ValueError as exc:
            self.fail(str(exc), param, ctx)


class FilterType(click.ParamType):
    name = "filter"

    def convert(self, value, param, ctx):
        if isinstance(value, BuildFilter):
            return value
        try:
            return parse_filter(value)
        except ValueError as exc:
            self.fail(str(exc), param, ctx)


PROJECT = ProjectType()
FILTER = FilterType()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _config_file() -> Path:
    override = os.environ.get("CIRCLE_CLI_CONFIG")
    if override:
        return Path(override).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
    return Path(base).expanduser() / "circleci-cli" / "config.json"


def _load_config(path: Path) -> dict:
    """Read the JSON settings at ``path``; a missing file holds no settings."""
    if not path.exists():
        return {}
    try:
        settings = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CircleCIError("CONFIG", f"unable to read config {path}: {exc}", 0) from exc
    except json.JSONDecodeError as exc:
        raise CircleCIError("CONFIG", f"invalid JSON in config {path}: {exc}", 0) from exc
    if not isinstance(settings, dict):
        raise CircleCIError("CONFIG", f"config {path} must hold a JSON object", 0)

    # A stored token must be private to its owner.
    if settings.get("token") and os.name != "nt" and path.stat().st_mode & 0o077:
        raise CircleCIError("CONFIG", f"Insecure config permissions on {path} (expected 600)", 0)
    return settings


def _save_config(path: Path, settings: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    if os.name != "nt":
        path.chmod(0o600)


def _resolve_setting(flag_value, env_name: str, config_value, default_value):
    if flag_value is not None:
        return flag_value
    env_value = os.environ.get(env_name)
    if env_value not in (None, ""):
        return env_value
    if config_value is not None:
        return config_value
    return default_value


def _read_token_file(path: str) -> str:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise CircleCIError("CONFIG", f"unable to read token-file: {exc}", 0) from exc


def _resolve_token(token: str | None, token_file: str | None, file_config: dict) -> str | None:
    """Token precedence: --token/CIRCLE_TOKEN, then a token file, then the config file."""
    resolved = _resolve_setting(token, "CIRCLE_TOKEN", None, None)
    if resolved:
        return resolved
    token_file = _resolve_setting(token_file, "CIRCLE_TOKEN_FILE", file_config.get("token_file"), None)
    if token_file:
        return _read_token_file(token_file)
    return file_config.get("token") or None


def _setup_logging(debug: bool) -> None:
    if not debug:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="[%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Shared command helpers
# ---------------------------------------------------------------------------

def _get_client(ctx: click.Context) -> CircleCIClient:
    return ctx.obj["client"]


def _exit_with_error(ctx: click.Context, err: CircleCIError) -> None:
    if err.code == "HTTP" and err.status_code in {401, 403}:
        message = _UNAUTHORIZED_BAD_TOKEN if ctx.obj.get("token") else _UNAUTHORIZED_NO_TOKEN
    else:
        message = str(err)
    click.echo(message, err=True)
    sys.exit(1)


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _resolve_project(project: Project | None) -> Project:
    """Fall back to the git origin project when --project was not given."""
    if project is None:
        project = current_project()
    if project.is_empty:
        raise CircleCIError("VALIDATION", "no project specified, use --project <account>/<repo>", 0)
    return project


def _resolve_build_num(client: CircleCIClient, project: Project, build_num: int | None) -> int:
    if build_num is not None:
        return build_num
    builds = client.list_recent_builds_for_project(project.account, project.repository, limit=1, offset=0)
    if not builds:
        raise CircleCIError("NO_BUILDS", "no builds", 0)
    return builds[0]["build_num"]


def _project_option(help_text: str):
    return click.option("--project", "-p", type=PROJECT, default=None, envvar="CIRCLE_PROJECT", help=help_text)


def _build_num_option(help_text: str):
    return click.option("--build-num", "-n", type=int, default=None, envvar="CIRCLE_BUILD_NUM", help=help_text)


@click.group(cls=CircleCIGroup)
@click.option("--host", "-H", default=None, help="CircleCI URI (or set CIRCLE_HOST)")
@click.option(
    "--token",
    "-t",
    default=None,
    help="API token to use to access CircleCI (not needed for public repositories; or set CIRCLE_TOKEN)",
)
@click.option("--token-file", "-f", default=None, help="Load API token from specified file (or set CIRCLE_TOKEN_FILE)")
@click.option("--debug/--no-debug", "-d", default=None, help="Enable debug logging (or set CIRCLE_DEBUG)")
@click.option(
    "--color",
    default=None,
    type=click.Choice(_COLOR_MODES),
    help="Suppress or force highlighting (or set CIRCLE_COLOR).",
)
@click.version_option(package_name="circleci-cli")
@click.pass_context
def main(
    ctx,
    host: str | None,
    token: str | None,
    token_file: str | None,
    debug: bool | None,
    color: str | None,
):
    """Tool for interacting with the CircleCI API."""
    ctx.ensure_object(dict)
    try:
        config_file = _config_file()
        file_config = _load_config(config_file)
        resolved_host = _resolve_setting(host, "CIRCLE_HOST", file_config.get("host"), _DEFAULT_HOST)
        resolved_color = _resolve_setting(color, "CIRCLE_COLOR", file_config.get("color"), "auto")
        if resolved_color not in _COLOR_MODES:
            raise CircleCIError("CONFIG", f'unexpected --color value: "{resolved_color}"', 0)

        debug_env = os.environ.get("CIRCLE_DEBUG")
        if debug is not None:
            resolved_debug = debug
        elif debug_env not in (None, ""):
            resolved_debug = debug_env.lower() in _TRUTHY
        else:
            resolved_debug = bool(file_config.get("debug", False))

        resolved_token = None
        if ctx.invoked_subcommand != "config":
            resolved_token = _resolve_token(token, token_file, file_config)
    except CircleCIError as e:
        _fail(str(e))

    _setup_logging(resolved_debug)
    # Subcommand contexts inherit this; None lets click detect a terminal.
    ctx.color = {"always": True, "never": False}.get(resolved_color)

    ctx.obj["host"] = resolved_host
    ctx.obj["token"] = resolved_token
    ctx.obj["config_path"] = config_file
    if ctx.invoked_subcommand == "config":
        return

    client = CircleCIClient(resolved_token, resolved_host)
    ctx.obj["client"] = client
    ctx.call_on_close(client.close)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@main.group()
def config():
    """Manage local CLI configuration."""


@config.command(name="path")
@click.pass_context
def config_path(ctx):
    """Show effective config path."""
    click.echo(str(ctx.obj["config_path"]))


@config.command(name="init")
@click.option("--force", is_flag=True, help="Overwrite existing config file")
@click.pass_context
def config_init(ctx, force):
    """Create a local config template."""
    target = ctx.obj["config_path"]
    if target.exists() and not force:
        click.echo(f"exists: {target}")
        return
    template = {
        "host": _DEFAULT_HOST,
        "token": "",
        "token_file": "",
        "color": "auto",
    }
    try:
        _save_config(target, template)
    except OSError as exc:
        _exit_with_error(ctx, CircleCIError("CONFIG", f"unable to write config {target}: {exc}", 0))
    click.echo(f"created: {target}")


# ---------------------------------------------------------------------------
# projects
# ---------------------------------------------------------------------------

@main.command()
@click.option("--verbose", "-v", is_flag=True, envvar="CIRCLE_VERBOSE", help="Show additional information about projects")
@_project_option("Only print one project (useful with --verbose)")
@click.pass_context
def projects(ctx, verbose, project):
    """Print projects."""
    client = _get_client(ctx)
    try:
        items = client.list_projects()
        if project is not None:
            items = [
                p for p in items
                if p.get("username") == project.account and p.get("reponame") == project.repository
            ]
        if items:
            click.echo(format_projects(items, verbose=verbose))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# recent-builds
# ---------------------------------------------------------------------------

@main.command(name="recent-builds")
@click.option("--limit", "-l", default=30, envvar="CIRCLE_LIMIT", help="Maximum of builds to return -- set to -1 for no limit")
@click.option("--offset", "-o", default=0, envvar="CIRCLE_OFFSET", help="Offset in results to start at")
@click.option("--all", "-a", "all_builds", is_flag=True, envvar="CIRCLE_ALL_BUILDS", help="Show builds for all projects")
@_project_option("Show all builds for specified project rather than the current")
@click.option(
    "--branch",
    "-b",
    default=None,
    envvar="CIRCLE_BRANCH",
    help="Show only builds on specified branch (cannot be used with --all); leave empty for all",
)
@click.option(
    "--filter",
    "-f",
    "build_filter",
    type=FILTER,
    default=None,
    envvar="CIRCLE_FILTER",
    help="Show only builds with given status (cannot be used with --all); "
    f"must be one of {','.join(f.value for f in BuildFilter)}",
)
@click.pass_context
def recent_builds(ctx, limit, offset, all_builds, project, branch, build_filter):
    """Recent builds for the current project."""
    if all_builds:
        for param_name, flag in (("project", "project"), ("branch", "branch"), ("build_filter", "filter")):
            if ctx.get_parameter_source(param_name) is ParameterSource.COMMANDLINE:
                _fail(f"--{flag} cannot be used with --all")

    client = _get_client(ctx)
    try:
        if all_builds:
            builds = client.list_recent_builds(limit=limit, offset=offset)
        else:
            project = _resolve_project(project)
            builds = client.list_recent_builds_for_project(
                project.account,
                project.repository,
                branch=branch,
                status=str(build_filter) if build_filter else None,
                limit=limit,
                offset=offset,
            )
        if builds:
            click.echo(format_recent_builds(builds))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# show
# ---------------------------------------------------------------------------

def _echo_node(client: CircleCIClient, build: dict, node: int, verbose: bool) -> None:
    for step in build.get("steps") or []:
        action = select_action(step, node)
        if action is None:
            continue
        click.echo(format_step(step, action))

        if verbose and action.get("has_output"):
            try:
                outputs = client.get_action_outputs(action)
            except CircleCIError as e:
                click.echo(f"error retrieving action output: {e}", err=True)
                outputs = []
            text = format_action_output(outputs)
            if text:
                click.echo(text)
            click.echo()


@main.command()
@_project_option("Show build for specified project rather than the current")
@_build_num_option("Show details for specified build num (leave empty for latest)")
@click.option(
    "--build-node",
    "-i",
    type=int,
    default=None,
    envvar="CIRCLE_BUILD_NODE",
    help="For parallel builds, only show the build for the specified node",
)
@click.option("--verbose", "-v", is_flag=True, envvar="CIRCLE_VERBOSE", help="Show step output")
@click.pass_context
def show(ctx, project, build_num, build_node, verbose):
    """Show details for build."""
    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        build_num = _resolve_build_num(client, project, build_num)
        build = client.get_build(project.account, project.repository, build_num)

        parallel = build.get("parallel") or 1
        if build_node is not None and not 0 <= build_node < parallel:
            raise CircleCIError("VALIDATION", f"build {build_num} has no node {build_node}", 0)

        click.echo(format_build_summary(build))
        if build_node is not None:
            click.echo()
            _echo_node(client, build, build_node, verbose)
        else:
            for node in range(parallel):
                click.echo(f"\nNode {node}")
                _echo_node(client, build, node, verbose)
    except CircleCIError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# list-artifacts
# ---------------------------------------------------------------------------

@main.command(name="list-artifacts")
@_project_option("Show artifacts for specified project rather than the current")
@_build_num_option("Show artifacts for specified build num (leave empty for latest)")
@click.option(
    "--download",
    "-d",
    default=None,
    envvar="CIRCLE_DOWNLOAD_PATTERN",
    help="Download artifacts whose path matches this regular expression",
)
@click.pass_context
def list_artifacts(ctx, project, build_num, download):
    """Show artifacts for build (default to latest)."""
    client = _get_client(ctx)
    try:
        pattern = None
        if download is not None:
            try:
                pattern = re.compile(download)
            except re.error as exc:
                raise CircleCIError("VALIDATION", f"invalid download pattern {download!r}: {exc}", 0) from exc

        project = _resolve_project(project)
        build_num = _resolve_build_num(client, project, build_num)
        artifacts = client.list_build_artifacts(project.account, project.repository, build_num)
        for artifact in artifacts:
            if pattern is not None and pattern.search(artifact.get("path") or ""):
                client.download(artifact["url"], artifact["path"])
        click.echo(format_artifacts(artifacts))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# test-metadata
# ---------------------------------------------------------------------------

@main.command(name="test-metadata")
@_project_option("Show test metadata for specified project rather than the current")
@_build_num_option("Show test metadata for specified build num (leave empty for latest)")
@click.pass_context
def test_metadata(ctx, project, build_num):
    """Show test metadata for build."""
    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        build_num = _resolve_build_num(client, project, build_num)
        tests = client.list_test_metadata(project.account, project.repository, build_num)
        if tests:
            click.echo(format_test_metadata(tests))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# retry-build / cancel-build / build
# ---------------------------------------------------------------------------

@main.command(name="retry-build")
@_project_option("Retry build for specified project rather than the current")
@_build_num_option("Retry specified build num (leave empty for latest)")
@click.pass_context
def retry_build(ctx, project, build_num):
    """Retry a build."""
    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        build_num = _resolve_build_num(client, project, build_num)
        build = client.retry_build(project.account, project.repository, build_num)
        click.echo(build_url(build, ctx.obj["host"]))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


@main.command(name="cancel-build")
@_project_option("Cancel build for specified project rather than the current")
@_build_num_option("Cancel specified build num (leave empty for latest)")
@click.pass_context
def cancel_build(ctx, project, build_num):
    """Cancel a build."""
    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        build_num = _resolve_build_num(client, project, build_num)
        build = client.cancel_build(project.account, project.repository, build_num)
        click.echo(f"canceled build {build.get('build_num', build_num)}")
    except CircleCIError as e:
        _exit_with_error(ctx, e)


@main.command()
@_project_option("Trigger build for specified project rather than the current")
@click.option(
    "--branch",
    "-b",
    default=None,
    envvar="CIRCLE_BRANCH",
    help="Branch to trigger build on (leave empty for default branch)",
)
@click.pass_context
def build(ctx, project, branch):
    """Trigger a new build."""
    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        if not branch:
            branch = client.get_project(project.account, project.repository).get("default_branch")
            if not branch:
                raise CircleCIError("VALIDATION", f"project {project} has no default branch", 0)
        new_build = client.build(project.account, project.repository, branch)
        click.echo(build_url(new_build, ctx.obj["host"]))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# clear-cache
# ---------------------------------------------------------------------------

@main.command(name="clear-cache")
@_project_option("Clear cache of specified project rather than the current")
@click.pass_context
def clear_cache(ctx, project):
    """Clear the build cache."""
    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        click.echo(client.clear_cache(project.account, project.repository))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# env vars / ssh keys
# ---------------------------------------------------------------------------

@main.command(name="add-env-var")
@_project_option("Add env var to specified project rather than the current")
@click.argument("args", nargs=-1)
@click.pass_context
def add_env_var(ctx, project, args):
    """Add an environment variable to the project (expects NAME and VALUE)."""
    if len(args) != 2:
        _fail("must specify name and value")
    name, value = args

    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        client.add_env_var(project.account, project.repository, name, value)
        click.echo(f"added {name}={value}")
    except CircleCIError as e:
        _exit_with_error(ctx, e)


@main.command(name="list-env-vars")
@_project_option("List the env vars for a specified project rather than the current")
@click.pass_context
def list_env_vars(ctx, project):
    """List the environment variables for the project."""
    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        env_vars = client.list_env_vars(project.account, project.repository)
        if env_vars:
            click.echo(format_env_vars(env_vars))
    except CircleCIError as e:
        _exit_with_error(ctx, e)


@main.command(name="delete-env-var")
@_project_option("Delete env var from specified project rather than the current")
@click.argument("args", nargs=-1)
@click.pass_context
def delete_env_var(ctx, project, args):
    """Delete an environment variable from the project (expects NAME)."""
    if len(args) != 1:
        _fail("must specify name")
    name = args[0]

    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        client.delete_env_var(project.account, project.repository, name)
        click.echo(f"deleted {name}")
    except CircleCIError as e:
        _exit_with_error(ctx, e)


@main.command(name="add-ssh-key")
@_project_option("Add SSH key to specified project rather than the current")
@click.argument("args", nargs=-1)
@click.pass_context
def add_ssh_key(ctx, project, args):
    """Add an SSH key used to access external systems (expects HOSTNAME and PRIVATE_KEY)."""
    if len(args) != 2:
        _fail("must specify hostname and private key")
    hostname, private_key = args

    client = _get_client(ctx)
    try:
        project = _resolve_project(project)
        client.add_ssh_key(project.account, project.repository, hostname, private_key)
        click.echo(f"added key for {hostname}")
    except CircleCIError as e:
        _exit_with_error(ctx, e)


if __name__ == "__main__":
    main()
