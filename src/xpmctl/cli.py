"""Typer-powered command line for ``xpmctl``.

Commands are grouped by the object they act on:

* ``version``: list, status, deploy, job inspection, mark latest, delete,
  raw file access and tree verification.
* ``instance``: per-instance version pointer (show, update, rollback,
  history) and the default instance directory (list, add, add-user).
* ``system``: manifest bootstrap and operator roster.
* ``config``: effective configuration.

Every command runs inside a :class:`~xpmctl.logging.StructuredLogger`
operation so its outcome lands in ``operations.jsonl``.
"""
from __future__ import annotations

import json
import subprocess
import sys
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import XpmctlError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import DeploymentJob
from .service import VersionService

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to xpmctl's YAML config file.",
)

ACTOR_OPTION = typer.Option(
    None,
    "--as",
    help="Identifier of the acting user (operator or instance admin).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the response body as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Core version deployment and instance version lifecycle CLI.

        Deploys new core versions from upstream into versioned directories,
        keeps the version manifest consistent and moves tenant instances
        between versions with an auditable history.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    service: VersionService
    locks: LockManager
    logger: StructuredLogger


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    service = VersionService(config, locks=locks)
    runtime = RuntimeContext(config=config, service=service, locks=locks, logger=logger)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the xpmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"xpmctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _service_error(op: OperationScope, exc: XpmctlError) -> NoReturn:
    """Terminate the command for a service error, using its kind and exit code."""
    _command_error(op, f"{exc.kind}: {exc}", rc=int(exc.rc), errors=[str(exc)])


def _emit_json(payload: object) -> None:
    console.print_json(data=payload)


def _render_job(job: DeploymentJob) -> None:
    status_style = {
        "succeeded": "green",
        "failed": "red",
        "running": "yellow",
        "queued": "cyan",
    }.get(job.status.value, "white")
    console.print(
        f"Job [bold]{job.id}[/bold] for version {job.version}: "
        f"[{status_style}]{job.status.value}[/{status_style}]"
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for step in job.steps:
        table.add_row(str(step.step), step.name, step.status, step.detail or "")
    console.print(table)
    if job.error:
        console.print(f"[red]Error:[/red] {job.error}")


def _record_job_steps(op: OperationScope, job: DeploymentJob) -> None:
    for step in job.steps:
        op.add_step(f"deploy.step{step.step}", status=step.status, detail=step.name)


versions_app = typer.Typer(help="Deploy and manage core versions.")
instances_app = typer.Typer(help="Manage instance versions and the instance directory.")
system_app = typer.Typer(help="Bootstrap xpmctl state.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(versions_app, name="version")
app.add_typer(instances_app, name="instance")
app.add_typer(system_app, name="system")
app.add_typer(config_app, name="config")


# ----------------------------------------------------------------------
# version
# ----------------------------------------------------------------------
@versions_app.command("list")
def version_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List versions from the manifest with live usage counts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version list",
        args={"json": json_output},
        target={"kind": "version", "scope": "manifest"},
    ) as op:
        try:
            payload = runtime.service.list_versions()
        except XpmctlError as exc:
            _service_error(op, exc)

        if json_output:
            _emit_json(payload)
            op.success("Reported version list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Status")
        table.add_column("Released")
        table.add_column("Instances", justify="right")
        table.add_column("Files", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Description")

        versions = payload.get("versions") or []
        if not isinstance(versions, list) or not versions:
            table.add_row("(none)", "", "", "", "", "", "")
        else:
            for entry in versions:
                stats = entry.get("stats") or {}
                status = str(entry.get("status", ""))
                table.add_row(
                    str(entry.get("version", "")),
                    f"[green]{status}[/green]" if status == "latest" else status,
                    str(entry.get("releaseDate") or ""),
                    str(stats.get("instancesUsing", 0)),
                    str(stats.get("fileCount", 0)),
                    str(stats.get("size", 0)),
                    str(entry.get("description") or ""),
                )
        console.print(table)
        op.success("Reported version list.", changed=0)


@versions_app.command("status")
def version_status(
    ctx: typer.Context,
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Compare the upstream manifest with the local manifest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version status",
        args={"json": json_output, "actor": actor},
        target={"kind": "version", "scope": "remote"},
    ) as op:
        try:
            payload = runtime.service.check_deployment_status(actor)
        except XpmctlError as exc:
            _service_error(op, exc)

        if json_output:
            _emit_json(payload)
        else:
            marker = "[green]yes[/green]" if payload["hasNewVersion"] else "no"
            console.print(f"Remote latest: [bold]{payload['remoteLatest']}[/bold]")
            console.print(f"Local latest:  [bold]{payload['localLatest']}[/bold]")
            console.print(f"New version available: {marker}")
        op.success(
            "Reported deployment status.",
            changed=0,
            context={
                "hasNewVersion": payload["hasNewVersion"],
                "remoteLatest": payload["remoteLatest"],
                "localLatest": payload["localLatest"],
            },
        )


@versions_app.command("deploy")
def version_deploy(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Version to deploy (MAJOR.MINOR.PATCH)."),
    description: str | None = typer.Option(
        None,
        "--description",
        "-d",
        help="Release notes for the manifest entry (defaults to the upstream text).",
    ),
    actor: str | None = ACTOR_OPTION,
    detach: bool = typer.Option(
        False,
        "--detach",
        help="Hand the job to a background worker process and return immediately.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Deploy a new version from the upstream source."""
    runtime = _get_runtime(ctx)
    args = {"version": version, "description": description, "detach": detach, "actor": actor}
    with runtime.logger.operation(
        "version deploy",
        args=args,
        target={"kind": "version", "version": version},
    ) as op:
        try:
            ack = runtime.service.deploy_version(
                version,
                description,
                actor,
                submit=not detach,
            )
        except XpmctlError as exc:
            _service_error(op, exc)
        job_id = str(ack["jobId"])
        op.add_step("deploy.queued", status="success", detail=job_id)

        if detach:
            try:
                _spawn_worker(runtime, job_id)
            except OSError as exc:
                message = f"Failed to start the deployment worker: {exc}"
                runtime.service.orchestrator.fail_job(job_id, message)
                _command_error(op, message, rc=int(ExitCode.ENVIRONMENT))
            op.add_step("deploy.detached", status="success", detail=job_id)
            if json_output:
                _emit_json(ack)
            else:
                console.print(
                    f"[green]Deploying version {ack['version']}[/green] as job {job_id}. "
                    f"Track it with `xpmctl version job {job_id}`."
                )
            op.success("Deployment handed to background worker.", changed=1, context=ack)
            return

        if not json_output:
            console.print(f"[cyan]Deploying version {ack['version']}[/cyan] (job {job_id})...")
        job = runtime.service.orchestrator.wait(job_id)
        _record_job_steps(op, job)
        if json_output:
            _emit_json({**ack, "job": job.to_dict()})
        else:
            _render_job(job)
        if job.error:
            op.error(job.error, rc=int(ExitCode.ENVIRONMENT))
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT))
        op.success(f"Deployed version {job.version}.", changed=1, context={"jobId": job_id})


def _spawn_worker(runtime: RuntimeContext, job_id: str) -> None:
    cmd = [
        sys.executable,
        "-m",
        "xpmctl",
        "--config-file",
        str(runtime.config.config_file),
        "--lock-timeout",
        str(runtime.config.lock_timeout),
        "version",
        "run-job",
        job_id,
    ]
    subprocess.Popen(  # noqa: S603
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


@versions_app.command("run-job")
def version_run_job(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Identifier of a queued deployment job."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Execute a queued deployment job in this process."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version run-job",
        args={"job_id": job_id},
        target={"kind": "job", "id": job_id},
    ) as op:
        try:
            job = runtime.service.run_job(job_id)
        except XpmctlError as exc:
            _service_error(op, exc)
        _record_job_steps(op, job)
        if json_output:
            _emit_json(job.to_dict())
        else:
            _render_job(job)
        if job.error:
            op.error(job.error, rc=int(ExitCode.ENVIRONMENT))
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT))
        op.success(f"Deployed version {job.version}.", changed=1)


@versions_app.command("job")
def version_job(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Deployment job identifier."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the progress of a deployment job."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version job",
        args={"job_id": job_id, "json": json_output},
        target={"kind": "job", "id": job_id},
    ) as op:
        try:
            job = runtime.service.get_job(job_id)
        except XpmctlError as exc:
            _service_error(op, exc)
        if json_output:
            _emit_json(job.to_dict())
        else:
            _render_job(job)
        op.success("Reported deployment job.", changed=0, context={"status": job.status.value})


@versions_app.command("mark-latest")
def version_mark_latest(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Version to promote to latest."),
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Promote a version to latest, demoting the previous latest to stable."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version mark-latest",
        args={"version": version, "actor": actor},
        target={"kind": "version", "version": version},
    ) as op:
        try:
            result = runtime.service.mark_latest(version, actor)
        except XpmctlError as exc:
            _service_error(op, exc)
        op.set_lock_wait_ms(int(result.pop("lockWaitMs", 0)))
        changed = bool(result.pop("changed", False))
        if json_output:
            _emit_json(result)
        elif changed:
            console.print(f"[green]Version {result['latestVersion']} is now latest.[/green]")
        else:
            console.print(f"Version {result['latestVersion']} is already latest.")
        op.success(
            "Marked version latest." if changed else "Version already latest.",
            changed=1 if changed else 0,
        )


@versions_app.command("delete")
def version_delete(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Version to delete."),
    actor: str | None = ACTOR_OPTION,
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Skip the confirmation prompt (non-interactive mode).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete an unused, non-latest version and its file tree."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version delete",
        args={"version": version, "actor": actor, "yes": yes},
        target={"kind": "version", "version": version},
    ) as op:
        if not yes and not typer.confirm(f"Delete version {version} and its files?"):
            op.warning("Deletion cancelled by user.", changed=0)
            raise typer.Exit(code=1)
        try:
            result = runtime.service.delete_version(version, actor)
        except XpmctlError as exc:
            _service_error(op, exc)
        op.set_lock_wait_ms(int(result.pop("lockWaitMs", 0)))
        if json_output:
            _emit_json(result)
        else:
            console.print(f"[green]Deleted version {version}.[/green]")
        op.success(f"Deleted version {version}.", changed=2)


@versions_app.command("file")
def version_file(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Version whose tree holds the file."),
    path: str = typer.Argument(..., help="Path relative to the version directory."),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        dir_okay=False,
        help="Write the file here instead of standard output.",
    ),
) -> None:
    """Print the raw content of a file from a version tree."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version file",
        args={"version": version, "path": path, "output": output},
        target={"kind": "version", "version": version},
    ) as op:
        try:
            content = runtime.service.get_core_file(version, path)
        except XpmctlError as exc:
            _service_error(op, exc)
        if output is not None:
            output.write_bytes(content)
        else:
            typer.echo(content, nl=False)
        op.success("Served core file.", changed=0, context={"bytes": len(content)})


@versions_app.command("verify")
def version_verify(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Version to verify."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Re-hash a version tree and compare it with its content manifest."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version verify",
        args={"version": version, "json": json_output},
        target={"kind": "version", "version": version},
    ) as op:
        try:
            report = runtime.service.verify_version(version)
        except XpmctlError as exc:
            _service_error(op, exc)

        if json_output:
            _emit_json(report.to_dict())
        else:
            verdict = "[green]intact[/green]" if report.ok else "[red]modified[/red]"
            console.print(f"Version {report.version}: {verdict} ({report.checked} files checked)")
            for label, items in (
                ("missing", report.missing),
                ("modified", report.modified),
                ("unexpected", report.unexpected),
            ):
                for item in items:
                    console.print(f"  {label}: {item}")
        if not report.ok:
            problems = [
                *(f"missing: {item}" for item in report.missing),
                *(f"modified: {item}" for item in report.modified),
                *(f"unexpected: {item}" for item in report.unexpected),
            ]
            op.error("Version tree does not match its content manifest.", errors=problems, rc=3)
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT))
        op.success("Version tree verified.", changed=0)


# ----------------------------------------------------------------------
# instance
# ----------------------------------------------------------------------
@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances from the directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        try:
            entries = runtime.service.directory.list_instances()
        except XpmctlError as exc:
            _service_error(op, exc)
        if json_output:
            _emit_json({"instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Subdomain")
        table.add_column("Version")
        table.add_column("Users", justify="right")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            users = entry.get("users") or []
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("name", "") or ""),
                str(entry.get("subdomain", "") or ""),
                str(entry.get("coreVersion", "") or ""),
                str(len(users) if isinstance(users, list) else 0),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("version")
def instance_version(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance identifier."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the core version an instance runs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance version",
        args={"instance": instance_id},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            payload = runtime.service.get_instance_version(instance_id)
        except XpmctlError as exc:
            _service_error(op, exc)
        if json_output:
            _emit_json(payload)
        else:
            console.print(
                f"Instance [bold]{payload['instanceId']}[/bold] "
                f"({payload['subdomain']}) runs version {payload['currentVersion']}"
            )
        op.success("Reported instance version.", changed=0)


@instances_app.command("update")
def instance_update(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance identifier."),
    target_version: str = typer.Argument(..., help="Version to move the instance to."),
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Move an instance to another manifest version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance update",
        args={"instance": instance_id, "target": target_version, "actor": actor},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            result = runtime.service.update_instance_version(instance_id, target_version, actor)
        except XpmctlError as exc:
            _service_error(op, exc)
        op.set_lock_wait_ms(result.lock_wait_ms)
        op.add_step("history.append", status="success", detail=str(result.entry.id))
        _report_transition(result.to_dict(), json_output=json_output)
        op.success(result.message, changed=2, context={"historyId": result.entry.id})


@instances_app.command("rollback")
def instance_rollback(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance identifier."),
    actor: str | None = ACTOR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Return an instance to the version it ran before its last update."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance rollback",
        args={"instance": instance_id, "actor": actor},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            result = runtime.service.rollback_instance_version(instance_id, actor)
        except XpmctlError as exc:
            _service_error(op, exc)
        op.set_lock_wait_ms(result.lock_wait_ms)
        op.add_step("history.append", status="success", detail=str(result.entry.id))
        _report_transition(result.to_dict(), json_output=json_output)
        op.success(result.message, changed=2, context={"historyId": result.entry.id})


def _report_transition(payload: Mapping[str, object], *, json_output: bool) -> None:
    if json_output:
        _emit_json(dict(payload))
        return
    console.print(f"[green]{payload['message']}[/green]")


@instances_app.command("history")
def instance_history(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance identifier."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the version transitions of an instance, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance history",
        args={"instance": instance_id, "json": json_output},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            entries = runtime.service.instance_history(instance_id)
        except XpmctlError as exc:
            _service_error(op, exc)
        if json_output:
            _emit_json(entries)
            op.success("Reported instance history as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", justify="right")
        table.add_column("From")
        table.add_column("To", style="bold")
        table.add_column("Status")
        table.add_column("By")
        table.add_column("Created")
        table.add_column("Notes")
        if not entries:
            table.add_row("(none)", "", "", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("fromVersion") or ""),
                str(entry.get("toVersion") or ""),
                str(entry.get("status") or ""),
                str(entry.get("actor") or ""),
                str(entry.get("createdAt") or ""),
                str(entry.get("notes") or ""),
            )
        console.print(table)
        op.success("Reported instance history.", changed=0)


@instances_app.command("add")
def instance_add(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance identifier."),
    name: str | None = typer.Option(None, "--name", help="Display name (defaults to the id)."),
    subdomain: str | None = typer.Option(
        None,
        "--subdomain",
        help="Subdomain (defaults to the id).",
    ),
    core_version: str | None = typer.Option(
        None,
        "--core-version",
        help="Initial core version (defaults to the manifest's latest).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Register an instance in the default directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance add",
        args={"instance": instance_id, "core_version": core_version},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            with runtime.locks.mutate_instances([instance_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                record = runtime.service.add_instance(
                    instance_id,
                    name=name or instance_id,
                    subdomain=subdomain or instance_id,
                    core_version=core_version,
                )
        except XpmctlError as exc:
            _service_error(op, exc)
        if json_output:
            _emit_json(record)
        else:
            console.print(
                f"[green]Registered instance {record['id']} on version "
                f"{record['coreVersion']}.[/green]"
            )
        op.success("Instance registered.", changed=1)


@instances_app.command("add-user")
def instance_add_user(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance identifier."),
    user_id: str = typer.Argument(..., help="User identifier."),
    email: str = typer.Option("", "--email", help="User e-mail address."),
    role: str = typer.Option("user", "--role", help="Role on the instance: admin or user."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Add a user to an instance roster (or change their role)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance add-user",
        args={"instance": instance_id, "user": user_id, "role": role},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            user = runtime.service.add_instance_user(instance_id, user_id, email=email, role=role)
        except XpmctlError as exc:
            _service_error(op, exc)
        if json_output:
            _emit_json(user)
        else:
            console.print(f"[green]User {user['id']} is {user['role']} on {instance_id}.[/green]")
        op.success("Instance user saved.", changed=1)


# ----------------------------------------------------------------------
# system
# ----------------------------------------------------------------------
@system_app.command("init")
def system_init(
    ctx: typer.Context,
    seed_version: str = typer.Option(
        ...,
        "--seed-version",
        help="Version recorded as the initial latest release.",
    ),
    description: str = typer.Option(
        "Initial release",
        "--description",
        "-d",
        help="Description of the seed version.",
    ),
    operator: str | None = typer.Option(
        None,
        "--operator",
        help="Register this user id as the first operator.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create the version manifest with a seed version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "system init",
        args={"seed_version": seed_version, "operator": operator},
        target={"kind": "system", "scope": "manifest"},
    ) as op:
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                manifest = runtime.service.bootstrap(
                    seed_version,
                    description=description,
                    operator=operator,
                )
        except XpmctlError as exc:
            _service_error(op, exc)
        op.add_step("manifest.write", status="success", detail=str(runtime.config.manifest_file))
        if operator:
            op.add_step("operators.add", status="success", detail=operator)
        if json_output:
            _emit_json(manifest)
        else:
            console.print(
                f"[green]Initialised manifest at {runtime.config.manifest_file} "
                f"with version {manifest['latest']}.[/green]"
            )
        op.success("Manifest bootstrapped.", changed=2 if operator else 1)


@system_app.command("add-operator")
def system_add_operator(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier."),
    email: str = typer.Option("", "--email", help="Operator e-mail address."),
) -> None:
    """Allow a user to deploy and manage versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "system add-operator",
        args={"user": user_id},
        target={"kind": "system", "scope": "operators"},
    ) as op:
        try:
            runtime.service.add_operator(user_id, email=email)
        except XpmctlError as exc:
            _service_error(op, exc)
        console.print(f"[green]{user_id} is now an operator.[/green]")
        op.success("Operator saved.", changed=1)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
