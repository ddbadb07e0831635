"""Main CLI entry point for vaultdr.

This module provides the command-line interface for vaultdr, the backup,
verification, restore and DR-rehearsal tool for a single-node SQLite
Vaultwarden deployment.

The CLI is built using Click. Every command is safe to run from cron and
reports its result through its exit code: 0 for success, 1 for success with
warnings or advisories, 2 for failure.
"""

import os
import signal
from typing import Any, List, Optional

import click

from vaultdr import __version__
from vaultdr.utils.errors import ErrorHandler
from vaultdr.utils.logging import setup_logging

STATUS_ICONS = {
    "PASS": "✓",
    "DONE": "✓",
    "SUCCESS": "✓",
    "WARNING": "⚠",
    "SKIPPED": "-",
    "PENDING": " ",
    "FAILURE": "✗",
    "FAILED": "✗",
    "FAIL": "✗",
    "PARTIAL": "⚠",
}


def _terminate(signum: int, frame: Any) -> None:
    # Unwinds through finally blocks and context managers
    raise SystemExit(128 + signum)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--dry-run", is_flag=True, help="Show what would be done without executing")
@click.option("--log-file", help="Log to file in addition to console")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="Path to vaultdr.yml")
@click.option(
    "--project-root",
    type=click.Path(file_okay=False),
    help="Deployment directory (default: current directory)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    dry_run: bool,
    log_file: Optional[str],
    config_path: Optional[str],
    project_root: Optional[str],
) -> None:
    """vaultdr - Backup and disaster recovery for Vaultwarden on SQLite.

    Produces verified full backups, restores them stage by stage, and
    rehearses recovery against a throwaway database so you find out a
    backup is bad before you need it.

    Args:
        ctx: Click context object containing shared state
        verbose: Enable verbose output for detailed logging
        dry_run: Show what would be done without executing commands
        log_file: Optional path to log file for additional logging
        config_path: Optional explicit configuration file
        project_root: Deployment directory
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["dry_run"] = dry_run
    ctx.obj["log_file"] = log_file
    ctx.obj["config_path"] = config_path
    ctx.obj["project_root"] = project_root
    ctx.obj["error_handler"] = ErrorHandler(verbose=verbose)

    # Setup logging
    setup_logging(verbose=verbose, log_file=log_file)

    signal.signal(signal.SIGTERM, _terminate)


def _load_config(ctx: click.Context) -> Any:
    from vaultdr.config import ConfigManager, ConfigValidationError
    from vaultdr.utils.errors import ConfigurationError, create_error_suggestions, format_validation_errors

    manager = ConfigManager(project_root=ctx.obj["project_root"], config_path=ctx.obj["config_path"])
    try:
        return manager.load()
    except ConfigValidationError as e:
        raise ConfigurationError(
            "Configuration is invalid",
            details=format_validation_errors(e.errors),
            suggestions=create_error_suggestions("configuration_invalid"),
        ) from e


def _icon(value: str) -> str:
    return STATUS_ICONS.get(value, "?")


def _echo_list(title: str, items: List[str], err: bool = False) -> None:
    if not items:
        return
    click.echo(f"\n{title}:", err=err)
    for item in items:
        click.echo(f"  • {item}", err=err)


def _echo_outcome(outcome: Any) -> None:
    from vaultdr.utils.files import human_size

    if outcome.skipped_reason:
        click.echo(f"- Skipped: {outcome.skipped_reason}")
        return

    status = outcome.status.value
    if outcome.archive is not None:
        click.echo(f"{_icon(status)} Backup {status.lower()}: {outcome.archive.name}")
        click.echo(f"  Archive: {outcome.archive.path} ({human_size(outcome.archive.size_bytes)})")
        click.echo(f"  Components: {', '.join(outcome.archive.components)}")
    elif outcome.artifacts:
        click.echo(f"{_icon(status)} Database backup {status.lower()}")
        for path in outcome.artifacts:
            click.echo(f"  {path}")
    else:
        click.echo(f"✗ Backup failed at stage {outcome.failed_stage}", err=True)
        if outcome.error:
            click.echo(f"  {outcome.error}", err=True)

    if outcome.replication is not None:
        replication = outcome.replication
        if replication.status.value == "UPLOADED":
            click.echo(f"  Remote: {replication.remote_uri}")
        elif replication.status.value == "FAILED":
            click.echo(f"  ⚠ Remote upload failed: {replication.error}", err=True)

    if outcome.duration_seconds:
        click.echo(f"  Duration: {outcome.duration_seconds}s")


@cli.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.pass_context
def backup(ctx: click.Context) -> None:
    """Create, list and expire backups."""
    pass


@backup.command("run")
@click.option("--force", is_flag=True, help="Ignore the minimum interval between backups")
@click.pass_context
def backup_run(ctx: click.Context, force: bool) -> None:
    """Create a full backup archive.

    Captures the database, data directory, configuration, TLS material and a
    system snapshot into one checksummed archive, then uploads it to the
    configured remote.

    Exit codes: 0 success, 1 partial (upload failed), 2 failed.
    """
    try:
        config = _load_config(ctx)

        if ctx.obj["dry_run"]:
            click.echo(f"DRY RUN: Would create a full backup in {config.paths.backup_dir}")
            click.echo(f"DRY RUN: Database: {config.paths.database}")
            click.echo(f"DRY RUN: Remote: {config.remote.name or 'not configured'}")
            return

        from vaultdr.backup import BackupManager

        click.echo("Creating full backup...")
        outcome = BackupManager(config, verbose=ctx.obj["verbose"]).run_backup(force=force)
        _echo_outcome(outcome)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Full backup")

    ctx.exit(outcome.exit_code)


@backup.command("database")
@click.option("--force", is_flag=True, help="Ignore the minimum interval between backups")
@click.pass_context
def backup_database(ctx: click.Context, force: bool) -> None:
    """Create a compressed, optionally encrypted database backup.

    Exit codes: 0 success, 1 partial (upload failed), 2 failed.
    """
    try:
        config = _load_config(ctx)

        if ctx.obj["dry_run"]:
            click.echo(f"DRY RUN: Would back up {config.paths.database} into {config.paths.db_backup_dir}")
            click.echo(f"DRY RUN: Encryption: {config.backup.encryption}")
            return

        from vaultdr.backup import BackupManager

        click.echo("Creating database backup...")
        outcome = BackupManager(config, verbose=ctx.obj["verbose"]).run_database_backup(force=force)
        _echo_outcome(outcome)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Database backup")

    ctx.exit(outcome.exit_code)


@backup.command("list")
@click.pass_context
def backup_list(ctx: click.Context) -> None:
    """List full archives and database backups, newest first."""
    try:
        from datetime import datetime

        from vaultdr.backup import BackupStorage
        from vaultdr.utils.files import human_size

        config = _load_config(ctx)
        storage = BackupStorage(config, verbose=ctx.obj["verbose"])
        now = datetime.now()

        archives = storage.list_full_backups()
        click.echo(f"Full backups ({len(archives)}):")
        for path in archives:
            age = (now - datetime.fromtimestamp(os.path.getmtime(path))).total_seconds() / 3600
            click.echo(f"  {os.path.basename(path):<50} {human_size(os.path.getsize(path)):>10} {age:>8.1f}h")

        db_backups = storage.list_database_backups()
        click.echo(f"\nDatabase backups ({len(db_backups)}):")
        for item in db_backups:
            click.echo(
                f"  {item.name:<50} {human_size(item.size_bytes):>10} {item.age_hours(now):>8.1f}h  {item.format}"
            )

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Backup listing")


@backup.command("cleanup")
@click.option("--days", type=click.IntRange(min=0), help="Retention in days (default: backup.retention_days)")
@click.pass_context
def backup_cleanup(ctx: click.Context, days: Optional[int]) -> None:
    """Delete backups older than the retention period."""
    try:
        from vaultdr.backup import BackupStorage

        config = _load_config(ctx)
        dry_run = ctx.obj["dry_run"]
        removed = BackupStorage(config, verbose=ctx.obj["verbose"]).cleanup(days=days, dry_run=dry_run)

        prefix = "DRY RUN: Would remove" if dry_run else "Removed"
        for path in removed:
            click.echo(f"{prefix} {path}")
        click.echo(f"✓ {len(removed)} expired file(s) {'found' if dry_run else 'removed'}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Retention cleanup")


@cli.command()
@click.argument("archive", required=False, type=click.Path())
@click.option("--latest", is_flag=True, help="Validate the newest archive")
@click.option("--all", "validate_all", is_flag=True, help="Validate every archive")
@click.option("--deep", is_flag=True, help="Extract and inspect every component")
@click.pass_context
def validate(ctx: click.Context, archive: Optional[str], latest: bool, validate_all: bool, deep: bool) -> None:
    """Validate backup archives.

    Checks checksums, gzip/tar structure and declared components. With
    --deep, also extracts the archive into scratch space and loads the
    database dump into a throwaway database.

    Exit codes: 0 pass, 1 pass with warnings, 2 fail (worst over all archives).
    """
    if sum(bool(x) for x in (archive, latest, validate_all)) > 1:
        raise click.BadParameter("Use only one of ARCHIVE, --latest or --all")

    try:
        from vaultdr.backup import BackupStorage, BackupValidator
        from vaultdr.utils.errors import PreconditionError, create_error_suggestions

        config = _load_config(ctx)
        storage = BackupStorage(config, verbose=ctx.obj["verbose"])

        if archive:
            paths = [storage.resolve_archive(archive)]
        elif validate_all:
            paths = storage.list_full_backups()
        else:
            latest_path = storage.latest_full_backup()
            paths = [latest_path] if latest_path else []

        if not paths:
            raise PreconditionError(
                "No backup archives found",
                details=", ".join(storage.full_backup_locations()),
                suggestions=create_error_suggestions("no_backups_found"),
            )

        validator = BackupValidator(config, verbose=ctx.obj["verbose"])
        exit_code = 0
        for path, report in zip(paths, validator.validate_many(paths, deep=deep)):
            click.echo(f"\n{os.path.basename(path)}:")
            for check in report.checks:
                detail = f" ({check.detail})" if check.detail else ""
                click.echo(f"  {_icon(check.status.value)} {check.name}{detail}")
            click.echo(f"  Verdict: {report.verdict.value}{' with warnings' if report.has_warnings else ''}")
            exit_code = max(exit_code, report.exit_code)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Backup validation")

    ctx.exit(exit_code)


@cli.command()
@click.argument("archive", type=click.Path())
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--allow-running", is_flag=True, help="Restore even if the service is running")
@click.pass_context
def restore(ctx: click.Context, archive: str, yes: bool, allow_running: bool) -> None:
    """Restore a full backup archive onto this host.

    The application service must be stopped. The current settings.env is kept
    as settings.env.backup.

    Exit codes: 0 done, 1 done with advisories, 2 failed.
    """
    try:
        from vaultdr.backup import BackupStorage, RecoveryManager
        from vaultdr.backup.models import RestoreStage

        config = _load_config(ctx)
        archive = BackupStorage(config).resolve_archive(archive)
        recovery = RecoveryManager(config, verbose=ctx.obj["verbose"])

        if ctx.obj["dry_run"]:
            recovery.check_preconditions(archive, allow_running=allow_running)
            click.echo(f"DRY RUN: Would restore {archive} into {config.paths.project_root}")
            for stage in RestoreStage:
                click.echo(f"DRY RUN:   {stage.value}")
            return

        if not yes:
            click.confirm(
                f"This replaces the database and configuration in {config.paths.project_root}. Continue?",
                abort=True,
            )

        click.echo(f"Restoring {os.path.basename(archive)}...")
        plan = recovery.restore(archive, allow_running=allow_running)

        for status in plan.stages:
            detail = f" ({status.detail})" if status.detail else ""
            click.echo(f"  {_icon(status.state.value)} {status.stage.value}{detail}")
        _echo_list("Advisories", plan.advisories)

        if plan.completed:
            click.echo("\n✓ Restore completed")
            click.echo("Start the services and verify the web vault before reopening access.")
        else:
            click.echo(f"\n✗ Restore failed at {plan.failed_stage.value}", err=True)

    except click.Abort:
        raise
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Restore")

    ctx.exit(plan.exit_code)


@cli.command()
@click.option(
    "--automated/--interactive",
    default=False,
    help="Run without prompts (for cron) or ask before starting",
)
@click.pass_context
def rehearse(ctx: click.Context, automated: bool) -> None:
    """Rehearse disaster recovery against the newest database backup.

    Restores the backup into a throwaway database, checks integrity and
    essential tables, runs a query battery and writes a JSON report into the
    log directory.

    Exit codes: 0 success, 1 warning, 2 failure.
    """
    try:
        from vaultdr.backup import BackupStorage, RehearsalRunner

        config = _load_config(ctx)

        if ctx.obj["dry_run"] or not automated:
            backups = BackupStorage(config).list_database_backups()
            newest = backups[0].path if backups else "none found"
            if ctx.obj["dry_run"]:
                click.echo(f"DRY RUN: Would rehearse recovery of {newest}")
                click.echo(f"DRY RUN: Report directory: {config.paths.log_dir}")
                return
            click.echo(f"Newest database backup: {newest}")
            click.confirm("Run the DR rehearsal now?", default=True, abort=True)

        report = RehearsalRunner(config, verbose=ctx.obj["verbose"]).run()

        stats = report.database_stats
        perf = report.performance
        click.echo(f"\n{_icon(report.test_result.value)} DR rehearsal {report.test_result.value}")
        if stats:
            click.echo(
                f"  Tables: {stats['total_tables']}, users: {stats['users_count']}, "
                f"organizations: {stats['organizations_count']}, ciphers: {stats['ciphers_count']}"
            )
            click.echo(
                f"  Restore: {perf['restoration_time_seconds']}s, "
                f"queries: {perf['query_test_passed']}/{perf['query_test_total']}"
            )
        _echo_list("Errors", report.errors, err=True)
        _echo_list("Warnings", report.warnings)
        _echo_list("Recommendations", report.recommendations)
        click.echo(f"\nReport: {report.report_path}")

    except click.Abort:
        raise
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "DR rehearsal")

    ctx.exit(report.test_result.exit_code)


@cli.command()
@click.argument("archive", type=click.Path())
@click.option("--yes", "-y", is_flag=True, help="Run non-interactively")
@click.pass_context
def rebuild(ctx: click.Context, archive: str, yes: bool) -> None:
    """Rebuild the deployment on new hardware from a full backup.

    Checks the host, provisions Docker when missing, restores the archive,
    starts the services and waits for the health endpoint.
    """
    try:
        from vaultdr.backup import BackupStorage, RebuildCoordinator

        config = _load_config(ctx)
        archive = BackupStorage(config).resolve_archive(archive)
        coordinator = RebuildCoordinator(config, verbose=ctx.obj["verbose"])

        if ctx.obj["dry_run"]:
            click.echo(f"DRY RUN: Would rebuild {config.paths.project_root} from {archive}")
            _echo_list("Environment", coordinator.check_environment() or ["host meets requirements"])
            return

        if not yes:
            click.confirm(f"Rebuild this host from {os.path.basename(archive)}?", abort=True)

        outcome = coordinator.rebuild(archive, interactive=not yes)

        if outcome.plan is not None:
            for status in outcome.plan.stages:
                click.echo(f"  {_icon(status.state.value)} {status.stage.value}")
            _echo_list("Restore advisories", outcome.plan.advisories)
        _echo_list("Advisories", outcome.advisories)

        if outcome.healthy:
            click.echo(f"\n✓ Rebuild complete: {outcome.health_detail}")
        else:
            click.echo(f"\n✗ Rebuild incomplete: {outcome.health_detail or 'restore failed'}", err=True)

    except click.Abort:
        raise
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Rebuild")

    ctx.exit(outcome.exit_code)


@cli.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.pass_context
def schedule(ctx: click.Context) -> None:
    """Show or install the cron schedule."""
    pass


@schedule.command("show")
@click.pass_context
def schedule_show(ctx: click.Context) -> None:
    """Print the crontab lines vaultdr would install."""
    try:
        from vaultdr.backup import BackupScheduler

        config = _load_config(ctx)
        for line in BackupScheduler(config, config_path=ctx.obj["config_path"]).render():
            click.echo(line)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Schedule rendering")


@schedule.command("install")
@click.pass_context
def schedule_install(ctx: click.Context) -> None:
    """Merge the vaultdr jobs into the current user's crontab."""
    try:
        from vaultdr.backup import BackupScheduler

        config = _load_config(ctx)
        scheduler = BackupScheduler(config, config_path=ctx.obj["config_path"])
        content = scheduler.install(dry_run=ctx.obj["dry_run"])

        if ctx.obj["dry_run"]:
            click.echo("DRY RUN: Would install crontab:")
            click.echo(content)
        else:
            click.echo(f"✓ Installed {len(scheduler.jobs())} cron jobs")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Schedule installation")


@cli.group("config", context_settings={"help_option_names": ["-h", "--help"]})
@click.pass_context
def config_group(ctx: click.Context) -> None:
    """Inspect the effective configuration."""
    pass


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration with secrets redacted."""
    try:
        from vaultdr.config import ConfigManager

        config = _load_config(ctx)
        manager = ConfigManager(project_root=ctx.obj["project_root"], config_path=ctx.obj["config_path"])
        click.echo(manager.dump(config))

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Configuration display")


@config_group.command("validate")
@click.pass_context
def config_validate(ctx: click.Context) -> None:
    """Validate vaultdr.yml and environment overrides."""
    try:
        config = _load_config(ctx)
        click.echo(f"✓ Configuration is valid ({config.paths.project_root})")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Configuration validation")


if __name__ == "__main__":
    cli()
