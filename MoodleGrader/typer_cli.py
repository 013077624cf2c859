#!/usr/bin/env python
"""
Typer front-end for moodlegrader.
"""

from __future__ import annotations

import dataclasses
import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path

import typer
from dotenv import load_dotenv

from moodle_interface.backends import MoodleBackend
from moodle_interface.exceptions import MoodleError
from MoodleGrader import __version__
from MoodleGrader.config import GraderConfig
from MoodleGrader.exceptions import (
    ConfigError,
    MoodleGraderError,
    PipelineAborted,
    RunCancelled,
)
from MoodleGrader.export import write_submissions
from MoodleGrader.orchestrator import GradingOrchestrator
from MoodleGrader.report import load_grade_results

EXIT_FAILURE = 1
EXIT_ABORTED = 3
EXIT_CANCELLED = 130

app = typer.Typer(
    add_completion=True,
    no_args_is_help=True,
    help="Grade Moodle assignment submissions with an external grader.",
)


@dataclasses.dataclass
class _Settings:
    base_url: str | None = None
    username: str | None = None
    password: str | None = None
    env: str | None = None


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"moodlegrader {__version__}")
    raise typer.Exit()


def _enable_debug_logging() -> None:
    logging.getLogger().setLevel(logging.DEBUG)
    for handler in logging.getLogger().handlers:
        handler.setLevel(logging.DEBUG)
    for logger_name in ["MoodleGrader", "moodle_interface", "__main__"]:
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.DEBUG)
        for handler in logger.handlers:
            handler.setLevel(logging.DEBUG)


@app.callback()
def _app_callback(
    ctx: typer.Context,
    base_url: str | None = typer.Option(
        None, "--base-url", "-b", envvar="MOODLE_BASE_URL", help="Moodle site URL."
    ),
    username: str | None = typer.Option(
        None, "--username", "-u", envvar="MOODLE_USERNAME", help="Moodle user name."
    ),
    password: str | None = typer.Option(
        None, "--password", "-p", envvar="MOODLE_PASSWORD", help="Moodle password."
    ),
    env: str = typer.Option(str(Path.home() / ".env"), "--env", help="Path to .env file."),
    debug: bool = typer.Option(False, "--debug", help="Set logging level to debug."),
    version: bool = typer.Option(
        False,
        "--version",
        is_eager=True,
        callback=_version_callback,
        help="Show version and exit.",
    ),
) -> None:
    del version
    _configure_runtime(env=env, debug=debug)
    ctx.obj = _Settings(base_url=base_url, username=username, password=password, env=env)


@contextmanager
def _error_boundary():
    try:
        yield
    except RunCancelled as exc:
        typer.secho(str(exc), fg=typer.colors.YELLOW, err=True)
        if exc.report is not None:
            typer.echo(exc.report.render())
        raise typer.Exit(code=EXIT_CANCELLED) from exc
    except PipelineAborted as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_ABORTED) from exc
    except MoodleError as exc:
        typer.secho(f"Moodle error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_ABORTED) from exc
    except MoodleGraderError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FAILURE) from exc
    except KeyboardInterrupt as exc:
        typer.secho("Interrupted.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=EXIT_CANCELLED) from exc


@contextmanager
def _sigterm_as_interrupt():
    """Treat SIGTERM like Ctrl-C so running graders are killed before exiting."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _raise_interrupt(signum, frame):
        raise KeyboardInterrupt

    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, signal.SIG_DFL if previous is None else previous)


def _configure_runtime(*, env: str, debug: bool) -> None:
    load_dotenv(env)
    if debug:
        _enable_debug_logging()


def _connect(settings: _Settings) -> MoodleBackend:
    try:
        return MoodleBackend.connect(
            env_path=settings.env,
            base_url=settings.base_url,
            username=settings.username,
            password=settings.password,
        )
    except ValueError as exc:
        raise MoodleGraderError(str(exc)) from exc


def _load_grader_config(
    grader_config: str | None,
    *,
    command: str | None,
    timeout: float | None,
    workers: int | None,
) -> GraderConfig:
    if grader_config is not None:
        config = GraderConfig.from_yaml(grader_config)
    elif command is not None:
        config = GraderConfig.from_dict({"command": command})
    else:
        raise ConfigError("Missing grader. Pass --grader-config PATH or --command CMD.")
    try:
        return config.with_overrides(command=command, timeout_seconds=timeout, max_workers=workers)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


@app.command("list-assignments")
def list_assignments_command(
    ctx: typer.Context,
    course_id: int = typer.Option(..., "--course-id", "-c", help="Moodle course ID."),
) -> None:
    with _error_boundary():
        backend = _connect(ctx.obj)
        assignments = backend.list_assignments(course_id)
        if not assignments:
            typer.echo(f"No assignments found in course {course_id}.")
            return
        typer.echo(f"Assignments in course {course_id}:")
        rows = [("ID", "Name", "Max grade", "Due")]
        for assignment in assignments:
            due = assignment.due_date.strftime("%Y-%m-%d %H:%M") if assignment.due_date else "-"
            rows.append((str(assignment.id), assignment.name, f"{assignment.max_grade:g}", due))
        widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
        for row in rows:
            typer.echo("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


@app.command("download-submissions")
def download_submissions_command(
    ctx: typer.Context,
    course_id: int = typer.Option(..., "--course-id", "-c", help="Moodle course ID."),
    assignment_id: int = typer.Option(..., "--assignment-id", "-a", help="Moodle assignment ID."),
    output: str | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Directory or .zip file to write. Defaults to submissions_<assignment-id>.",
    ),
) -> None:
    with _error_boundary():
        backend = _connect(ctx.obj)
        orchestrator = GradingOrchestrator(backend)
        assignment, roster, records = orchestrator.download(course_id, assignment_id)
        try:
            destination = write_submissions(
                assignment, roster, records, output or f"submissions_{assignment_id}"
            )
        except OSError as exc:
            raise MoodleGraderError(f"Could not write submissions: {exc}") from exc
        present = sum(1 for record in records if record.gradeable)
        typer.echo(
            f"Wrote {present} of {len(records)} submissions for \"{assignment.name}\" to {destination}"
        )


@app.command("upload-grades")
def upload_grades_command(
    ctx: typer.Context,
    file: str = typer.Option(..., "--file", "-f", help="Grades YAML file (as written by --report)."),
    quiet: bool = typer.Option(False, "--quiet", help="Disable progress bars."),
) -> None:
    with _error_boundary():
        course_id, assignment_id, results = load_grade_results(file)
        backend = _connect(ctx.obj)
        orchestrator = GradingOrchestrator(backend, show_progress_bar=not quiet)
        with _sigterm_as_interrupt():
            report = orchestrator.publish_results(course_id, assignment_id, results)
        typer.echo(report.render())
        if not report.all_succeeded:
            raise typer.Exit(code=EXIT_FAILURE)


@app.command("grade")
def grade_command(
    ctx: typer.Context,
    course_id: int = typer.Option(..., "--course-id", "-c", help="Moodle course ID."),
    assignment_id: int = typer.Option(..., "--assignment-id", "-a", help="Moodle assignment ID."),
    grader_config: str | None = typer.Option(
        None, "--grader-config", "-g", help="Path to grader YAML configuration."
    ),
    command: str | None = typer.Option(
        None, "--command", help="Grader command; overrides the configuration file."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", min=0.001, help="Seconds before a grader process is killed."
    ),
    workers: int | None = typer.Option(
        None, "--workers", min=1, help="How many graders to run at once."
    ),
    publish: bool = typer.Option(
        True, "--publish/--no-publish", help="Upload grades to Moodle after grading."
    ),
    report_path: str | None = typer.Option(
        None, "--report", help="Write the run report as YAML to this path."
    ),
    quiet: bool = typer.Option(False, "--quiet", help="Disable progress bars."),
) -> None:
    with _error_boundary():
        config = _load_grader_config(
            grader_config, command=command, timeout=timeout, workers=workers
        )
        backend = _connect(ctx.obj)
        orchestrator = GradingOrchestrator.from_config(backend, config, show_progress_bar=not quiet)
        try:
            with _sigterm_as_interrupt():
                report = orchestrator.run(course_id, assignment_id, publish=publish)
        except RunCancelled as exc:
            if report_path and exc.report is not None:
                exc.report.write(report_path)
            raise
        if report_path:
            report.write(report_path)
        typer.echo(report.render())
        if not report.all_succeeded:
            raise typer.Exit(code=EXIT_FAILURE)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
