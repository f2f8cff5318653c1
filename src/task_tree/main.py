"""CLI entrypoint for task-tree."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import IO, TypeVar

import rich_click as click

from task_tree import __version__
from task_tree.config import Settings
from task_tree.controllers import (
    DependCommand,
    ImportCommand,
    InsertCommand,
    ListCommand,
    NavigateCommand,
    StatusCommand,
    StoreCommand,
    TaskCliController,
    TaskRefCommand,
    UpdateCommand,
)
from task_tree.core.errors import TaskTreeError
from task_tree.core.models import TaskDefinition, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskCliController()
STATUS_CHOICES = [status.value for status in TaskStatus]
T = TypeVar("T")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to `TASK_TREE_DB_PATH` or `.task_tree.db`).",
)
json_option = click.option(
    "--json",
    "json_output",
    is_flag=True,
    default=False,
    help="Print machine-readable JSON.",
)


@click.group()
@click.version_option(version=__version__, prog_name="task-tree")
def task_tree() -> None:
    """Hierarchical task tracking with dependencies.

    Tasks are numbered like `1.0`, `1.1`, `1.2.1` and ordered numerically,
    so `2.0` comes before `10.0`.
    """

    _configure_logging()


@task_tree.command("init")
@db_path_option
@json_option
def init(db_path: Path | None, json_output: bool) -> None:
    """Create or migrate the task database."""

    _emit_lines(lambda: CONTROLLER.init(StoreCommand(db_path=db_path, json_output=json_output)))


@task_tree.command("import")
@db_path_option
@json_option
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option(
    "--validate-only",
    is_flag=True,
    default=False,
    help="Only validate the file, write nothing.",
)
@click.option(
    "--best-effort",
    is_flag=True,
    default=False,
    help="Keep importing when a single task fails to insert.",
)
def import_tasks(
    db_path: Path | None,
    json_output: bool,
    source: IO[str],
    validate_only: bool,
    best_effort: bool,
) -> None:
    """Import tasks from a JSON file (`-` for stdin)."""

    result = _guarded(
        lambda: CONTROLLER.import_tasks(
            ImportCommand(
                db_path=db_path,
                payload=source.read(),
                validate_only=validate_only,
                best_effort=best_effort,
                json_output=json_output,
            ),
        ),
    )
    _echo(result.lines)
    if not result.success:
        raise click.ClickException("Import finished with errors.")


@task_tree.command("validate")
@db_path_option
@json_option
@click.argument("source", type=click.File("r", encoding="utf-8"))
def validate(db_path: Path | None, json_output: bool, source: IO[str]) -> None:
    """Validate a JSON import file against the current database."""

    result = _guarded(
        lambda: CONTROLLER.import_tasks(
            ImportCommand(
                db_path=db_path,
                payload=source.read(),
                validate_only=True,
                json_output=json_output,
            ),
        ),
    )
    _echo(result.lines)
    if not result.success:
        raise click.ClickException("Validation failed.")


@task_tree.command("export")
@db_path_option
def export(db_path: Path | None) -> None:
    """Export all tasks as an importable JSON document."""

    _emit_lines(lambda: CONTROLLER.export_tasks(StoreCommand(db_path=db_path)))


@task_tree.command("list")
@db_path_option
@json_option
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="Status filter.")
@click.option("--parent", default=None, help="Only direct children of this task.")
@click.option(
    "--completed/--no-completed",
    "include_completed",
    default=None,
    help="Include completed tasks (defaults to `TASK_TREE_SHOW_COMPLETED`).",
)
def list_tasks(
    db_path: Path | None,
    json_output: bool,
    status: str | None,
    parent: str | None,
    include_completed: bool | None,
) -> None:
    """List tasks in numeric order."""

    _emit_lines(
        lambda: CONTROLLER.list_tasks(
            ListCommand(
                db_path=db_path,
                status=status,
                parent=parent,
                include_completed=include_completed,
                json_output=json_output,
            ),
        ),
    )


@task_tree.command("show")
@db_path_option
@json_option
@click.argument("task_number")
def show(db_path: Path | None, json_output: bool, task_number: str) -> None:
    """Show one task with its dependencies and blockers."""

    _emit_lines(
        lambda: CONTROLLER.show(
            TaskRefCommand(db_path=db_path, task_number=task_number, json_output=json_output),
        ),
    )


@task_tree.command("insert")
@db_path_option
@json_option
@click.argument("task_number")
@click.argument("name")
@click.option("--parent", default=None, help="Parent task number.")
@click.option("--description", default=None)
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None)
@click.option("--priority", type=click.IntRange(min=0, max=10), default=None)
@click.option("--depends-on", "dependencies", multiple=True, help="Can be repeated.")
@click.option("--file", "files", multiple=True, help="Related file. Can be repeated.")
@click.option("--doc", "docs_references", multiple=True, help="Doc URL. Can be repeated.")
@click.option("--testing-strategy", default=None)
@click.option("--notes", default=None)
def insert(  # noqa: PLR0913
    db_path: Path | None,
    json_output: bool,
    task_number: str,
    name: str,
    parent: str | None,
    description: str | None,
    status: str | None,
    priority: int | None,
    dependencies: tuple[str, ...],
    files: tuple[str, ...],
    docs_references: tuple[str, ...],
    testing_strategy: str | None,
    notes: str | None,
) -> None:
    """Create a single task."""

    definition = TaskDefinition(
        number=task_number,
        name=name,
        parent=parent,
        description=description,
        status=status,
        priority=priority,
        dependencies=list(dependencies),
        files=list(files),
        docs_references=list(docs_references),
        testing_strategy=testing_strategy,
        notes=notes,
    )
    _emit_lines(
        lambda: CONTROLLER.insert(
            InsertCommand(db_path=db_path, definition=definition, json_output=json_output),
        ),
    )


@task_tree.command("update")
@db_path_option
@json_option
@click.argument("task_number")
@click.option("--name", default=None)
@click.option("--description", default=None)
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None)
@click.option("--priority", type=click.IntRange(min=0, max=10), default=None)
@click.option("--file", "files", multiple=True, help="Replaces related files.")
@click.option("--doc", "docs_references", multiple=True, help="Replaces doc URLs.")
@click.option("--testing-strategy", default=None)
@click.option("--notes", default=None)
@click.option("--completion-notes", default=None)
def update(  # noqa: PLR0913
    db_path: Path | None,
    json_output: bool,
    task_number: str,
    name: str | None,
    description: str | None,
    status: str | None,
    priority: int | None,
    files: tuple[str, ...],
    docs_references: tuple[str, ...],
    testing_strategy: str | None,
    notes: str | None,
    completion_notes: str | None,
) -> None:
    """Update fields of one task."""

    changes = {
        key: value
        for key, value in {
            "name": name,
            "description": description,
            "status": status,
            "priority": priority,
            "testing_strategy": testing_strategy,
            "notes": notes,
            "completion_notes": completion_notes,
        }.items()
        if value is not None
    }
    if files:
        changes["files"] = list(files)
    if docs_references:
        changes["docs_references"] = list(docs_references)
    _emit_lines(
        lambda: CONTROLLER.update(
            UpdateCommand(
                db_path=db_path,
                task_number=task_number,
                changes=changes,
                json_output=json_output,
            ),
        ),
    )


@task_tree.command("remove")
@db_path_option
@json_option
@click.argument("task_number")
def remove(db_path: Path | None, json_output: bool, task_number: str) -> None:
    """Delete a task together with its subtasks."""

    _emit_lines(
        lambda: CONTROLLER.remove(
            TaskRefCommand(db_path=db_path, task_number=task_number, json_output=json_output),
        ),
    )


@task_tree.command("depend")
@db_path_option
@json_option
@click.argument("task_number")
@click.argument("depends_on")
def depend(db_path: Path | None, json_output: bool, task_number: str, depends_on: str) -> None:
    """Make TASK_NUMBER wait for DEPENDS_ON."""

    _emit_lines(
        lambda: CONTROLLER.depend(
            DependCommand(
                db_path=db_path,
                task_number=task_number,
                depends_on=depends_on,
                json_output=json_output,
            ),
        ),
    )


@task_tree.command("complete")
@db_path_option
@json_option
@click.argument("task_number")
@click.option("--notes", default=None, help="Completion notes.")
@click.option("--force", is_flag=True, default=False, help="Ignore unmet dependencies.")
def complete(
    db_path: Path | None,
    json_output: bool,
    task_number: str,
    notes: str | None,
    force: bool,
) -> None:
    """Complete a task and auto-complete finished parents."""

    _emit_lines(
        lambda: CONTROLLER.complete(
            StatusCommand(
                db_path=db_path,
                task_number=task_number,
                notes=notes,
                force=force,
                json_output=json_output,
            ),
        ),
    )


@task_tree.command("start")
@db_path_option
@json_option
@click.argument("task_number")
@click.option("--force", is_flag=True, default=False, help="Ignore unmet dependencies.")
def start(db_path: Path | None, json_output: bool, task_number: str, force: bool) -> None:
    """Mark a task as in progress."""

    _emit_lines(
        lambda: CONTROLLER.start(
            StatusCommand(
                db_path=db_path,
                task_number=task_number,
                force=force,
                json_output=json_output,
            ),
        ),
    )


@task_tree.command("reopen")
@db_path_option
@json_option
@click.argument("task_number")
def reopen(db_path: Path | None, json_output: bool, task_number: str) -> None:
    """Move a completed or cancelled task back to pending."""

    _emit_lines(
        lambda: CONTROLLER.reopen(
            StatusCommand(db_path=db_path, task_number=task_number, json_output=json_output),
        ),
    )


@task_tree.command("cancel")
@db_path_option
@json_option
@click.argument("task_number")
@click.option("--notes", default=None, help="Why the task was cancelled.")
def cancel(db_path: Path | None, json_output: bool, task_number: str, notes: str | None) -> None:
    """Cancel a task."""

    _emit_lines(
        lambda: CONTROLLER.cancel(
            StatusCommand(
                db_path=db_path,
                task_number=task_number,
                notes=notes,
                json_output=json_output,
            ),
        ),
    )


@task_tree.command("current")
@db_path_option
@json_option
def current(db_path: Path | None, json_output: bool) -> None:
    """Show the first ready task."""

    _emit_lines(lambda: CONTROLLER.current(StoreCommand(db_path=db_path, json_output=json_output)))


@task_tree.command("next")
@db_path_option
@json_option
@click.argument("after", required=False)
def next_task(db_path: Path | None, json_output: bool, after: str | None) -> None:
    """Show the first ready task after AFTER (or the current one)."""

    _emit_lines(
        lambda: CONTROLLER.next_task(
            NavigateCommand(db_path=db_path, task_number=after, json_output=json_output),
        ),
    )


@task_tree.command("prev")
@db_path_option
@json_option
@click.argument("before")
def previous_task(db_path: Path | None, json_output: bool, before: str) -> None:
    """Show the last ready task before BEFORE."""

    _emit_lines(
        lambda: CONTROLLER.previous_task(
            NavigateCommand(db_path=db_path, task_number=before, json_output=json_output),
        ),
    )


@task_tree.command("ready")
@db_path_option
@json_option
def ready(db_path: Path | None, json_output: bool) -> None:
    """List tasks that can be worked on now."""

    _emit_lines(lambda: CONTROLLER.ready(StoreCommand(db_path=db_path, json_output=json_output)))


@task_tree.command("blocked")
@db_path_option
@json_option
def blocked(db_path: Path | None, json_output: bool) -> None:
    """List open tasks waiting for dependencies."""

    _emit_lines(lambda: CONTROLLER.blocked(StoreCommand(db_path=db_path, json_output=json_output)))


@task_tree.command("can-start")
@db_path_option
@json_option
@click.argument("task_number")
def can_start(db_path: Path | None, json_output: bool, task_number: str) -> None:
    """Check whether a task's dependencies are all completed."""

    _emit_lines(
        lambda: CONTROLLER.can_start(
            TaskRefCommand(db_path=db_path, task_number=task_number, json_output=json_output),
        ),
    )


@task_tree.command("remaining")
@db_path_option
@json_option
def remaining(db_path: Path | None, json_output: bool) -> None:
    """Count pending and in-progress tasks."""

    _emit_lines(
        lambda: CONTROLLER.remaining(StoreCommand(db_path=db_path, json_output=json_output)),
    )


@task_tree.command("progress")
@db_path_option
@json_option
@click.option("--root", default=None, help="Only show the subtree under this task.")
def progress(db_path: Path | None, json_output: bool, root: str | None) -> None:
    """Show the completion progress tree."""

    _emit_lines(
        lambda: CONTROLLER.progress(
            NavigateCommand(db_path=db_path, task_number=root, json_output=json_output),
        ),
    )


@task_tree.command("tree")
@db_path_option
@json_option
@click.option("--root", default=None, help="Only show the subtree under this task.")
def tree(db_path: Path | None, json_output: bool, root: str | None) -> None:
    """Show the parent/child hierarchy."""

    _emit_lines(
        lambda: CONTROLLER.tree(
            NavigateCommand(db_path=db_path, task_number=root, json_output=json_output),
        ),
    )


@task_tree.command("stats")
@db_path_option
@json_option
def stats(db_path: Path | None, json_output: bool) -> None:
    """Show task counts by status."""

    _emit_lines(lambda: CONTROLLER.stats(StoreCommand(db_path=db_path, json_output=json_output)))


def _configure_logging() -> None:
    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=settings.display.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _guarded(produce: Callable[[], T]) -> T:
    try:
        return produce()
    except TaskTreeError as error:
        lines = [f"{error.code}: {error.message}"]
        validation = error.details.get("validation")
        if isinstance(validation, dict):
            lines.extend(
                f"  {issue['task']} {issue['field']}: {issue['error']}"
                for issue in validation.get("errors", [])
            )
        raise click.ClickException("\n".join(lines)) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(produce: Callable[[], list[str]]) -> None:
    _echo(_guarded(produce))


def _echo(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_tree()
