"""Interactive CLI for the task core."""

import asyncio
import json
import shlex
from pathlib import Path
from typing import Optional

import aiofiles
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..core.context import AppContext
from ..core.exceptions import NotFoundError, TaskCoreError, ValidationError
from ..sync import Resolution
from ..tasks import TaskQuery, TaskRecord


console = Console()

PRIORITY_STYLES = {
    "high": "[red]high[/red]",
    "medium": "[yellow]medium[/yellow]",
    "low": "[dim]low[/dim]",
}


class TaskCLI:
    """
    Slash-command shell over an AppContext.

    Commands:
    - /tasks [all|active|done] - List tasks
    - /task add|done|edit|delete|restore|clear|purge - Manage tasks
    - /undo ID, /redo ID - Step through a task's edit history
    - /history ID - Show a task's edit history
    - /restore ID VERSION - Restore the state before a history version
    - /export [PATH], /import PATH [--replace] - Move data in and out
    - /backups - List snapshot backups
    - /stats - Show statistics
    - /conflicts [auto|apply|resolve|dismiss] - Review pending conflicts
    - /quit, /exit - Exit
    """

    def __init__(self, ctx: AppContext):
        self.ctx = ctx
        self.store = ctx.store
        self.history = ctx.history
        self.conflicts = ctx.conflicts

        self.history_path = ctx.config.paths.base / ".taskcore_history"
        self.session: Optional[PromptSession] = None

    async def run(self):
        """Main CLI loop."""
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        self.session = PromptSession(
            history=FileHistory(str(self.history_path))
        )

        stats = await self.store.get_stats()
        console.print(Panel(
            "[bold cyan]Task Core[/bold cyan]\n"
            "Type /help for commands\n"
            f"Tasks: [bright_white]{stats['total']}[/bright_white] "
            f"({stats['active']} active, {stats['completed']} completed)",
            title="Welcome",
            border_style="cyan",
        ))

        while True:
            try:
                user_input = await asyncio.to_thread(
                    self.session.prompt, "tasks> "
                )

                if not user_input.strip():
                    continue

                if not user_input.startswith("/"):
                    console.print("[dim]Commands start with /. Type /help.[/dim]")
                    continue

                should_exit = await self._handle_command(user_input)
                if should_exit:
                    break

            except KeyboardInterrupt:
                console.print("\n[yellow]Interrupted. Type /quit to exit.[/yellow]")
            except EOFError:
                break

        console.print("[green]Goodbye![/green]")

    async def _handle_command(self, command: str) -> bool:
        """
        Handle a command.

        Returns:
            True if should exit, False otherwise
        """
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        args = parts[1] if len(parts) > 1 else ""

        try:
            return await self._dispatch(cmd, args)
        except ValidationError as e:
            console.print(Panel(
                "\n".join(f"- {msg}" for msg in e.errors),
                title="Invalid task data",
                border_style="red",
            ))
        except (TaskCoreError, ValueError) as e:
            console.print(f"[red]{e}[/red]")
        return False

    async def _dispatch(self, cmd: str, args: str) -> bool:
        if cmd in ["/quit", "/exit", "/q"]:
            return True

        elif cmd == "/help":
            self._show_help()

        elif cmd == "/tasks":
            await self._list_tasks(args)

        elif cmd == "/task":
            await self._handle_task(args)

        elif cmd == "/undo":
            await self._undo(args)

        elif cmd == "/redo":
            await self._redo(args)

        elif cmd == "/history":
            await self._show_history(args)

        elif cmd == "/restore":
            await self._restore_version(args)

        elif cmd == "/export":
            await self._export(args)

        elif cmd == "/import":
            await self._import(args)

        elif cmd == "/backups":
            await self._show_backups()

        elif cmd == "/stats":
            await self._show_stats()

        elif cmd == "/conflicts":
            await self._handle_conflicts(args)

        else:
            console.print(f"[red]Unknown command: {cmd}[/red]")
            console.print("Type /help for available commands.")

        return False

    def _show_help(self):
        """Display help information."""
        help_table = Table(title="Available Commands", show_header=True)
        help_table.add_column("Command", style="cyan")
        help_table.add_column("Description")

        commands = [
            ("/quit, /exit, /q", "Exit"),
            ("/help", "Show this help message"),
            ("/tasks [all|active|done|deleted]", "List tasks"),
            ("/tasks search TEXT", "Search tasks"),
            ("/task add TEXT", "Create new task"),
            ("/task done ID", "Toggle completion"),
            ("/task edit ID field=value ...", "Edit fields (tags=a,b)"),
            ("/task delete ID [--soft]", "Delete task"),
            ("/task restore ID", "Restore a soft-deleted task"),
            ("/task clear", "Clear completed tasks"),
            ("/task purge", "Remove soft-deleted tasks for good"),
            ("/task clear-all", "Remove every task (backed up first)"),
            ("/undo ID", "Undo last edit of a task"),
            ("/redo ID", "Redo last undone edit of a task"),
            ("/history ID", "Show edit history of a task"),
            ("/restore ID VERSION", "Restore the state before VERSION"),
            ("/export [PATH]", "Export tasks as JSON"),
            ("/import PATH [--replace]", "Import tasks from JSON"),
            ("/backups", "List snapshot backups"),
            ("/stats", "Show statistics"),
            ("/conflicts", "List pending conflicts"),
            ("/conflicts resolve ID FIELD local|remote|merge", "Choose a resolution"),
            ("/conflicts auto", "Auto-resolve where possible"),
            ("/conflicts apply ID", "Write resolutions for a task"),
            ("/conflicts dismiss ID", "Drop pending conflicts for a task"),
        ]

        for cmd, desc in commands:
            help_table.add_row(cmd, desc)

        console.print(help_table)

    # ==================== Tasks ====================

    async def _resolve_id(self, prefix: str) -> str:
        """Expand a short id prefix to a full task id."""
        prefix = prefix.strip()
        if not prefix:
            raise NotFoundError(task_id="(empty)")
        tasks = await self.store.get_all(TaskQuery(include_deleted=True))
        matches = [t.id for t in tasks if t.id.startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        if prefix in matches:
            return prefix
        if len(matches) > 1:
            raise TaskCoreError(f"Ambiguous task id: {prefix}")
        raise NotFoundError(task_id=prefix)

    async def _list_tasks(self, args: str):
        """Display tasks."""
        parts = args.strip().split(maxsplit=1)
        mode = parts[0].lower() if parts else "all"

        if mode == "search":
            term = parts[1] if len(parts) > 1 else ""
            tasks = await self.store.search(term)
            title = f"Tasks matching '{term}'"
        else:
            query = TaskQuery()
            if mode == "active":
                query.completed = False
            elif mode == "done":
                query.completed = True
            elif mode == "deleted":
                query.include_deleted = True
            tasks = await self.store.get_all(query)
            if mode == "deleted":
                tasks = [t for t in tasks if t.deleted]
            title = "Tasks"

        if not tasks:
            console.print("[dim]No tasks. Use /task add <title> to create one.[/dim]")
            return

        self._print_tasks(tasks, title)

        total = len(tasks)
        completed = sum(1 for t in tasks if t.completed)
        console.print(f"\n[dim]{total - completed} active, {completed} completed[/dim]")

    def _print_tasks(self, tasks: list[TaskRecord], title: str):
        table = Table(title=title, show_header=True)
        table.add_column("ID", style="dim", width=8)
        table.add_column("", width=3)
        table.add_column("Title")
        table.add_column("Priority", width=8)
        table.add_column("Category")
        table.add_column("Tags")
        table.add_column("Due")
        table.add_column("v", justify="right", width=4)

        for task in tasks:
            style = "dim" if task.completed or task.deleted else ""
            icon = "[green]✓[/green]" if task.completed else "○"
            due = task.due_date.strftime("%Y-%m-%d") if task.due_date else ""
            if task.is_overdue():
                due = f"[red]{due}[/red]"

            table.add_row(
                task.id[:8],
                icon,
                task.title,
                PRIORITY_STYLES.get(task.priority.value, ""),
                task.category,
                ", ".join(task.tags),
                due,
                str(task.version),
                style=style,
            )

        console.print(table)

    async def _handle_task(self, args: str):
        """Handle task management commands."""
        parts = args.strip().split(maxsplit=1)
        subcmd = parts[0].lower() if parts else ""
        subargs = parts[1] if len(parts) > 1 else ""

        if not subcmd or subcmd == "list":
            await self._list_tasks("")
        elif subcmd == "add":
            await self._add_task(subargs)
        elif subcmd == "done":
            await self._toggle_task(subargs)
        elif subcmd == "edit":
            await self._edit_task(subargs)
        elif subcmd in ["delete", "rm", "del"]:
            await self._delete_task(subargs)
        elif subcmd == "restore":
            task = await self.store.restore(await self._resolve_id(subargs))
            console.print(f"[green]Restored:[/green] {task.title}")
        elif subcmd == "clear":
            await self._clear_tasks()
        elif subcmd == "purge":
            count = await self.store.purge_deleted()
            console.print(f"[green]Purged {count} deleted task(s)[/green]")
        elif subcmd == "clear-all":
            count = await self.store.delete_all()
            console.print(f"[yellow]Removed {count} task(s); a backup was taken[/yellow]")
        else:
            await self._add_task(args)

    async def _add_task(self, title: str):
        """Create a new task."""
        if not title.strip():
            console.print("[red]Usage: /task add <title>[/red]")
            return

        task = await self.store.create({"title": title.strip()})
        console.print(f"[green]Created task {task.id[:8]}:[/green] {task.title}")

    async def _toggle_task(self, task_id: str):
        """Toggle completion of a task."""
        if not task_id.strip():
            console.print("[red]Usage: /task done <id>[/red]")
            return

        task = await self.store.toggle_complete(await self._resolve_id(task_id))
        label = "Completed" if task.completed else "Reopened"
        console.print(f"[green]{label}:[/green] {task.title}")

    async def _edit_task(self, args: str):
        """Edit fields: /task edit ID title="New title" priority=high tags=a,b"""
        try:
            tokens = shlex.split(args)
        except ValueError as e:
            console.print(f"[red]Could not parse arguments: {e}[/red]")
            return

        if len(tokens) < 2:
            console.print("[red]Usage: /task edit <id> field=value ...[/red]")
            return

        task_id = await self._resolve_id(tokens[0])
        changes = {}
        for token in tokens[1:]:
            name, sep, value = token.partition("=")
            if not sep:
                console.print(f"[red]Expected field=value, got: {token}[/red]")
                return
            if name == "tags":
                changes[name] = [t for t in value.split(",") if t.strip()]
            elif name == "completed":
                changes[name] = value.lower() in ("1", "true", "yes")
            else:
                changes[name] = value or None

        result = await self.store.update(task_id, changes)
        if not result.changed:
            console.print("[dim]Nothing changed[/dim]")
            return
        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        fields = ", ".join(c.field for c in result.changes)
        console.print(f"[green]Updated {fields}[/green] (v{result.task.version})")

    async def _delete_task(self, args: str):
        """Delete a task."""
        tokens = args.split()
        if not tokens:
            console.print("[red]Usage: /task delete <id> [--soft][/red]")
            return

        soft = "--soft" in tokens
        task_id = await self._resolve_id(tokens[0])
        await self.store.delete(task_id, soft=soft)
        console.print(f"[green]Deleted task {task_id[:8]}{' (soft)' if soft else ''}[/green]")

    async def _clear_tasks(self):
        """Clear all completed tasks."""
        count = await self.store.delete_completed()
        if count > 0:
            console.print(f"[green]Cleared {count} completed task(s)[/green]")
        else:
            console.print("[dim]No completed tasks to clear[/dim]")

    # ==================== History ====================

    async def _undo(self, args: str):
        task_id = await self._resolve_id(args)
        entry = await self.history.undo(task_id)
        if entry is None:
            console.print("[dim]Nothing to undo[/dim]")
            return
        console.print(
            f"[green]Undid {', '.join(entry.fields)}[/green] "
            f"(now at v{self.history.current_version(task_id)})"
        )

    async def _redo(self, args: str):
        task_id = await self._resolve_id(args)
        entry = await self.history.redo(task_id)
        if entry is None:
            console.print("[dim]Nothing to redo[/dim]")
            return
        console.print(
            f"[green]Redid {', '.join(entry.fields)}[/green] "
            f"(now at v{self.history.current_version(task_id)})"
        )

    async def _show_history(self, args: str):
        task_id = await self._resolve_id(args)
        entries = self.history.get_history(task_id, limit=20)
        if not entries:
            console.print("[dim]No edit history for this task[/dim]")
            return

        current = self.history.current_version(task_id)
        table = Table(title=f"History {task_id[:8]}", show_header=True)
        table.add_column("v", justify="right", width=4)
        table.add_column("When", style="dim")
        table.add_column("Kind", width=8)
        table.add_column("Changes")

        for entry in entries:
            marker = " *" if entry.version == current else ""
            changes = "; ".join(
                f"{c.field}: {c.old_value!r} → {c.new_value!r}" for c in entry.changes
            )
            table.add_row(
                f"{entry.version}{marker}",
                entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                entry.kind,
                changes,
            )

        console.print(table)

    async def _restore_version(self, args: str):
        parts = args.split()
        if len(parts) != 2 or not parts[1].isdigit():
            console.print("[red]Usage: /restore <id> <version>[/red]")
            return

        task_id = await self._resolve_id(parts[0])
        await self.history.restore_to_version(task_id, int(parts[1]))
        task = await self.store.get_by_id(task_id, include_deleted=True)
        console.print(f"[green]Restored state before v{parts[1]}:[/green] {task.title}")

    # ==================== Import / export ====================

    async def _export(self, args: str):
        data = await self.store.export_data()
        path = args.strip()
        if not path:
            console.print(f"[dim]{data['metadata']['totalTasks']} task(s) ready; "
                          f"use /export <path> to write them[/dim]")
            return

        async with aiofiles.open(Path(path).expanduser(), "w") as f:
            await f.write(json.dumps(data, indent=2))
        console.print(f"[green]Exported {data['metadata']['totalTasks']} task(s) to {path}[/green]")

    async def _import(self, args: str):
        tokens = args.split()
        paths = [t for t in tokens if not t.startswith("--")]
        if not paths:
            console.print("[red]Usage: /import <path> [--replace][/red]")
            return

        try:
            async with aiofiles.open(Path(paths[0]).expanduser(), "r") as f:
                payload = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            console.print(f"[red]Could not read {paths[0]}: {e}[/red]")
            return

        result = await self.store.import_data(payload, replace_existing="--replace" in tokens)
        style = "green" if result.success else "red"
        console.print(
            f"[{style}]Imported {result.imported} of {result.total} "
            f"({result.invalid} invalid)[/{style}]"
        )
        for error in result.errors[:5]:
            console.print(f"  [dim]#{error['index']}: {', '.join(error['errors'])}[/dim]")

    async def _show_backups(self):
        backups = await self.store.list_backups()
        if not backups:
            console.print("[dim]No backups yet[/dim]")
            return

        table = Table(title="Backups", show_header=True)
        table.add_column("Key", style="cyan")
        table.add_column("When")
        table.add_column("Reason")
        table.add_column("Tasks", justify="right")
        for backup in backups:
            table.add_row(backup["key"], backup["timestamp"] or "", backup["reason"] or "", str(backup["count"]))
        console.print(table)

    # ==================== Stats ====================

    async def _show_stats(self):
        stats = await self.store.get_stats()

        table = Table(title="Task Statistics", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Total", str(stats["total"]))
        table.add_row("Active", str(stats["active"]))
        table.add_row("Completed", str(stats["completed"]))
        table.add_row("Overdue", str(stats["overdue"]))
        table.add_row("Due soon", str(stats["dueSoon"]))
        for priority, count in stats["byPriority"].items():
            table.add_row(f"Priority {priority}", str(count))
        for category, count in stats["byCategory"].items():
            table.add_row(f"Category {category}", str(count))
        table.add_row("Tags", ", ".join(stats["tags"]) or "-")
        table.add_row("Last modified", stats["lastModified"] or "-")

        console.print(table)

    # ==================== Conflicts ====================

    async def _handle_conflicts(self, args: str):
        parts = args.split()
        subcmd = parts[0].lower() if parts else ""

        if not subcmd or subcmd == "list":
            self._list_conflicts()
        elif subcmd == "auto":
            count = self.conflicts.auto_resolve()
            console.print(f"[green]Auto-resolved {count} conflict(s)[/green]")
        elif subcmd == "resolve" and len(parts) == 4:
            task_id = await self._resolve_id(parts[1])
            conflict = self.conflicts.select_resolution(task_id, parts[2], Resolution(parts[3].lower()))
            console.print(f"[green]{conflict.field}: {conflict.resolution.value}[/green]")
        elif subcmd == "apply" and len(parts) == 2:
            task = await self.conflicts.apply_conflict_resolution(await self._resolve_id(parts[1]))
            if task is None:
                console.print("[dim]No pending conflicts for this task[/dim]")
            else:
                console.print(f"[green]Applied resolutions:[/green] {task.title} (v{task.version})")
        elif subcmd == "dismiss" and len(parts) == 2:
            count = self.conflicts.dismiss(await self._resolve_id(parts[1]))
            console.print(f"[yellow]Dismissed {count} conflict(s)[/yellow]")
        else:
            console.print("[red]Usage: /conflicts [auto|resolve ID FIELD SIDE|apply ID|dismiss ID][/red]")

    def _list_conflicts(self, task_id: Optional[str] = None):
        pending = self.conflicts.get_pending(task_id)
        if not pending:
            console.print("[dim]No pending conflicts[/dim]")
            return

        table = Table(title="Pending Conflicts", show_header=True)
        table.add_column("Task", style="dim", width=8)
        table.add_column("Field", style="cyan")
        table.add_column("Severity")
        table.add_column("Local")
        table.add_column("Remote")
        table.add_column("Resolution")

        for conflict in pending:
            table.add_row(
                conflict.task_id[:8],
                conflict.field,
                conflict.severity.value,
                repr(conflict.local_value),
                repr(conflict.remote_value),
                conflict.resolution.value if conflict.resolution else "-",
            )

        console.print(table)
