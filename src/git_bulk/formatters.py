"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from .core import Operation, OperationOutcome, RepositoryReport, RunConfig, RunSummary


OUTCOME_STYLES = {
    "updated": ("✅", "green"),
    "switched": ("🔁", "green"),
    "created": ("🌱", "green"),
    "deleted": ("🗑", "green"),
    "skipped": ("⏭", "yellow"),
    "failed": ("❌", "red"),
}

STATUS_STYLES = {
    "succeeded": "[green]✓[/]",
    "skipped": "[yellow]–[/]",
    "failed": "[red]✗[/]",
}


def compute_unique_display_names(
    items: list[Any],
    name_attr: str = "name",
    path_attr: str = "path",
) -> dict[Path, str]:
    """Compute unique display names for items with duplicate names.

    When multiple items share the same name, parent directory components
    are added until each name becomes unique.

    Args:
        items: List of objects with name and path attributes
        name_attr: Name of the attribute containing the item name
        path_attr: Name of the attribute containing the item path

    Returns:
        Dictionary mapping path to display name
    """
    name_groups: dict[str, list[Any]] = defaultdict(list)
    for item in items:
        name_groups[getattr(item, name_attr)].append(item)

    result: dict[Path, str] = {}
    for name, group in name_groups.items():
        paths = [getattr(item, path_attr) for item in group]
        if len(group) == 1:
            result[paths[0]] = name
            continue
        for path, unique_name in zip(paths, _make_paths_unique(paths)):
            result[path] = unique_name

    return result


def _make_paths_unique(paths: list[Path]) -> list[str]:
    """Generate the shortest trailing path suffix that is unique per path."""
    reversed_parts = [list(reversed(p.parts)) for p in paths]

    result = []
    for i, parts in enumerate(reversed_parts):
        for depth in range(1, len(parts) + 1):
            candidate = "/".join(reversed(parts[:depth]))
            clashes = any(
                "/".join(reversed(other[: min(depth, len(other))])) == candidate
                for j, other in enumerate(reversed_parts)
                if j != i
            )
            if not clashes:
                result.append(candidate)
                break
        else:
            result.append("/".join(reversed(parts)))

    return result


def describe_outcome(outcome: OperationOutcome) -> str:
    """One-line plain-text description, e.g. ``Updated main (+3 commit(s))``."""
    kind = outcome.kind.value
    branch = outcome.branch or ""

    if kind in ("skipped", "failed"):
        text = f"{kind.capitalize()}: {outcome.reason.value if outcome.reason else 'unknown'}"
        return f"{text} ({branch})" if branch else text

    verb = {
        "updated": ("Updated", "Would update"),
        "switched": ("Switched to", "Would switch to"),
        "created": ("Created", "Would create"),
        "deleted": ("Deleted", "Would delete"),
    }[kind][1 if outcome.dry_run else 0]
    text = f"{verb} {branch}".rstrip()
    if kind == "updated" and outcome.count is not None:
        text += f" (+{outcome.count} commit(s))"
    return text


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def _get_relative_path(self, path: Path, root: Path) -> str:
        """Get relative path from root."""
        try:
            relative = path.relative_to(root)
        except ValueError:
            return str(path)
        return str(relative) if relative.parts else "."

    def print_run_header(self, operation: Operation, config: RunConfig):
        """Print what is about to happen."""
        if self.use_json:
            return
        titles = {
            "sync": "🔍 Fetching and updating tracked branches in repositories under",
            "switch": "🔀 Switching all Git repositories under",
            "prune": "🗑  Deleting local branch in repositories under",
        }
        self.console.print(f"[bold]{titles[operation.value]}:[/] {escape(str(config.base_dir))}")
        if config.target_branch:
            self.console.print(f"➡️  Target branch: [cyan]{escape(config.target_branch)}[/]")
        if config.force_delete:
            self.console.print("[red]Force delete enabled[/]")
        if config.dry_run:
            self.console.print("🧪 [yellow]Running in dry-run mode (no changes applied)[/]")
        self.console.print()

    def print_repository_report(self, report: RepositoryReport):
        """Print one repository's outcomes as soon as it has been processed."""
        self.console.print(f"➡️  Repository: [cyan]{escape(str(report.path))}[/]")
        for outcome in report.outcomes:
            icon, color = OUTCOME_STYLES[outcome.kind.value]
            if outcome.dry_run:
                icon, color = "🧪", "blue"
            line = f"  {icon} [{color}]{escape(describe_outcome(outcome))}[/]"
            if outcome.message:
                line += f" [dim]{escape(outcome.message)}[/]"
            self.console.print(line)
            for detail in outcome.details:
                self.console.print(f"      [dim]{escape(detail)}[/]")
        for warning in report.warnings:
            self.console.print(f"  ⚠️  [yellow]{escape(warning)}[/]")
        self.console.print("[dim]-----------------------------------[/]")

    def print_run_summary(self, summary: RunSummary, reports: list[RepositoryReport]):
        """Print final results table and counters."""
        if self.use_json:
            self._print_run_json(summary, reports)
        else:
            self._print_run_table(summary, reports)

    def _print_run_table(self, summary: RunSummary, reports: list[RepositoryReport]):
        operation = summary.operation.value
        if not reports:
            self.console.print(f"[dim]No repositories found to {operation}[/]")
        else:
            display_names = compute_unique_display_names(reports)
            mode = " (dry-run)" if summary.dry_run else ""
            table = Table(title=f"{operation.title()} Results{mode}")
            table.add_column("Repository", style="cyan")
            table.add_column("Status", justify="center")
            table.add_column("Outcome")

            for report in reports:
                outcomes = "\n".join(escape(describe_outcome(o)) for o in report.outcomes)
                table.add_row(
                    escape(display_names.get(report.path, report.name)),
                    STATUS_STYLES[report.status],
                    outcomes,
                )
            self.console.print(table)

        parts = [f"[bold]📦 Total repos:[/] {summary.total_repos}"]
        if operation == "sync":
            parts.append(f"[green]✅ Updated:[/] {summary.branches_updated}")
            parts.append(f"[blue]⬇ Commits pulled:[/] {summary.commits_pulled}")
        elif operation == "switch":
            parts.append(f"[green]🔁 Switched:[/] {summary.branches_switched}")
            if summary.branches_created:
                parts.append(f"[green]🌱 Created:[/] {summary.branches_created}")
        else:
            parts.append(f"[green]🗑  Deleted:[/] {summary.branches_deleted}")
        parts.append(f"[yellow]⏭ Skipped:[/] {summary.skipped}")
        parts.append(f"[red]❌ Failed:[/] {summary.failed}")
        if summary.warnings:
            parts.append(f"[yellow]⚠️  Warnings:[/] {summary.warnings}")

        self.console.print(" | ".join(parts))
        if summary.dry_run:
            self.console.print("[dim]Dry-run: no repository was modified.[/]")
        elif summary.failed:
            self.console.print(f"[red]{operation.title()} completed with failures.[/]")
        else:
            self.console.print(f"[green]✅ {operation.title()} completed.[/]")

    def _print_run_json(self, summary: RunSummary, reports: list[RepositoryReport]):
        output = {
            "results": [r.to_dict() for r in reports],
            "summary": summary.to_dict(),
        }
        self._print_json(output)

    def _print_json(self, output: dict):
        self.console.print(
            json.dumps(output, indent=2, default=str), markup=False, highlight=False, soft_wrap=True
        )

    def print_repo_list(
        self, repos: list[Path], branches: dict[Path, str | None], root_path: Path
    ):
        """Print the repositories discovery would visit."""
        if self.use_json:
            output = {
                "root": str(root_path),
                "count": len(repos),
                "repositories": [
                    {"path": str(p), "name": p.name, "branch": branches.get(p)} for p in repos
                ],
            }
            self._print_json(output)
            return

        self.console.print(f"[bold]Found {len(repos)} repositories in {escape(str(root_path))}[/]\n")
        for repo_path in repos:
            branch = branches.get(repo_path) or "(no branch)"
            self.console.print(
                f"  [cyan]{escape(self._get_relative_path(repo_path, root_path))}[/]"
                f" [dim]{escape(branch)}[/]"
            )
