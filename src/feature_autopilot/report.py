"""Render manifest state and run results as plain text."""

from __future__ import annotations

import io

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .constants import (
    NO_WORK_ALL_BLOCKED,
    NO_WORK_ALL_COMPLETED,
    NO_WORK_BLOCKED_BY_FAILURES,
    NO_WORK_RUNNING_ELSEWHERE,
)
from .manifest import Manifest
from .models import FeatureStatus, model_name
from .orchestrator import RunResult

_STATUS_STYLES = {
    FeatureStatus.PENDING: "yellow",
    FeatureStatus.RUNNING: "cyan",
    FeatureStatus.COMPLETED: "green",
    FeatureStatus.FAILED: "red",
    FeatureStatus.STOPPED: "dim",
}


def _recording_console() -> Console:
    return Console(record=True, width=100, file=io.StringIO())


def render_status_table(manifest: Manifest) -> str:
    console = _recording_console()
    summary = manifest.summary()
    table = Table(title=manifest.title or "Features", show_header=True)
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Model")
    table.add_column("Depends on")

    for feature in manifest.all_features():
        style = _STATUS_STYLES.get(feature.status, "")
        indent = "  " * feature.depth
        table.add_row(
            feature.id,
            f"{indent}{escape(feature.title)}",
            f"[{style}]{feature.status.value}[/{style}]" if style else feature.status.value,
            model_name(feature.model),
            ", ".join(feature.depends_on) or "-",
        )

    console.print(table)
    console.print(
        f"{summary.completed}/{summary.total} completed, {summary.running} running, "
        f"{summary.failed} failed, {summary.pending} ready, {summary.blocked} blocked"
    )
    return console.export_text()


def render_plan(manifest: Manifest) -> str:
    """Show the dependency order grouped into batches that could run together."""
    console = _recording_console()
    batches = manifest.build_dependency_graph().execution_batches()
    by_id = {feature.id: feature for feature in manifest.all_features()}

    console.print("[bold]Execution Plan[/bold]")
    for index, batch in enumerate(batches, 1):
        console.print(f"[bold cyan]Batch {index}:[/bold cyan] ({len(batch)} feature(s))")
        for feature_id in batch:
            feature = by_id.get(feature_id)
            if feature is None:
                continue
            if feature.depends_on:
                console.print(f"  - {feature_id} {escape(feature.title)} [dim](depends on: {', '.join(feature.depends_on)})[/dim]")
            else:
                console.print(f"  - {feature_id} {escape(feature.title)}")
    return console.export_text()


def render_feature_tree(manifest: Manifest) -> str:
    console = _recording_console()
    tree = Tree(f"[bold]{escape(manifest.title or 'Features')}[/bold]")

    def add_children(node: Tree, feature_id: str) -> None:
        for child in manifest.children(feature_id):
            branch = node.add(f"{child.id} {escape(child.title)} [dim]({child.status.value})[/dim]")
            add_children(branch, child.id)

    for root in manifest.root_features():
        branch = tree.add(f"{root.id} {escape(root.title)} [dim]({root.status.value})[/dim]")
        add_children(branch, root.id)

    console.print(tree)
    return console.export_text()


def render_run_result(result: RunResult) -> str:
    console = _recording_console()
    if result.no_work:
        if result.status == NO_WORK_ALL_COMPLETED:
            console.print("All features completed.")
        elif result.status == NO_WORK_RUNNING_ELSEWHERE:
            console.print("A feature is currently running in another process.")
        elif result.status == NO_WORK_BLOCKED_BY_FAILURES:
            console.print("No runnable features. Some features are blocked by failed dependencies:")
        elif result.status == NO_WORK_ALL_BLOCKED:
            console.print("No runnable features. All pending features are blocked:")
        else:
            console.print("No runnable features found.")
        for blocked in result.blocked:
            console.print(f"  - {escape(blocked.title)} ({blocked.id}): waiting on {escape(', '.join(blocked.pending_dep_titles))}")
        return console.export_text()

    console.print(f"Feature: {result.feature_id} - {escape(result.feature_title)}")
    console.print(f"Status:  {result.status}")
    console.print(f"Duration: {result.duration_seconds:.0f}s")
    if result.error:
        console.print(f"Error:   {result.error}", markup=False)
    if result.archived:
        console.print(f"All features completed. Source archived to: {result.archive_path}")
    return console.export_text()
