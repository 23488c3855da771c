"""Build graph reporter — render what happened to every package this run."""

from __future__ import annotations

import io
from enum import Enum

from rich.console import Console
from rich.tree import Tree

from commonbuild.build.cache import ResultsCache
from commonbuild.core.models import Outcome, PackageName, PackageResource

COLLAPSED = "⋯"
LEGEND = "☑ Rebuild Success ☒ Rebuild Failed ☐ Rebuild Blocked ⋯ Uninteresting"


class PackageStatus(str, Enum):
    BLOCKED = "blocked"
    FAILED = "failed"
    REBUILT = "rebuilt"
    UNCHANGED = "unchanged"


STATUS_MARKERS = {
    PackageStatus.BLOCKED: "[yellow]☐[/yellow]",
    PackageStatus.FAILED: "[red]☒[/red]",
    PackageStatus.REBUILT: "[green]☑[/green]",
}


def classify(cache: ResultsCache, name: PackageName) -> PackageStatus:
    """Status of ``name`` in this run of ``cache``."""
    result = cache.get(name)
    if result is None or result.last_attempted_build_id != cache.current_build_id:
        return PackageStatus.UNCHANGED
    if result.outcome is Outcome.SUBNODE_FAIL:
        return PackageStatus.BLOCKED
    if result.outcome is Outcome.NODE_FAIL:
        return PackageStatus.FAILED
    if result.last_build_id_effecting_project == cache.current_build_id:
        return PackageStatus.REBUILT
    return PackageStatus.UNCHANGED


def packages_by_status(cache: ResultsCache) -> dict[PackageStatus, list[PackageName]]:
    grouped: dict[PackageStatus, list[PackageName]] = {status: [] for status in PackageStatus}
    with cache.lock:
        names = list(cache.results)
    for name in names:
        grouped[classify(cache, name)].append(name)
    return grouped


def _title(cache: ResultsCache, name: PackageName) -> str:
    marker = STATUS_MARKERS.get(classify(cache, name))
    return f"{name} {marker}" if marker else name


def build_graph_tree(
    cache: ResultsCache,
    resources: dict[PackageName, PackageResource],
    root: PackageName,
) -> Tree:
    """Tree of the dependency graph rooted at ``Executable(<root>)``.

    A package is expanded the first time it appears only. Unchanged
    children that were already shown collapse into a single ``⋯``.
    """
    tree = Tree(f"[bold]Executable({_title(cache, root)})[/bold]")
    seen: set[PackageName] = set()

    def add(parent: Tree, name: PackageName) -> None:
        node = parent.add(_title(cache, name))
        if name in seen:
            return
        seen.add(name)
        suppressed = False
        resource = resources.get(name)
        for child in resource.subpackage_names if resource else []:
            if child in seen and classify(cache, child) is PackageStatus.UNCHANGED:
                suppressed = True
            else:
                add(node, child)
        if suppressed:
            node.add(f"[dim]{COLLAPSED}[/dim]")

    add(tree, root)
    return tree


def render_build_graph(
    cache: ResultsCache,
    resources: dict[PackageName, PackageResource],
    root: PackageName,
    width: int = 100,
) -> str:
    """Plain-text build graph plus legend."""
    buffer = io.StringIO()
    console = Console(file=buffer, width=width, color_system=None, highlight=False)
    console.print("[bold]Build Graph:[/bold]")
    console.print()
    console.print(build_graph_tree(cache, resources, root))
    console.print()
    console.print(LEGEND, markup=False)
    return buffer.getvalue()
