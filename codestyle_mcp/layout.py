"""Plain-text pieces handed to the prompt formatter.

Nothing here touches the filesystem; callers pass in manifests and contents.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .indexer import ScoredResult
from .schema import TemplateFile

_BRANCH = "├── "
_LAST = "└── "
_PIPE = "│   "
_BLANK = "    "


def _insert_path(tree: dict, parts: Sequence[str]) -> None:
    node = tree
    for part in parts:
        node = node.setdefault(part, {})


def _render(node: dict, prefix: str, lines: list[str]) -> None:
    names = list(node)
    for idx, name in enumerate(names):
        last = idx == len(names) - 1
        lines.append(f"{prefix}{_LAST if last else _BRANCH}{name}")
        _render(node[name], prefix + (_BLANK if last else _PIPE), lines)


def tree_string(group_id: str, artifact_id: str, files: Iterable[TemplateFile]) -> str:
    """Directory tree of the group rooted at ``group/artifact``.

    Entries keep manifest order so the tree reads the way the group was
    published.
    """
    tree: dict = {}
    for item in files:
        _insert_path(tree, [item.version, *item.directory_segments, item.filename])
    lines = [f"{group_id}/{artifact_id}"]
    _render(tree, "", lines)
    return "\n".join(lines)


def variables_string(files: Iterable[TemplateFile]) -> str:
    """One ``name: comment[type]`` line per variable; first declaration wins."""
    seen: dict[str, str] = {}
    for item in files:
        for var in item.input_variables:
            if not var.variable_name:
                continue
            seen.setdefault(var.variable_name, f"{var.variable_comment}[{var.variable_type}]")
    return "\n".join(f"{name}: {desc}" for name, desc in seen.items())


def content_string(contents: Iterable[str | None]) -> str:
    return "".join(f"```\n{text or ''}\n```\n" for text in contents)


def _summary(description: str, width: int = 120) -> str:
    first = description.strip().splitlines()[0] if description.strip() else ""
    return first if len(first) <= width else first[: width - 3] + "..."


def namespace_listing(results: Iterable[ScoredResult]) -> str:
    lines = []
    for result in results:
        summary = _summary(result.description)
        lines.append(f"- {result.artifact_id}: {summary}" if summary else f"- {result.artifact_id}")
    return "\n".join(lines)


def candidates_listing(results: Iterable[ScoredResult]) -> str:
    lines = []
    for result in results:
        key = f"{result.group_id}/{result.artifact_id}"
        summary = _summary(result.description)
        lines.append(f"- {key}: {summary}" if summary else f"- {key}")
    return "\n".join(lines)
