"""Security utilities: workspace containment and command filtering."""

import re
from pathlib import Path


class PathContainmentError(PermissionError):
    """A path or working directory resolved outside the workspace root."""


DENY_PATTERNS = (
    # rm with a recursive and a force flag anywhere before the next command separator
    r"\brm\b(?=[^;&|\n]*\s-(?:-recursive\b|[a-z]*r))(?=[^;&|\n]*\s-(?:-force\b|[a-z]*f))",
    r"\bdel\s+/[fq]\b",
    r"\brmdir\s+/s\b",
    r"\bformat\s+[a-z]:",
    r"\b(mkfs(\.\w+)?|diskpart)\b",
    r"\bdd\s+if=",
    r">\s*/dev/sd",
    r"\b(shutdown|reboot|poweroff|halt)\b",
    r":\(\)\s*\{.*\};\s*:",
)


def _is_inside(root: Path, target: Path) -> bool:
    return target == root or root in target.parents


def resolve_workspace_path(workspace: str | Path, input_path: str) -> Path:
    """Resolve ``input_path`` against the workspace and require it to stay inside."""
    root = Path(workspace).expanduser().resolve()
    target = (root / Path(input_path).expanduser()).resolve()
    if not _is_inside(root, target):
        raise PathContainmentError("path must be inside workspace")
    return target


def resolve_working_dir(workspace: str | Path, working_dir: str | None = None) -> Path:
    """Validate an optional working directory; defaults to the workspace root."""
    root = Path(workspace).expanduser().resolve()
    if not working_dir:
        return root
    target = (root / Path(working_dir).expanduser()).resolve()
    if not _is_inside(root, target):
        raise PathContainmentError("working_dir must be inside workspace")
    return target


def find_denied_pattern(command: str, patterns: tuple[str, ...] | list[str] = DENY_PATTERNS) -> str | None:
    """Return the first deny pattern matching ``command`` (case-insensitive), if any."""
    lowered = command.strip().lower()
    for pattern in patterns:
        if re.search(pattern, lowered, flags=re.IGNORECASE):
            return pattern
    return None
