from __future__ import annotations

import os


def norm_path(p: str) -> str:
    """Normalize slice entry paths to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments and empty results
    """
    p = p.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError("Path may not contain '..'")
    if not parts:
        raise ValueError("Empty entry path")
    return "/".join(parts)


def join_under(root: str, arc_path: str) -> str:
    """Join a normalized entry path below ``root`` using OS separators."""
    return os.path.join(root, *norm_path(arc_path).split("/"))


def manifest_safe(name: str) -> str:
    # Manifest fields before the detail column must not contain the separator.
    return name.replace(",", "_").replace("\n", "_").replace("\r", "_")
