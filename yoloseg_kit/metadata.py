from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Union

from .errors import ResourceError

PathLike = Union[str, Path]


def _parse_label_lines(lines: Iterable[str]) -> Dict[int, str]:
    # Line index is the class id, blank lines included.
    return {i: line.rstrip("\r\n").strip() for i, line in enumerate(lines)}


def _parse_names_yaml(lines: Iterable[str]) -> Dict[int, str]:
    """
    Parse the lightweight `names:` mapping format:

        names:
          0: person
          1: bicycle
    """

    names: Dict[int, str] = {}
    in_names = False
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line == "names:":
            in_names = True
            continue
        if not in_names or ":" not in line:
            continue
        left, right = line.split(":", 1)
        left = left.strip()
        if not left.isdigit():
            continue
        names[int(left)] = right.strip().strip("'").strip('"')
    return names


def load_label_map(path: PathLike) -> Mapping[int, str]:
    """
    Load class names keyed by class id.

    Plain text files hold one name per line (0-based line index = class id);
    `.yaml` / `.yml` files use the `names:` mapping. The returned mapping is
    read-only so it can be shared by the session for its whole lifetime.
    """

    p = Path(path)
    if not p.is_file():
        raise ResourceError(f"Labels file not found: {p}")
    try:
        with open(p, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except (OSError, UnicodeDecodeError) as exc:
        raise ResourceError(f"Failed to read labels file {p}: {exc}") from exc

    if p.suffix.lower() in {".yaml", ".yml"}:
        names = _parse_names_yaml(lines)
    else:
        names = _parse_label_lines(lines)

    if not names or not any(names.values()):
        raise ResourceError(f"Labels file has no class names: {p}")
    return MappingProxyType(names)
