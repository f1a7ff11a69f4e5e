"""
Reader for deal.II-style parameter files:

    # comment
    subsection Physical constants
      set Dext = 1.0
      set Alpha coefficient = 0.1
    end

A line ending in a backslash continues on the next line. Values stay strings;
nested subsections become nested dicts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple

from .types import CaseConfigError

PrmTree = Dict[str, Any]


def _logical_lines(text: str, source: str) -> Iterator[Tuple[int, str]]:
    """Join backslash continuations; yield (first line number, joined line)."""
    parts: List[str] = []
    start = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        if not parts:
            start = lineno
        line = raw.rstrip()
        if line.endswith("\\"):
            parts.append(line[:-1])
            continue
        parts.append(line)
        yield start, " ".join(p.strip() for p in parts)
        parts = []
    if parts:
        raise CaseConfigError(f"{source}:{start}: line continuation at end of file")


def parse_prm(text: str, *, source: str = "<string>") -> PrmTree:
    root: PrmTree = {}
    stack: List[PrmTree] = [root]
    names: List[str] = []

    for lineno, raw in _logical_lines(text, source):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        head, _, rest = line.partition(" ")
        rest = rest.strip()

        if head == "subsection":
            if not rest:
                raise CaseConfigError(f"{source}:{lineno}: subsection without a name")
            child = stack[-1].setdefault(rest, {})
            if not isinstance(child, dict):
                raise CaseConfigError(f"{source}:{lineno}: {rest!r} is both a value and a subsection")
            stack.append(child)
            names.append(rest)
        elif head == "end":
            if len(stack) == 1:
                raise CaseConfigError(f"{source}:{lineno}: 'end' without matching subsection")
            stack.pop()
            names.pop()
        elif head == "set":
            key, sep, value = rest.partition("=")
            key = key.strip()
            if not sep or not key:
                raise CaseConfigError(f"{source}:{lineno}: expected 'set <key> = <value>', got {raw.strip()!r}")
            stack[-1][key] = value.strip()
        else:
            raise CaseConfigError(f"{source}:{lineno}: unrecognized statement {raw.strip()!r}")

    if len(stack) != 1:
        raise CaseConfigError(f"{source}: unterminated subsection {' / '.join(names)!r}")
    return root


def read_prm(path: str | Path) -> PrmTree:
    path = Path(path)
    return parse_prm(path.read_text(encoding="utf-8"), source=str(path))
