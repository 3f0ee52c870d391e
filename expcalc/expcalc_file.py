from __future__ import annotations
import os
from decimal import Decimal
from typing import Iterable, Iterator, Mapping, Optional, Tuple

from expcalc.expcalc_runtime import StateFileError, UserFunction
from expcalc.expcalc_printer import plain_string

STATE_EXTENSION = ".ecj"
DEFAULT_STATE_FILE = "default" + STATE_EXTENSION
HEADER = "# Expcalc state file."


def resolve_state_path(name: Optional[str], base_dir: Optional[str] = None) -> str:
    """Maps a state file name to a path under `base_dir` (or the working directory).

    Absolute names and names escaping the base directory are rejected.
    """
    name = (name or DEFAULT_STATE_FILE).strip()
    if os.path.isabs(name) or name.startswith("~"):
        raise StateFileError("state file: the path must be relative.")
    if not name.endswith(STATE_EXTENSION):
        name += STATE_EXTENSION
    base = os.path.realpath(base_dir or os.getcwd())
    path = os.path.realpath(os.path.join(base, name))
    if os.path.commonpath([base, path]) != base:
        raise StateFileError("state file: the path must stay inside the working directory.")
    return path


def format_state(functions: Iterable[UserFunction], variables: Mapping[str, Decimal]) -> str:
    lines = [HEADER, "", "# Functions"]
    lines.extend(f.definition_line() for f in functions)
    lines.extend(["", "# Variables"])
    lines.extend(f"{name} = {plain_string(value)}" for name, value in variables.items())
    return "\n".join(lines) + "\n"


def save_state(name: Optional[str], functions: Iterable[UserFunction], variables: Mapping[str, Decimal],
               *, base_dir: Optional[str] = None) -> str:
    """Writes user definitions to a state file and returns its path."""
    path = resolve_state_path(name, base_dir)
    text = format_state(functions, variables)
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
    except OSError as e:
        raise StateFileError(f"save: unable to write \"{os.path.basename(path)}\".") from e
    return path


def read_definitions(name: Optional[str], *, base_dir: Optional[str] = None) -> Iterator[Tuple[int, str]]:
    """Yields (line number, definition) for each non-comment line of a state file."""
    path = resolve_state_path(name, base_dir)
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except FileNotFoundError as e:
        raise StateFileError(f"load: no such file \"{os.path.basename(path)}\".") from e
    except OSError as e:
        raise StateFileError(f"load: unable to read \"{os.path.basename(path)}\".") from e
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        yield lineno, line
