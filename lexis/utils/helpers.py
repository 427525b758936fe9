"""Small text, time and JSON helpers shared across the reader."""
from __future__ import annotations

import os
import re
import time
from pathlib import Path
from typing import Any

import orjson

_SPACE_RUNS = re.compile(r" {2,}")


# --- Text ---------------------------------------------------------------------

def normalise_paragraph(text: str) -> str:
    """Collapse runs of interior spaces and trim."""
    return _SPACE_RUNS.sub(" ", text).strip()


def shorten(text: str, max_chars: int = 60) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def now_ms() -> float:
    return time.time() * 1000.0


# --- JSON files ---------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    """Write JSON to a sibling temp file, then rename it over the target."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))
    os.replace(tmp, path)


def load_json(path: str | Path) -> Any:
    return orjson.loads(Path(path).read_bytes())
