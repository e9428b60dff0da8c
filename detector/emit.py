"""
detector.emit

AUTHOR: carter-vin

OUTPUT:
- resource JSON on stdout (one object, one line)
- optional output file holding the same object, replaced on every run

Design goals:
- Create output directory if missing
- Replace the file atomically so readers never see a half-written resource
- Provide explicit error surfaces (do not silently drop data)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional


@dataclass(frozen=True)
class EmitTargets:
    """
    Emission destination configuration.
    """

    output_path: Optional[Path] = None
    emit_stdout: bool = True


def write_json_file(output_path: Path, line: str) -> None:
    """
    Write a single JSON string to output_path via a temp file + rename

    Failure semantics:
    - raises on IO errors; caller decides how to handle (CLI exits non-zero)
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output_path.with_name(output_path.name + ".tmp")

    try:
        with tmp_path.open(mode="w", encoding="utf-8", newline="\n") as f:
            f.write(line)
            f.write("\n")
            f.flush()

        os.replace(tmp_path, output_path)
    except OSError:
        # drop the partial temp file
        tmp_path.unlink(missing_ok=True)
        raise


def emit_resource_json(
    resource_json: str,
    targets: EmitTargets,
    *,
    on_write_error: Optional[Callable[[Exception, Path], None]] = None,
) -> None:
    """
    Emit a resource JSON string to configured targets.

    resource_json:
    - must be a single JSON object string (no trailing newline)
    """
    if targets.emit_stdout:
        print(resource_json)

    if targets.output_path is None:
        return

    try:
        write_json_file(targets.output_path, resource_json)
    except Exception as e:
        # Callback allows the caller to surface write errors without coupling modules
        if on_write_error is not None:
            on_write_error(e, targets.output_path)
        raise
