"""
detector.probes.cgroup
AUTHOR: carter-vin

cgroup / mountinfo probes
- cgroup v1: ID is the last path segment of /proc/self/cgroup, optionally
  wrapped as "<runtime>-<id>.<suffix>" (crio-, docker-, .scope)
- cgroup v2: /proc/self/cgroup carries no ID; the hostname bind mount in
  /proc/self/mountinfo embeds the full 64-char ID as a path segment
- stdlib only, line-by-line scan with early exit
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from detector.hexid import is_valid_hex
from detector.logging import emit_event
from detector.model import ParseMode

CGROUP_PATH = Path("/proc/self/cgroup")
MOUNTINFO_PATH = Path("/proc/self/mountinfo")

HOSTNAME_MARKER = "hostname"

# <prefix>/<segment>/<64 id chars>/<suffix>
# The ID group cannot contain "/" and is flanked by separators, so it always
# spans exactly one path segment.
V2_LINE_PATTERN = re.compile(r"^.*/.+/([A-Za-z0-9_.-]{64})/.*$")


def extract_id_v1(line: str) -> Optional[str]:
    """
    Container ID from a cgroup v1 line, None if not found
    """
    last_slash = line.rfind("/")
    if last_slash < 0:
        return None

    section = line[last_slash + 1:]
    # Both delimiters are located independently on the same section; a "."
    # before the "-" gives an empty slice and is rejected below.
    dash = section.rfind("-")
    dot = section.rfind(".")

    start = 0 if dash == -1 else dash + 1
    end = len(section) if dot == -1 else dot

    candidate = section[start:end]
    if not is_valid_hex(candidate):
        return None
    return candidate


def extract_id_v2(line: str) -> Optional[str]:
    """
    Container ID from a cgroup v2 mountinfo line, None if not found
    """
    if HOSTNAME_MARKER not in line:
        return None

    match = V2_LINE_PATTERN.match(line)
    if match is None:
        return None

    candidate = match.group(1)
    if not is_valid_hex(candidate):
        return None
    return candidate


_EXTRACTORS = {
    ParseMode.CGROUP_V1: extract_id_v1,
    ParseMode.CGROUP_V2: extract_id_v2,
}


def scan_container_id(path: Path, mode: ParseMode) -> Optional[str]:
    """
    Scan a cgroup/mountinfo file and return the first valid container ID

    Unreadable files (missing, directory, permission denied) count as
    "not found" for this strategy.
    """
    extract = _EXTRACTORS.get(mode)
    if extract is None:
        raise ValueError(f"not a file-based parse mode: {mode}")

    try:
        with Path(path).open(encoding="utf-8", errors="replace") as f:
            for raw_line in f:
                line = raw_line.rstrip("\r\n")
                if not line:
                    continue
                container_id = extract(line)
                if container_id:
                    return container_id
    except OSError as e:
        emit_event(
            "file_read_failed",
            level="debug",
            probe=mode.value,
            path=str(path),
            error_type=type(e).__name__,
            message=str(e),
        )
    return None
