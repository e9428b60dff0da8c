"""
detector.probes.base
AUTHOR: carter-vin

Light result wrapper -> prevent probe errors from escaping detect()
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ProbeOutcome:
    """
    Normalized probe result
    - ok: false=probe raised, error details in error fields
    - container_id: candidate ID if the probe found one (None = not found)
    """

    name: str
    ok: bool
    container_id: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None


def run_probe(name: str, fn, *args, **kwargs) -> ProbeOutcome:
    """
    Run probe & collect failure as data
    """
    try:
        container_id = fn(*args, **kwargs)
        return ProbeOutcome(name=name, ok=True, container_id=container_id or None)
    except Exception as e:
        return ProbeOutcome(
            name=name,
            ok=False,
            container_id=None,
            error_type=type(e).__name__,
            error_message=str(e),
        )
