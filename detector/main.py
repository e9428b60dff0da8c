"""
detector.main
------------
AUTHOR: carter-vin

PURPOSE:
- CLI entrypoint: detect the container ID once and print it as a resource
- the only place that reads Kubernetes env vars (KubernetesSettings.from_environ)

Key contract:
- `container-id-detector detect` prints {"container.id": "..."} or {}
- `container-id-detector version` executes the version subcommand.
"""

from __future__ import annotations

import platform
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer

from detector.config import (
    DEFAULT_REQUEST_DELAY_S,
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_SERVICE_ACCOUNT_DIR,
    KubernetesSettings,
)
from detector.detect import ContainerIdentityDetector
from detector.emit import EmitTargets, emit_resource_json
from detector.logging import emit_event
from detector.model import DETECTOR_VERSION, resource_to_json
from detector.probes.cgroup import CGROUP_PATH, MOUNTINFO_PATH

# Explicit multi-command CLI
app = typer.Typer(
    add_completion=False,
    help="container-id-detector: container.id resource detection",
)


# -----------------------------
# DATA CLASSES
# -----------------------------
@dataclass(frozen=True)
class EnvironmentInfo:
    """
    Snapshot of the runtime environment
    """

    python_version: str
    os: str
    machine: str
    utc_now: str


def collect_environment_info() -> EnvironmentInfo:
    return EnvironmentInfo(
        python_version=sys.version.split()[0],
        os=f"{platform.system()} {platform.release()}",
        machine=platform.machine(),
        utc_now=datetime.now(timezone.utc).isoformat(),
    )


# -----------------------------
# ROOT COMMAND BEHAVIOR
# -----------------------------
@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """
    Root command behavior.

    If no subcommand is provided print a short hint and exit 0.
    """
    if ctx.invoked_subcommand is None:
        typer.echo("No command provided. Try: container-id-detector --help")


# -----------------------------
# CLI COMMANDS
# -----------------------------
@app.command()
def version() -> None:
    """
    Print detector version & runtime env
    """
    env = collect_environment_info()

    typer.echo(f"container-id-detector v{DETECTOR_VERSION}")
    typer.echo(f"python={env.python_version}")
    typer.echo(f"os={env.os}")
    typer.echo(f"machine={env.machine}")
    typer.echo(f"utc_now={env.utc_now}")


@app.command("detect")
def detect(
    cgroup_path: Path = typer.Option(
        CGROUP_PATH,
        help="cgroup v1 control file to scan.",
    ),
    mountinfo_path: Path = typer.Option(
        MOUNTINFO_PATH,
        help="mountinfo file scanned for the cgroup v2 hostname mount.",
    ),
    service_account_dir: Path = typer.Option(
        DEFAULT_SERVICE_ACCOUNT_DIR,
        help="Directory holding the Kubernetes ca.crt, token and namespace files.",
    ),
    kube_delay: float = typer.Option(
        DEFAULT_REQUEST_DELAY_S,
        help="Seconds to wait before querying the Kubernetes API.",
        min=0.0,
    ),
    kube_timeout: float = typer.Option(
        DEFAULT_REQUEST_TIMEOUT_S,
        help="Timeout (seconds) for the Kubernetes API request.",
        min=0.1,
    ),
    output: Optional[Path] = typer.Option(
        None,
        help="Also write the resource JSON to this file.",
    ),
    no_stdout: bool = typer.Option(
        False,
        "--no-stdout",
        help="Disable printing the resource JSON to stdout.",
    ),
) -> None:
    """
    Detect container.id once and emit it

    Failure semantics:
    - detection never fails; an empty resource ({}) is a valid result
    - if writing --output fails, the command exits non-zero
    """
    emit_event(
        "detector_start",
        mode="detect",
        cgroup_path=str(cgroup_path),
        mountinfo_path=str(mountinfo_path),
    )

    def _on_write_error(e: Exception, path: Path) -> None:
        emit_event(
            "resource_write_failed",
            level="warning",
            output_path=str(path),
            error_type=type(e).__name__,
            message=str(e),
        )

    try:
        settings = KubernetesSettings.from_environ(
            service_account_dir=service_account_dir,
            request_delay_s=kube_delay,
            request_timeout_s=kube_timeout,
        )
        detector = ContainerIdentityDetector(
            kubernetes=settings,
            cgroup_path=cgroup_path,
            mountinfo_path=mountinfo_path,
        )
        identity = detector.detect()

        emit_event(
            "detection_completed",
            found=not identity.is_empty,
            container_id=identity.container_id,
        )

        targets = EmitTargets(output_path=output, emit_stdout=not no_stdout)
        try:
            emit_resource_json(resource_to_json(identity), targets, on_write_error=_on_write_error)
        except OSError:
            raise typer.Exit(code=1)

    finally:
        emit_event("detector_shutdown", mode="detect")


if __name__ == "__main__":
    app()
