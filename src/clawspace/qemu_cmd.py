"""QEMU command line builder for workspace VMs.

Every workspace runs a q35 machine with a qcow2 system disk, a read-only
cloud-init seed image and user-mode networking.  Guest services are reached
through loopback-only host forwards; the monitor (QMP) and serial console are
TCP servers on their own host ports.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from clawspace import constants
from clawspace._logging import get_logger
from clawspace.exceptions import WorkspaceConfigError

if TYPE_CHECKING:
    from pathlib import Path

    from clawspace.models import PortSet, Workspace

logger = get_logger(__name__)


def hostfwd_rules(ports: PortSet, host: str = constants.LOOPBACK_HOST) -> list[str]:
    """``hostfwd`` entries for every guest service port."""
    pairs = [
        (ports.ssh, constants.GUEST_SSH_PORT),
        (ports.web, constants.GUEST_WEB_PORT),
        (ports.api, constants.GUEST_API_PORT),
        (ports.ui_v1, constants.GUEST_UI_V1_PORT),
        (ports.ui_v2, constants.GUEST_UI_V2_PORT),
        (ports.holvi_proxy, constants.GUEST_HOLVI_PROXY_PORT),
        (ports.infisical_ui, constants.GUEST_INFISICAL_UI_PORT),
    ]
    return [f"hostfwd=tcp:{host}:{host_port}-:{guest_port}" for host_port, guest_port in pairs]


def build_qemu_cmd(workspace: Workspace, qemu_bin: Path, accelerator: str) -> list[str]:
    """Full argv (binary first) for launching ``workspace``.

    Args:
        workspace: Workspace with allocated ports
        qemu_bin: QEMU system emulator binary
        accelerator: Value for ``accel=`` (e.g. ``kvm:tcg``)

    Raises:
        WorkspaceConfigError: Workspace has no ports allocated
    """
    ports = workspace.ports
    if ports is None:
        msg = f"Workspace '{workspace.name or workspace.id}' has no ports allocated"
        raise WorkspaceConfigError(msg, {"workspace_id": workspace.id})

    host = constants.LOOPBACK_HOST
    netdev = ",".join(["user,id=n1", *hostfwd_rules(ports, host)])

    cmd = [
        str(qemu_bin),
        "-machine",
        f"q35,accel={accelerator}",
        "-m",
        str(workspace.memory_mb),
        "-smp",
        str(workspace.cpu_cores),
        "-drive",
        f"file={workspace.disk_path},if=virtio,format=qcow2",
        "-drive",
        f"file={workspace.seed_iso_path},media=cdrom,readonly=on",
        "-netdev",
        netdev,
        "-device",
        "virtio-net-pci,netdev=n1",
        "-qmp",
        f"tcp:{host}:{ports.qmp},server=on,wait=off",
        "-serial",
        f"tcp:{host}:{ports.serial},server=on,wait=off",
        "-display",
        "none",
        "-no-shutdown",
    ]

    logger.debug(
        "Built QEMU command",
        extra={"workspace_id": workspace.id, "accelerator": accelerator, "argc": len(cmd)},
    )
    return cmd
