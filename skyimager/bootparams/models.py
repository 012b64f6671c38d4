"""Boot parameter data model."""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address
from typing import Any

from skyimager.types import ParamsMode

# Index sentinel of the hypervisor entry
HYPERVISOR = "hypervisor"


@dataclass(frozen=True)
class BootParams:
    """Per-board configuration injected into one final image.

    Attributes:
        index: Position of the visor (0-based), or HYPERVISOR.
        mode: Board role.
        local_ip: Address assigned to the board.
        gateway_ip: Gateway shared by all boards.
        hostname: Board hostname.
        passcode: Skysocks passcode shared by all boards.
        local_sk: Secret key of the board (hex).
        local_pk: Compressed public key of the board (hex).
        hypervisor_pks: Public keys of hypervisors the board trusts (hex).
    """

    index: int | str
    mode: ParamsMode
    local_ip: IPv4Address
    gateway_ip: IPv4Address
    hostname: str
    passcode: str = ""
    local_sk: str = ""
    local_pk: str = ""
    hypervisor_pks: tuple[str, ...] = ()

    @property
    def is_hypervisor(self) -> bool:
        return self.mode == ParamsMode.HYPERVISOR

    @property
    def label(self) -> str:
        """File stem of the final image built from these parameters."""
        return str(self.index)

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "mode": self.mode.value,
            "hostname": self.hostname,
            "local_ip": str(self.local_ip),
            "gateway_ip": str(self.gateway_ip),
            "local_pk": self.local_pk,
            "hypervisor_pks": list(self.hypervisor_pks),
        }
        if include_secrets:
            data["local_sk"] = self.local_sk
            data["passcode"] = self.passcode
        return data


__all__ = ["HYPERVISOR", "BootParams"]
