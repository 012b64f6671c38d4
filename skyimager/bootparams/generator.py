"""Boot parameter generation.

generate() is a pure function of the BuildConfig: the same configuration
always yields the same parameters, keys included. Callers that want fresh
keys change the configuration's seed.

Address plan, for gateway G:
- hypervisor: G+1
- visors: G+2, G+3, ... with a hypervisor; G+1, G+2, ... without
All addresses must stay inside G's /24 and below its broadcast address.
"""

from __future__ import annotations

import json
import logging
from ipaddress import IPv4Address, IPv4Network

from skyimager.bootparams.keys import derive_secret_key, public_key
from skyimager.bootparams.models import HYPERVISOR, BootParams
from skyimager.buildconfig import BuildConfig
from skyimager.errors import InvalidConfigError
from skyimager.types import ParamsMode

logger = logging.getLogger(__name__)

HYPERVISOR_HOSTNAME = "skyhypervisor"
VISOR_HOSTNAME_FORMAT = "skyvisor-{:02d}"


def _address(gateway: IPv4Address, network: IPv4Network, offset: int) -> IPv4Address:
    try:
        address = gateway + offset
    except ValueError as e:
        raise InvalidConfigError(
            f"Cannot assign address {offset} past gateway {gateway}",
            code="address_range_exhausted",
        ) from e
    if address not in network or address == network.broadcast_address:
        raise InvalidConfigError(
            f"Address {address} falls outside {network} "
            f"(too many images for gateway {gateway})",
            code="address_range_exhausted",
        )
    return address


def _keys(config: BuildConfig, gateway: IPv4Address, label: str) -> tuple[str, str]:
    sk = derive_secret_key(config.seed, str(gateway), config.passcode, label)
    return sk.hex(), public_key(sk).hex()


def generate(config: BuildConfig) -> list[BootParams]:
    """Generate boot parameters for every image a configuration produces.

    Args:
        config: Build configuration.

    Returns:
        ``config.visors`` visor entries followed by one hypervisor entry
        when ``config.hypervisor`` is set.

    Raises:
        InvalidConfigError: If the visor count is negative, the gateway is
            missing, or the address plan leaves the gateway's /24.
    """
    if config.visors < 0:
        raise InvalidConfigError(f"Cannot create {config.visors} visor images")
    if config.image_count == 0:
        return []
    if config.gateway_ip is None:
        raise InvalidConfigError("gateway_ip is required when building images")

    gateway = IPv4Address(config.gateway_ip)
    network = IPv4Network(f"{gateway}/24", strict=False)

    hypervisor: BootParams | None = None
    if config.hypervisor:
        sk, pk = _keys(config, gateway, HYPERVISOR)
        hypervisor = BootParams(
            index=HYPERVISOR,
            mode=ParamsMode.HYPERVISOR,
            local_ip=_address(gateway, network, 1),
            gateway_ip=gateway,
            hostname=HYPERVISOR_HOSTNAME,
            passcode=config.passcode,
            local_sk=sk,
            local_pk=pk,
        )

    first = 2 if hypervisor is not None else 1
    trusted = (hypervisor.local_pk,) if hypervisor is not None else ()

    params: list[BootParams] = []
    for i in range(config.visors):
        sk, pk = _keys(config, gateway, str(i))
        params.append(
            BootParams(
                index=i,
                mode=ParamsMode.VISOR,
                local_ip=_address(gateway, network, first + i),
                gateway_ip=gateway,
                hostname=VISOR_HOSTNAME_FORMAT.format(i + 1),
                passcode=config.passcode,
                local_sk=sk,
                local_pk=pk,
                hypervisor_pks=trusted,
            )
        )

    if hypervisor is not None:
        params.append(hypervisor)

    logger.debug(
        "Generated %d boot parameter set(s) for gateway %s", len(params), gateway
    )
    return params


def render_params(params: list[BootParams], include_secrets: bool = True) -> str:
    """Render boot parameters as JSON text for review before building."""
    return json.dumps(
        [p.to_dict(include_secrets=include_secrets) for p in params], indent=2
    )


__all__ = [
    "HYPERVISOR_HOSTNAME",
    "VISOR_HOSTNAME_FORMAT",
    "generate",
    "render_params",
]
