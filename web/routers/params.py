"""Boot parameter preview endpoints."""

import secrets
from typing import Any

from fastapi import APIRouter, Depends
from fastapi import status as http_status
from pydantic import BaseModel, Field

from skyimager.bootparams.generator import generate
from skyimager.buildconfig import parse_build_config
from skyimager.config import Settings
from skyimager.errors import InvalidConfigError
from web.deps import get_app_settings, http_error

router = APIRouter()


class ParamsRequest(BaseModel):
    """Request body for a boot parameter preview."""

    gateway_ip: str | None = None
    visors: int | None = None
    hypervisor: bool = True
    passcode: str = ""
    seed: str | None = None
    include_secrets: bool = Field(
        default=False, description="Include secret keys and passcode"
    )


@router.post("")
def preview_params(
    request: ParamsRequest,
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Generate the boot parameters a build would use, without building.

    Returns:
        The seed used and one entry per image.
    """
    data = {
        "work_dir": settings.work_dir,
        "gateway_ip": request.gateway_ip or settings.default_gateway_ip,
        "visors": (
            settings.default_visors if request.visors is None else request.visors
        ),
        "hypervisor": request.hypervisor,
        "passcode": request.passcode,
        "seed": request.seed or secrets.token_hex(16),
    }
    try:
        config = parse_build_config(data)
        boot_params = generate(config)
    except InvalidConfigError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from e

    return {
        "seed": config.seed,
        "params": [
            p.to_dict(include_secrets=request.include_secrets) for p in boot_params
        ],
    }
