"""Configuration endpoints."""

import json
from typing import Any

from fastapi import APIRouter, Depends

from skyimager.config import Settings, print_settings_json
from web.deps import get_app_settings

router = APIRouter()


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Get effective configuration.

    The GitHub token is never returned.

    Returns:
        Current configuration as JSON.
    """
    data: dict[str, Any] = json.loads(print_settings_json(settings))
    data["github_token_set"] = settings.github_token is not None
    return data
