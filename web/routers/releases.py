"""Base image release endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi import status as http_status

from skyimager.config import Settings
from skyimager.errors import CatalogError, EmptyCatalogError
from skyimager.releases.catalog import list_releases
from web.deps import get_app_settings, http_error

router = APIRouter()


@router.get("")
def list_releases_endpoint(
    pre: bool = Query(False, description="Include pre-releases"),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """List base image releases, newest first.

    Returns:
        The latest tag and all usable releases.
    """
    try:
        found, latest = list_releases(
            url=settings.releases_url,
            timeout=settings.request_timeout,
            include_prereleases=pre or settings.include_prereleases,
            token=settings.github_token,
        )
    except EmptyCatalogError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from e
    except CatalogError as e:
        raise http_error(http_status.HTTP_502_BAD_GATEWAY, e) from e

    return {"latest": latest.tag, "releases": [r.to_dict() for r in found]}
