from __future__ import annotations

import logging
import os
from typing import Final, Literal
from urllib.parse import unquote, urlparse

from . import utils
from .ado_client import AzureDevOpsClient

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

Side = Literal["source", "target"]

DEFAULT_HOST: Final[str] = "https://dev.azure.com"
_TOKEN_ENV_VARS: Final[dict[Side, str]] = {"source": "ADO_SOURCE_PAT", "target": "ADO_TARGET_PAT"}
_DEFAULT_TOKEN_PASS_PATHS: Final[dict[Side, str]] = {
    "source": "azure-devops/source/pat",
    "target": "azure-devops/target/pat",
}


def get_token(side: Side, pass_path: str | None = None) -> str | None:
    """Get a PAT from pass path, env var ADO_<SIDE>_PAT, or default pass location."""
    if pass_path:
        return utils.get_pass_value(pass_path)

    token: str | None = os.environ.get(_TOKEN_ENV_VARS[side])
    if token:
        return token

    try:
        return utils.get_pass_value(_DEFAULT_TOKEN_PASS_PATHS[side])
    except (ValueError, OSError, utils.PassError):
        logger.warning(f"No {side} Azure DevOps token specified nor found")
        return None


def parse_project_url(value: str) -> tuple[str, str]:
    """Split ``https://dev.azure.com/org/project`` or ``org/project`` into (org URL, project).

    Legacy ``https://org.visualstudio.com/project`` URLs are accepted as well.

    Raises:
        ValueError: If no project can be found in the value
    """
    if "://" not in value:
        value = f"{DEFAULT_HOST}/{value.strip('/')}"

    parsed = urlparse(value)
    segments = [unquote(s) for s in parsed.path.split("/") if s]
    base = f"{parsed.scheme}://{parsed.netloc}"

    if parsed.netloc.lower().endswith(".visualstudio.com"):
        if len(segments) < 1:
            msg = f"No project in Azure DevOps URL: {value}"
            raise ValueError(msg)
        return base, segments[0]

    if len(segments) < 2:  # noqa: PLR2004
        msg = f"Expected <org>/<project> in Azure DevOps URL: {value}"
        raise ValueError(msg)
    return f"{base}/{segments[0]}", segments[1]


def get_client(project_url: str, token: str | None = None) -> AzureDevOpsClient:
    """Get an Azure DevOps client for the project at ``project_url``."""
    org_url, project = parse_project_url(project_url)
    return AzureDevOpsClient(org_url, project, token)
