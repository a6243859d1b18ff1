"""Builders shared by the test modules."""

from __future__ import annotations

import base64
from pathlib import Path
from unittest.mock import MagicMock

from platform_bootstrap.config import PlatformConfig, load_platform_config

BASE_ENV = {
    "DOMAIN": "example.org",
    "GIT_REPO_URL": "git@github.com:acme/rke2-cluster.git",
}


def make_config(repo_root: Path, dry_run: bool = False, **env: str) -> PlatformConfig:
    """PlatformConfig rooted at a temporary directory, without touching git."""
    return load_platform_config(repo_root, environ={**BASE_ENV, **env}, dry_run=dry_run)


def write_tfvars(repo_root: Path, **values: str) -> Path:
    path = Path(repo_root) / "cluster" / "terraform.tfvars"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f'{key} = "{value}"\n' for key, value in values.items()))
    return path


def secret_object(**values: str) -> MagicMock:
    """Stand-in for a V1Secret with base64-encoded data."""
    secret = MagicMock()
    secret.data = {k: base64.b64encode(v.encode()).decode() for k, v in values.items()}
    return secret


def create_mock_response(json_data=None, status_code: int = 200, headers: dict | None = None) -> MagicMock:
    """requests.Response stand-in carrying a JSON body and a status."""
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = json_data
    mock_response.content = b"{}" if json_data is not None else b""
    mock_response.text = str(json_data) if json_data is not None else ""
    mock_response.headers = headers or {}
    return mock_response
