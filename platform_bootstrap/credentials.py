"""
Local credential files.

The OIDC client secret map is the only state carried between runs; the rest
are outputs for the operator (robot credentials, the credentials log).
Every file is written with mode 0600.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import yaml

from platform_bootstrap.constants import HARBOR_VALUES_FILE
from platform_bootstrap.errors import BootstrapError

if TYPE_CHECKING:
    from platform_bootstrap.config import PlatformConfig

logger = logging.getLogger(__name__)

DRY_RUN_TOKEN = "dry-run-token"


def write_private(path: str | Path, content: str) -> None:
    """Write ``content`` to ``path`` readable by the owner only."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    os.chmod(path, 0o600)


class SecretStore:
    """JSON map of OIDC client id to client secret."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, str]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text() or "{}")
        except json.JSONDecodeError as exc:
            raise BootstrapError(f"Corrupt secrets file {self.path}: {exc}") from exc
        return data if isinstance(data, dict) else {}

    def get(self, client_id: str) -> str | None:
        return self.load().get(client_id) or None

    def set(self, client_id: str, secret: str) -> None:
        data = self.load()
        data[client_id] = secret
        write_private(self.path, json.dumps(data, indent=2, sort_keys=True) + "\n")


def save_robot_credentials(path: str | Path, robots: dict[str, dict[str, str]]) -> None:
    """Persist ``{"ci_push": {"name", "secret"}, "cluster_pull": {...}}``."""
    write_private(path, json.dumps(robots, indent=2) + "\n")


def load_robot_credentials(path: str | Path) -> dict[str, dict[str, str]]:
    path = Path(path)
    if not path.is_file():
        return {}
    try:
        return json.loads(path.read_text() or "{}")
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable robot credentials file %s", path)
        return {}


def append_credentials(path: str | Path, title: str, lines: list[str]) -> None:
    """Append a titled section to the plaintext credentials log."""
    path = Path(path)
    existing = path.read_text() if path.is_file() else (
        "# Platform credentials\n"
        "# WARNING: contains secrets. Store securely and do NOT commit to git.\n"
    )
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    section = ["", f"# {title} ({stamp})"] + [f"  {line}" for line in lines]
    write_private(path, existing.rstrip("\n") + "\n" + "\n".join(section) + "\n")


def resolve_gitlab_token(
    config: PlatformConfig,
    prompt: Callable[[str], str] = getpass.getpass,
) -> str:
    """
    GitLab API token: GITLAB_API_TOKEN, then the token file, then a prompt.

    A prompted token is saved to the token file for later runs. A dry run
    never prompts and falls back to ``DRY_RUN_TOKEN``.

    Raises:
        BootstrapError: If no token could be obtained
    """
    token = config.env.get("GITLAB_API_TOKEN", "").strip()
    if token:
        return token
    token_file = config.gitlab_token_file
    if token_file.is_file():
        token = token_file.read_text().strip()
        if token:
            return token
    if config.dry_run:
        return DRY_RUN_TOKEN
    token = prompt(f"GitLab API token (api scope) for https://gitlab.{config.domain}: ").strip()
    if not token:
        raise BootstrapError("No GitLab API token provided")
    write_private(token_file, token + "\n")
    logger.info("Saved GitLab API token to %s", token_file)
    return token


def harbor_admin_password(config: PlatformConfig) -> str:
    """
    Harbor admin password from the Harbor values file or HARBOR_ADMIN_PASSWORD.

    A substituted (non-placeholder) value in the values file wins.

    Raises:
        BootstrapError: If neither source provides it
    """
    values_path = config.services_dir / HARBOR_VALUES_FILE
    if values_path.is_file():
        text = values_path.read_text()
        try:
            values = yaml.safe_load(text) or {}
        except yaml.YAMLError:
            m = re.search(r'harborAdminPassword:\s*"([^"]*)"', text)
            values = {"harborAdminPassword": m.group(1)} if m else {}
        from_file = str(values.get("harborAdminPassword") or "")
        if from_file and not from_file.startswith("CHANGEME"):
            return from_file
    password = config.env.get("HARBOR_ADMIN_PASSWORD", "")
    if not password:
        raise BootstrapError(
            f"Harbor admin password not found (set HARBOR_ADMIN_PASSWORD or {values_path})"
        )
    return password
