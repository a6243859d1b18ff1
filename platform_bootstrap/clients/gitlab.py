"""GitLab REST API (v4) client."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from platform_bootstrap.clients.base import ApiSession


class GitLabClient(ApiSession):
    """Authenticates every call with a ``PRIVATE-TOKEN`` header."""

    def __init__(self, base_url: str, token: str, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self.session.headers["PRIVATE-TOKEN"] = token

    def version(self) -> dict[str, Any]:
        return self.get_json("/version") or {}

    def current_user(self) -> dict[str, Any]:
        return self.get_json("/user") or {}

    def find_group(self, path: str) -> dict[str, Any] | None:
        for group in self.get_json(f"/groups?search={quote(path)}") or []:
            if group.get("path") == path:
                return group
        return None

    def create_group(self, name: str, path: str, visibility: str = "private") -> dict[str, Any]:
        resp = self.post_json(
            "/groups",
            {"name": name, "path": path, "visibility": visibility},
            expected=(201,),
        )
        return resp.json()

    def find_project(self, path: str, namespace_path: str) -> dict[str, Any] | None:
        for project in self.get_json(f"/projects?search={quote(path)}") or []:
            namespace = project.get("namespace") or {}
            if project.get("path") == path and namespace.get("path") == namespace_path:
                return project
        return None

    def create_project(self, name: str, namespace_id: int, visibility: str = "private") -> dict[str, Any]:
        resp = self.post_json(
            "/projects",
            {
                "name": name,
                "path": name,
                "namespace_id": namespace_id,
                "visibility": visibility,
                "initialize_with_readme": False,
            },
            expected=(201,),
        )
        return resp.json()

    def add_deploy_key(self, project_id: int, title: str, key: str, can_push: bool = False) -> bool:
        """Register a deploy key. Best-effort: False when GitLab refuses it."""
        resp = self.post_json(
            f"/projects/{project_id}/deploy_keys",
            {"title": title, "key": key, "can_push": can_push},
            expected=(201,),
            best_effort=True,
        )
        return resp.status_code == 201
