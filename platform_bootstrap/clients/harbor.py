"""Harbor REST API (v2.0) client."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from platform_bootstrap.clients.base import ApiSession


class HarborClient(ApiSession):
    """Basic-auth client for the Harbor admin API."""

    def __init__(self, base_url: str, username: str, password: str, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self.session.auth = (username, password)

    def find_project(self, name: str) -> dict[str, Any] | None:
        for project in self.get_json(f"/projects?name={quote(name)}") or []:
            if project.get("name") == name:
                return project
        return None

    def create_project(self, name: str, public: bool = False) -> None:
        self.post_json(
            "/projects",
            {
                "project_name": name,
                "public": public,
                "metadata": {"public": "true" if public else "false"},
            },
            expected=(201,),
        )

    def find_robot(self, name: str) -> dict[str, Any] | None:
        """Look up a system robot by its short name (without the robot$ prefix)."""
        for robot in self.get_json(f"/robots?q={quote(f'name={name}')}") or []:
            robot_name = robot.get("name", "")
            if robot_name == name or robot_name.endswith(f"${name}"):
                return robot
        return None

    def create_robot(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self.post_json("/robots", payload, expected=(201,))
        return resp.json()

    def update_configurations(self, payload: dict[str, Any], best_effort: bool = False) -> bool:
        resp = self.put_json("/configurations", payload, expected=(200,), best_effort=best_effort)
        return resp.status_code == 200
