#!/usr/bin/env python

import unittest
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml

from platform_bootstrap.errors import ApiError, BootstrapError, CommandError
from platform_bootstrap.flows import gitlab_services
from platform_bootstrap.flows.gitlab_services import GitLabServicesSetup
from platform_bootstrap.services import ServiceDescriptor, SyncPolicy
from tests.helpers import make_config

SERVICES = [
    ServiceDescriptor("keycloak", "services/keycloak", "keycloak"),
    ServiceDescriptor("vault", "services/vault", "vault", SyncPolicy.MANUAL),
]


def test_repo_creds_secret_matches_group():
    doc = yaml.safe_load(gitlab_services.repo_creds_secret("example.org", "PRIVATE KEY"))

    assert doc["metadata"]["labels"] == {"argocd.argoproj.io/secret-type": "repo-creds"}
    assert doc["stringData"]["url"] == "git@gitlab.example.org:platform_services"
    assert doc["stringData"]["sshPrivateKey"] == "PRIVATE KEY"


@patch("builtins.print")
@patch("platform_bootstrap.flows.gitlab_services.shutil.which", return_value="/usr/bin/tool")
class TestGitLabServicesSetup(unittest.TestCase):
    """Test cases for the gitlab-services flow phases."""

    @pytest.fixture(autouse=True)
    def _repo(self, tmp_path):
        self.tmp_path = tmp_path

    def setUp(self):
        self.gitlab = MagicMock()
        self.gitlab.version.return_value = {"version": "17.5.0"}
        self.gitlab.current_user.return_value = {"username": "root"}
        self.kubectl = MagicMock()
        self.gitlab_factory = MagicMock(return_value=self.gitlab)

    def _setup(self, dry_run=False, **env):
        return GitLabServicesSetup(
            config=make_config(self.tmp_path, dry_run=dry_run, **env),
            kubectl=self.kubectl,
            cluster_name="rke2-prod",
            services=SERVICES,
            gitlab_factory=self.gitlab_factory,
            sleep=lambda seconds: None,
        )

    def _service_dirs(self, setup):
        for service in SERVICES:
            path = setup.config.path(service.source_path)
            path.mkdir(parents=True, exist_ok=True)
            (path / "deployment.yaml").write_text("host: CHANGEME_DOMAIN\n")

    def test_repo_url(self, _which, _print):
        setup = self._setup()
        self.assertEqual(
            setup.repo_url(SERVICES[1]), "git@gitlab.example.org:platform_services/svc-example-vault.git",
        )

    def test_prerequisites_authenticate(self, _which, _print):
        setup = self._setup(GITLAB_API_TOKEN="glpat-x")

        gitlab_services.check_prerequisites(setup)

        self.gitlab_factory.assert_called_once_with("https://gitlab.example.org/api/v4", "glpat-x", verify=False)
        self.assertIs(setup.gitlab, self.gitlab)
        self.assertTrue(setup.checked)

    def test_rejected_token(self, _which, _print):
        self.gitlab.version.side_effect = ApiError("GET", "https://gitlab/api/v4/version", 401)

        with self.assertRaises(BootstrapError) as ctx:
            gitlab_services.check_prerequisites(self._setup(GITLAB_API_TOKEN="bad"))
        self.assertIn("token rejected", str(ctx.exception))

    def test_unreachable_gitlab(self, _which, _print):
        self.gitlab.version.side_effect = requests.ConnectionError("no route")

        with self.assertRaises(BootstrapError) as ctx:
            gitlab_services.check_prerequisites(self._setup(GITLAB_API_TOKEN="glpat-x"))
        self.assertIn("not reachable", str(ctx.exception))

    def test_missing_commands(self, mock_which, _print):
        mock_which.side_effect = lambda cmd: None if cmd == "ssh-keyscan" else "/bin/x"

        with self.assertRaises(BootstrapError) as ctx:
            gitlab_services.check_prerequisites(self._setup(GITLAB_API_TOKEN="glpat-x"))
        self.assertIn("ssh-keyscan", str(ctx.exception))

    def test_offline_dry_run_makes_no_api_calls(self, _which, _print):
        setup = self._setup(dry_run=True)
        self._service_dirs(setup)

        gitlab_services.check_prerequisites(setup)
        gitlab_services.create_group(setup)
        gitlab_services.create_projects(setup)

        self.gitlab_factory.assert_not_called()
        self.assertIsNone(setup.gitlab)
        self.assertEqual(setup.pushed, {})

    def test_resume_authenticates_once(self, _which, _print):
        setup = self._setup(GITLAB_API_TOKEN="glpat-x")
        self.gitlab.find_group.return_value = None
        self.gitlab.create_group.return_value = {"id": 42}

        gitlab_services.create_group(setup)

        self.gitlab_factory.assert_called_once()
        self.assertEqual(setup.group_id, 42)

    def test_projects_need_group_when_resuming(self, _which, _print):
        setup = self._setup(GITLAB_API_TOKEN="glpat-x")
        self.gitlab.find_group.return_value = None

        with self.assertRaises(BootstrapError):
            gitlab_services.create_projects(setup)

    @patch("platform_bootstrap.flows.gitlab_services.push_service_repo")
    def test_projects_created_with_deploy_key(self, mock_push, _which, _print):
        setup = self._setup(GITLAB_API_TOKEN="glpat-x")
        self._service_dirs(setup)
        setup.deploy_key.parent.mkdir(parents=True)
        setup.deploy_key.with_name(setup.deploy_key.name + ".pub").write_text("ssh-ed25519 AAAA argocd\n")
        self.gitlab.find_group.return_value = {"id": 42}
        self.gitlab.find_project.return_value = None
        self.gitlab.create_project.side_effect = [{"id": 1}, {"id": 2}]
        mock_push.side_effect = [None, CommandError("push rejected")]

        gitlab_services.create_projects(setup)

        self.assertEqual(
            [call.args[:2] for call in self.gitlab.create_project.call_args_list],
            [("svc-example-keycloak", 42), ("svc-example-vault", 42)],
        )
        self.gitlab.add_deploy_key.assert_any_call(1, "ArgoCD Deploy Key", "ssh-ed25519 AAAA argocd")
        self.assertEqual(list(setup.pushed), ["keycloak"])

    def test_applications_written(self, _which, _print):
        setup = self._setup()
        app_of_apps = setup.config.path("services/argo/bootstrap/app-of-apps.yaml")
        app_of_apps.parent.mkdir(parents=True)
        app_of_apps.write_text("repoURL: CHANGEME_GIT_REPO_URL\n")
        self.kubectl.kubectl.return_value = MagicMock(returncode=0, stdout="Synced")

        with patch("platform_bootstrap.flows.gitlab_services.kube.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1)
            gitlab_services.write_applications(setup)

        apps_dir = setup.config.path("services/argo/bootstrap/apps")
        vault = yaml.safe_load((apps_dir / "vault.yaml").read_text())
        self.assertEqual(vault["spec"]["source"]["repoURL"], setup.repo_url(SERVICES[1]))
        self.assertEqual(vault["spec"]["source"]["path"], "overlays/rke2-prod")
        self.assertNotIn("automated", vault["spec"]["syncPolicy"])
        self.kubectl.apply_yaml.assert_called_once_with("repoURL: git@github.com:acme/rke2-cluster.git\n")

    def test_applications_dry_run(self, _which, _print):
        setup = self._setup(dry_run=True)

        gitlab_services.write_applications(setup)

        self.assertFalse(setup.config.path("services/argo/bootstrap/apps").exists())
        self.kubectl.apply_yaml.assert_not_called()

    def test_known_hosts_merged(self, _which, _print):
        setup = self._setup()
        self.kubectl.kubectl.return_value = MagicMock(returncode=0, stdout="github.com ssh-ed25519 AAAA")
        self.kubectl.patch_merge.return_value = True

        with patch("platform_bootstrap.flows.gitlab_services.kube.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="gitlab.example.org ssh-ed25519 BBBB\n")
            gitlab_services.update_known_hosts(setup)

        patch_body = self.kubectl.patch_merge.call_args.args[3]
        self.assertIn("github.com ssh-ed25519 AAAA", patch_body)
        self.assertIn("gitlab.example.org ssh-ed25519 BBBB", patch_body)


if __name__ == "__main__":
    unittest.main()
