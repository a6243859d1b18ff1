#!/usr/bin/env python

import unittest
from unittest.mock import MagicMock

import requests

from platform_bootstrap.clients import GitLabClient, HarborClient, KasmClient, KeycloakClient, RancherClient
from platform_bootstrap.errors import BootstrapError
from platform_bootstrap.http_retry import NO_RETRY


class ClientTestCase(unittest.TestCase):
    """Base class giving each client a real Session with a mocked transport."""

    def setUp(self):
        self.session = requests.Session()
        self.session.request = MagicMock()

    def _create_mock_response(self, json_data=None, status_code=200, headers=None):
        """
        Create a mock response object for testing.

        Args:
            json_data: Data to return from json() method
            status_code: HTTP status of the response
            headers: Optional response headers

        Returns:
            MagicMock: Configured mock response object
        """
        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.json.return_value = json_data
        mock_response.content = b"{}" if json_data is not None else b""
        mock_response.text = ""
        mock_response.headers = headers or {}
        return mock_response

    def _requested(self, index=-1):
        """(method, url, kwargs) of a recorded request."""
        call = self.session.request.call_args_list[index]
        return call.args[0], call.args[1], call.kwargs


class TestKeycloakClient(ClientTestCase):

    def setUp(self):
        super().setUp()
        self.kc = KeycloakClient("https://keycloak.example.org", policy=NO_RETRY, session=self.session)

    def test_client_credentials_token(self):
        self.session.request.return_value = self._create_mock_response({"access_token": "tok"})

        self.kc.authenticate_client_credentials("admin-cli-client", "s3cret")

        method, url, kwargs = self._requested()
        self.assertEqual(method, "POST")
        self.assertEqual(url, "https://keycloak.example.org/realms/master/protocol/openid-connect/token")
        self.assertEqual(kwargs["data"]["grant_type"], "client_credentials")
        self.assertEqual(self.session.headers["Authorization"], "Bearer tok")

    def test_missing_token_raises(self):
        self.session.request.return_value = self._create_mock_response({})

        with self.assertRaises(BootstrapError):
            self.kc.authenticate_client_credentials("admin-cli-client", "s3cret")

    def test_find_client_requires_exact_id(self):
        self.session.request.return_value = self._create_mock_response(
            [{"clientId": "argocd-cli", "id": "a"}, {"clientId": "argocd", "id": "b"}]
        )

        self.assertEqual(self.kc.find_client("example", "argocd")["id"], "b")

    def test_lookups_in_missing_realm_find_nothing(self):
        self.session.request.return_value = self._create_mock_response({"error": "Realm not found."}, 404)

        self.assertIsNone(self.kc.find_user("example", "admin"))
        self.assertIsNone(self.kc.find_client("example", "argocd"))
        self.assertIsNone(self.kc.find_group("example", "developers"))

    def test_create_client_reads_location(self):
        self.session.request.return_value = self._create_mock_response(
            None, 201, {"Location": "https://keycloak.example.org/admin/realms/example/clients/uuid-9"}
        )

        self.assertEqual(self.kc.create_client("example", {"clientId": "grafana"}), "uuid-9")

    def test_realm_exists_handles_404(self):
        self.session.request.return_value = self._create_mock_response({}, 404)
        self.assertFalse(self.kc.realm_exists("example"))

    def test_protocol_mapper_conflict(self):
        self.session.request.return_value = self._create_mock_response({}, 409)
        self.assertFalse(self.kc.add_protocol_mapper("example", "c-1", {"name": "group-membership"}))

    def test_reachable_swallows_transport_errors(self):
        self.session.request.side_effect = requests.ConnectionError("refused")
        self.assertFalse(self.kc.reachable())

    def test_service_account_user(self):
        self.session.request.return_value = self._create_mock_response({"id": "u-1", "username": "service-account-x"})

        self.assertEqual(self.kc.service_account_user("example", "c-1")["id"], "u-1")
        method, url, _ = self._requested()
        self.assertEqual((method, url), (
            "GET", "https://keycloak.example.org/admin/realms/example/clients/c-1/service-account-user",
        ))

    def test_service_account_user_missing(self):
        self.session.request.return_value = self._create_mock_response({}, 404)
        self.assertIsNone(self.kc.service_account_user("example", "c-1"))


class TestKasmClient(ClientTestCase):

    def setUp(self):
        super().setUp()
        self.kasm = KasmClient("https://kasm.example.org", policy=NO_RETRY, session=self.session)

    def _login(self):
        self.session.request.return_value = self._create_mock_response({"session_token": "t", "user_id": "u"})
        self.kasm.login("admin@kasm.local", "pw")

    def test_login_failure(self):
        self.session.request.return_value = self._create_mock_response({"error_message": "Access Denied"})

        with self.assertRaises(BootstrapError) as ctx:
            self.kasm.login("admin@kasm.local", "wrong")
        self.assertIn("Access Denied", str(ctx.exception))

    def test_admin_calls_carry_session(self):
        self._login()
        self.session.request.return_value = self._create_mock_response(
            {"oidc_configs": [{"client_id": "kasm", "oidc_config_id": "o-1"}]}
        )

        self.assertEqual(self.kasm.find_oidc_config("kasm")["oidc_config_id"], "o-1")
        _, url, kwargs = self._requested()
        self.assertTrue(url.endswith("/api/admin/get_oidc_configs"))
        self.assertEqual(kwargs["json"], {"token": "t", "user_id": "u"})

    def test_create_falls_back_to_set(self):
        self._login()
        self.session.request.side_effect = [
            self._create_mock_response({}, 500),
            self._create_mock_response({"oidc_config": {"oidc_config_id": "o-2"}}),
        ]

        self.assertEqual(self.kasm.create_oidc_config({"client_id": "kasm"}), "o-2")
        self.assertTrue(self._requested(-1)[1].endswith("/api/admin/set_oidc_config"))

    def test_create_returns_none_when_both_fail(self):
        self._login()
        self.session.request.side_effect = [
            self._create_mock_response({"error_message": "nope"}),
            self._create_mock_response({}, 500),
        ]

        self.assertIsNone(self.kasm.create_oidc_config({"client_id": "kasm"}))

    def test_admin_call_requires_login(self):
        with self.assertRaises(BootstrapError):
            self.kasm.get_oidc_configs()


class TestHarborGitLabRancherClients(ClientTestCase):

    def test_harbor_robot_lookup_matches_prefixed_name(self):
        harbor = HarborClient("https://harbor.example.org/api/v2.0", "admin", "pw",
                              policy=NO_RETRY, session=self.session)
        self.session.request.return_value = self._create_mock_response([{"name": "robot$ci-push", "id": 4}])

        self.assertEqual(harbor.find_robot("ci-push")["id"], 4)
        self.assertEqual(self.session.auth, ("admin", "pw"))

    def test_gitlab_project_must_match_namespace(self):
        gitlab = GitLabClient("https://gitlab.example.org/api/v4", "glpat-x", policy=NO_RETRY, session=self.session)
        self.session.request.return_value = self._create_mock_response([
            {"id": 1, "path": "svc-example-vault", "namespace": {"path": "someone"}},
            {"id": 2, "path": "svc-example-vault", "namespace": {"path": "platform_services"}},
        ])

        self.assertEqual(gitlab.find_project("svc-example-vault", "platform_services")["id"], 2)
        self.assertEqual(self.session.headers["PRIVATE-TOKEN"], "glpat-x")

    def test_gitlab_deploy_key_best_effort(self):
        gitlab = GitLabClient("https://gitlab.example.org/api/v4", "glpat-x", policy=NO_RETRY, session=self.session)
        self.session.request.return_value = self._create_mock_response({"message": "has already been taken"}, 400)

        self.assertFalse(gitlab.add_deploy_key(2, "ArgoCD Deploy Key", "ssh-ed25519 AAAA"))

    def test_rancher_remove_treats_404_as_gone(self):
        rancher = RancherClient("https://rancher.example.org", "token-x", policy=NO_RETRY, session=self.session)
        self.session.request.return_value = self._create_mock_response({}, 404)

        self.assertTrue(rancher.remove("secrets", "fleet-default", "rke2-prod-machine-plan"))
        self.assertFalse(rancher.verify)
        self.assertEqual(self.session.headers["Authorization"], "Bearer token-x")

    def test_rancher_list(self):
        rancher = RancherClient("https://rancher.example.org", "token-x", policy=NO_RETRY, session=self.session)
        self.session.request.return_value = self._create_mock_response({"data": [{"metadata": {"name": "a"}}]})

        self.assertEqual(rancher.list("secrets", "fleet-default"), [{"metadata": {"name": "a"}}])
        self.assertEqual(self._requested()[1], "https://rancher.example.org/v1/secrets/fleet-default")


if __name__ == "__main__":
    unittest.main()
