#!/usr/bin/env python

import json
import subprocess
import unittest
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml

from platform_bootstrap import constants as c
from platform_bootstrap.clients.keycloak import KeycloakClient
from platform_bootstrap.credentials import SecretStore
from platform_bootstrap.errors import ApiError, BootstrapError
from platform_bootstrap.flows import keycloak_setup
from platform_bootstrap.flows.common import KeycloakConnection
from platform_bootstrap.flows.keycloak_setup import KeycloakSetup
from platform_bootstrap.http_retry import NO_RETRY
from platform_bootstrap.phases import run_phases
from tests.helpers import create_mock_response, make_config, secret_object


@patch("builtins.print")
class TestKeycloakSetup(unittest.TestCase):
    """Test cases for the keycloak flow phases."""

    @pytest.fixture(autouse=True)
    def _repo(self, tmp_path):
        self.tmp_path = tmp_path

    def setUp(self):
        self.kc = MagicMock()
        self.kubectl = MagicMock()
        self.kubectl.set_env.return_value = True
        self.kubectl.patch_merge.return_value = True
        self.kubectl.exec.return_value = True
        self.harbor_factory = MagicMock()

    def _setup(self, dry_run=False):
        config = make_config(self.tmp_path, dry_run=dry_run)
        connection = MagicMock()
        connection.get.return_value = self.kc
        return KeycloakSetup(
            config=config,
            kubectl=self.kubectl,
            store=SecretStore(config.oidc_secrets_file),
            connection=connection,
            harbor_factory=self.harbor_factory,
            admin_password="admin-pw",
            user_password="user-pw",
        )

    def test_new_admin_gets_realm_admin_role(self, _print):
        self.kc.realm_exists.return_value = False
        self.kc.find_user.return_value = None
        self.kc.create_user.side_effect = ["admin-id", "user-id"]
        self.kc.find_client.return_value = {"id": "rm-uuid"}
        self.kc.client_role.return_value = {"name": "realm-admin"}
        ctx = self._setup()

        keycloak_setup.setup_realm(ctx)

        self.assertEqual(ctx.created_users, ["admin", "user"])
        self.kc.add_client_role_to_user.assert_called_once_with(
            "example", "admin-id", "rm-uuid", {"name": "realm-admin"},
        )
        realm_update = self.kc.update_realm.call_args.args[1]
        self.assertEqual(realm_update["otpPolicyType"], "totp")
        self.assertTrue(self.kc.update_realm.call_args.kwargs["best_effort"])

    def test_existing_users_untouched(self, _print):
        self.kc.realm_exists.return_value = True
        self.kc.find_user.return_value = {"id": "existing"}
        ctx = self._setup()

        keycloak_setup.setup_realm(ctx)

        self.assertEqual(ctx.created_users, [])
        self.kc.add_client_role_to_user.assert_not_called()

    def test_clients_created_and_secrets_saved(self, _print):
        self.kc.find_client.return_value = None
        self.kc.create_client.side_effect = lambda realm, rep: f"uuid-{rep['clientId']}"
        self.kc.regenerate_client_secret.side_effect = lambda realm, uuid: f"secret-{uuid}"
        ctx = self._setup()

        keycloak_setup.create_clients(ctx)

        saved = ctx.store.load()
        self.assertEqual(set(saved), {client_id for client_id, _, _ in c.OIDC_CLIENTS})
        self.assertEqual(saved["grafana"], "secret-uuid-grafana")
        created = [call.args[1]["clientId"] for call in self.kc.create_client.call_args_list]
        self.assertEqual(created[-1], "kubernetes")
        argocd = next(call.args[1] for call in self.kc.create_client.call_args_list
                      if call.args[1]["clientId"] == "argocd")
        self.assertEqual(argocd["redirectUris"], ["https://argo.example.org/auth/callback"])

    def test_dry_run_clients_write_nothing(self, _print):
        self.kc.find_client.return_value = None
        ctx = self._setup(dry_run=True)

        keycloak_setup.create_clients(ctx)

        self.kc.create_client.assert_not_called()
        self.assertFalse(ctx.store.path.exists())

    def test_bindings_use_saved_secrets(self, _print):
        ctx = self._setup()
        ctx.store.set("grafana", "g-secret")
        ctx.store.set("argocd", "a-secret")
        ctx.store.set("harbor", "h-secret")
        ctx.store.set("mattermost", "m-secret")

        keycloak_setup.bind_services(ctx)

        grafana_env = self.kubectl.set_env.call_args_list[0].args[2]
        self.assertEqual(grafana_env["GF_AUTH_GENERIC_OAUTH_CLIENT_SECRET"], "g-secret")
        self.assertEqual(
            grafana_env["GF_AUTH_GENERIC_OAUTH_AUTH_URL"],
            "https://keycloak.example.org/realms/example/protocol/openid-connect/auth",
        )
        cm_patch = json.loads(self.kubectl.patch_merge.call_args_list[0].args[3])
        self.assertEqual(cm_patch["data"]["url"], "https://argo.example.org")
        self.assertEqual(yaml.safe_load(cm_patch["data"]["oidc.config"])["clientSecret"], "a-secret")
        self.kubectl.rollout_restart.assert_called_once_with("argocd", "deployment/argocd-server")
        harbor_settings = self.harbor_factory.return_value.update_configurations.call_args.args[0]
        self.assertEqual(harbor_settings["oidc_client_secret"], "h-secret")
        self.assertEqual(harbor_settings["oidc_admin_group"], "platform-admins")
        # No vault secret saved and no init file: Vault is skipped
        self.kubectl.exec.assert_not_called()
        mattermost_env = self.kubectl.set_env.call_args_list[1].args[2]
        self.assertEqual(mattermost_env["MM_OPENIDSETTINGS_SECRET"], "m-secret")

    def test_harbor_failure_is_not_fatal(self, _print):
        ctx = self._setup()
        ctx.store.set("harbor", "h-secret")
        ctx.store.set("mattermost", "m-secret")
        self.harbor_factory.return_value.update_configurations.side_effect = ApiError("PUT", "x", 401)

        keycloak_setup.bind_services(ctx)

        self.kubectl.set_env.assert_called_once()

    def test_vault_role_written_as_json(self, _print):
        ctx = self._setup()
        ctx.store.set("vault", "v-secret")
        ctx.config.vault_init_file.parent.mkdir(parents=True, exist_ok=True)
        ctx.config.vault_init_file.write_text(json.dumps({"root_token": "hvs.root"}))

        keycloak_setup.bind_services(ctx)

        commands = [call.args[2] for call in self.kubectl.exec.call_args_list]
        self.assertEqual(len(commands), 3)
        self.assertIn("VAULT_TOKEN=hvs.root", commands[0])
        self.assertIn("oidc_client_secret=v-secret", commands[1])
        role = json.loads(self.kubectl.exec.call_args_list[2].kwargs["stdin"])
        self.assertEqual(role["bound_audiences"], ["vault"])
        self.assertEqual(role["groups_claim"], "groups")

    def test_groups_and_mappers(self, _print):
        self.kc.find_group.return_value = None
        self.kc.create_group.return_value = "g-id"
        self.kc.find_user.return_value = None
        self.kc.find_client.return_value = {"id": "c"}
        self.kc.list_protocol_mappers.return_value = []
        ctx = self._setup()

        keycloak_setup.setup_groups(ctx)

        created = [call.args[1] for call in self.kc.create_group.call_args_list]
        self.assertEqual(created, c.PLATFORM_GROUPS)
        self.assertEqual(self.kc.add_protocol_mapper.call_count, len(c.OIDC_CLIENTS) + 1)

    def test_summary_appends_credentials(self, _print):
        ctx = self._setup()
        ctx.created_users = ["admin"]
        ctx.store.set("grafana", "g-secret")
        ctx.config.credentials_file.parent.mkdir(parents=True, exist_ok=True)
        ctx.config.credentials_file.write_text("# Platform credentials\n")

        keycloak_setup.summarize(ctx)

        text = ctx.config.credentials_file.read_text()
        self.assertIn("admin / admin-pw", text)
        self.assertIn("user / (unchanged)", text)
        self.assertIn("grafana: g-secret", text)

    def test_summary_without_credentials_file(self, _print):
        ctx = self._setup()

        keycloak_setup.summarize(ctx)

        self.assertFalse(ctx.config.credentials_file.exists())

    def test_dry_run_previews_a_realm_that_does_not_exist(self, _print):
        """Every phase runs against a fresh Keycloak without writing anything."""
        session = requests.Session()

        def respond(method, url, **kwargs):
            if method == "GET" and "/admin/realms/example" in url:
                return create_mock_response({"error": "Realm not found."}, 404)
            raise AssertionError(f"unexpected {method} {url}")

        session.request = MagicMock(side_effect=respond)
        self.kc = KeycloakClient("https://keycloak.example.org", policy=NO_RETRY, session=session)
        ctx = self._setup(dry_run=True)

        run_phases(keycloak_setup.build_phases(), ctx)

        self.assertEqual({call.args[0] for call in session.request.call_args_list}, {"GET"})
        self.assertEqual(ctx.created_users, [])
        self.assertFalse(ctx.config.oidc_secrets_file.exists())
        self.kubectl.set_env.assert_not_called()


@patch("builtins.print")
class TestKeycloakConnection(unittest.TestCase):

    @pytest.fixture(autouse=True)
    def _repo(self, tmp_path):
        self.tmp_path = tmp_path

    def setUp(self):
        self.core = MagicMock()
        self.core.read_namespaced_secret.return_value = secret_object(
            KC_BOOTSTRAP_ADMIN_CLIENT_ID="boot-admin", KC_BOOTSTRAP_ADMIN_CLIENT_SECRET="boot-secret",
        )
        self.kubectl = MagicMock()
        self.sleeps = []

    def _connection(self, clients):
        return KeycloakConnection(
            config=make_config(self.tmp_path),
            kubectl=self.kubectl,
            sleep=self.sleeps.append,
            client_factory=MagicMock(side_effect=clients),
            core_api=self.core,
        )

    def test_direct_https(self, _print):
        direct = MagicMock()
        direct.reachable.return_value = True
        connection = self._connection([direct])

        self.assertIs(connection.get(), direct)
        direct.authenticate_client_credentials.assert_called_once_with("boot-admin", "boot-secret")
        self.kubectl.port_forward.assert_not_called()
        self.assertIs(connection.get(), direct)

    def test_port_forward_fallback(self, _print):
        direct, forwarded = MagicMock(), MagicMock()
        direct.reachable.return_value = False
        forwarded.reachable.return_value = True
        connection = self._connection([direct, forwarded])

        self.assertIs(connection.get(), forwarded)
        self.kubectl.port_forward.assert_called_once_with("keycloak", "svc/keycloak", 18080, 8080)
        self.assertEqual(connection.client_factory.call_args_list[1].args[0], "http://localhost:18080")

        connection.close()
        self.kubectl.port_forward.return_value.terminate.assert_called_once()
        self.kubectl.port_forward.return_value.wait.assert_called_once_with(timeout=5)
        self.assertIsNone(connection.port_forward)

    def test_close_kills_a_port_forward_that_ignores_terminate(self, _print):
        process = MagicMock()
        process.wait.side_effect = [subprocess.TimeoutExpired("kubectl", 5), 0]
        connection = self._connection([])
        connection.port_forward = process

        connection.close()

        process.kill.assert_called_once()
        self.assertEqual(process.wait.call_count, 2)

    def test_unreachable(self, _print):
        down = MagicMock()
        down.reachable.return_value = False

        with self.assertRaises(BootstrapError):
            self._connection([down, down]).get()

    def test_authentication_retried(self, _print):
        kc = MagicMock()
        kc.reachable.return_value = True
        kc.authenticate_client_credentials.side_effect = [ApiError("POST", "token", 401), None]

        self.assertIs(self._connection([kc]).get(), kc)
        self.assertEqual(self.sleeps, [5])

    def test_authentication_gives_up(self, _print):
        kc = MagicMock()
        kc.reachable.return_value = True
        kc.authenticate_client_credentials.side_effect = ApiError("POST", "token", 401)

        with self.assertRaises(BootstrapError):
            self._connection([kc]).get()
        self.assertEqual(kc.authenticate_client_credentials.call_count, 10)


if __name__ == "__main__":
    unittest.main()
