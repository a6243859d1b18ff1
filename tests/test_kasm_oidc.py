#!/usr/bin/env python

import unittest
from unittest.mock import MagicMock, patch

import pytest

from platform_bootstrap.credentials import SecretStore
from platform_bootstrap.errors import BootstrapError
from platform_bootstrap.flows import kasm_oidc
from platform_bootstrap.flows.kasm_oidc import KasmOidcOptions, KasmOidcSetup
from tests.helpers import make_config, secret_object


def test_provider_payload(tmp_path):
    payload = kasm_oidc.kasm_oidc_config(make_config(tmp_path), "k-secret")
    issuer = "https://keycloak.example.org/realms/example"

    assert payload["client_id"] == "kasm"
    assert payload["client_secret"] == "k-secret"
    assert payload["oidc_issuer"] == issuer
    assert payload["token_url"] == f"{issuer}/protocol/openid-connect/token"
    assert payload["redirect_url"] == "https://kasm.example.org/api/oidc_callback"
    assert payload["groups_attribute"] == "groups"
    assert payload["username_attribute"] == "preferred_username"
    assert payload["logo_url"].endswith("/resources/favicon.ico")


@patch("builtins.print")
class TestKasmOidcSetup(unittest.TestCase):
    """Test cases for the kasm-oidc flow phases."""

    @pytest.fixture(autouse=True)
    def _repo(self, tmp_path):
        self.tmp_path = tmp_path

    def setUp(self):
        self.kc = MagicMock()
        self.kasm = MagicMock()
        self.kasm.healthcheck.return_value = True
        self.kasm.user_id = "u-123456789"
        self.kasm.find_oidc_config.return_value = None
        self.core = MagicMock()
        self.core.read_namespaced_secret.return_value = secret_object(**{"admin-password": "kasm-admin-pw"})

    def _setup(self, dry_run=False, **options):
        config = make_config(self.tmp_path, dry_run=dry_run)
        connection = MagicMock()
        connection.get.return_value = self.kc
        connection.core.return_value = self.core
        return KasmOidcSetup(
            config=config,
            options=KasmOidcOptions(**options),
            store=SecretStore(config.oidc_secrets_file),
            connection=connection,
            kasm_factory=MagicMock(return_value=self.kasm),
        )

    def test_missing_kasm_client_is_fatal(self, _print):
        self.kc.find_client.return_value = None

        with self.assertRaises(BootstrapError):
            kasm_oidc.configure_keycloak(self._setup())

    def test_backchannel_logout_configured(self, _print):
        self.kc.find_client.return_value = {"id": "kasm-uuid"}
        self.kc.get_client_secret.return_value = "api-secret"
        self.kc.get_client.return_value = {"id": "kasm-uuid", "attributes": {}}
        self.kc.list_protocol_mappers.return_value = [{"name": "group-membership"}]
        setup = self._setup()

        kasm_oidc.configure_keycloak(setup)

        self.assertEqual(setup.client_secret, "api-secret")
        representation = self.kc.update_client.call_args.args[2]
        self.assertEqual(
            representation["attributes"]["backchannel.logout.url"],
            "https://kasm.example.org/api/oidc_backchannel_logout",
        )
        self.assertFalse(representation["frontchannelLogout"])

    def test_saved_secret_preferred(self, _print):
        self.kc.find_client.return_value = {"id": "kasm-uuid"}
        self.kc.get_client.return_value = {
            "attributes": {"backchannel.logout.url": "https://kasm.example.org/api/oidc_backchannel_logout"},
        }
        self.kc.list_protocol_mappers.return_value = []
        setup = self._setup()
        setup.store.set("kasm", "stored-secret")

        kasm_oidc.configure_keycloak(setup)

        self.assertEqual(setup.client_secret, "stored-secret")
        self.kc.get_client_secret.assert_not_called()
        self.kc.update_client.assert_not_called()

    def test_provider_created(self, _print):
        self.kasm.create_oidc_config.return_value = "o-1"
        setup = self._setup()
        setup.client_secret = "k-secret"

        kasm_oidc.configure_kasm(setup)

        self.kasm.login.assert_called_once_with("admin@kasm.local", "kasm-admin-pw")
        payload = self.kasm.create_oidc_config.call_args.args[0]
        self.assertEqual(payload["client_secret"], "k-secret")
        self.assertEqual(setup.manual_steps, [])

    def test_existing_provider_left_alone(self, _print):
        self.kasm.find_oidc_config.return_value = {"oidc_config_id": "o-1", "client_id": "kasm"}
        setup = self._setup()
        setup.client_secret = "k-secret"

        kasm_oidc.configure_kasm(setup)

        self.kasm.create_oidc_config.assert_not_called()

    def test_api_refusal_produces_manual_steps(self, _print):
        self.kasm.create_oidc_config.return_value = None
        setup = self._setup()
        setup.client_secret = "k-secret-long"

        kasm_oidc.configure_kasm(setup)

        self.assertTrue(setup.manual_steps)
        joined = "\n".join(setup.manual_steps)
        self.assertIn("k-secret", joined)
        self.assertNotIn("k-secret-long", joined)

    def test_dry_run_creates_nothing(self, _print):
        setup = self._setup(dry_run=True)
        setup.client_secret = "k-secret"

        kasm_oidc.configure_kasm(setup)

        self.kasm.create_oidc_config.assert_not_called()

    def test_unhealthy_kasm_is_fatal(self, _print):
        self.kasm.healthcheck.return_value = False
        setup = self._setup()
        setup.client_secret = "k-secret"

        with self.assertRaises(BootstrapError):
            kasm_oidc.configure_kasm(setup)

    def test_skip_flags(self, _print):
        setup = self._setup(skip_keycloak=True, skip_kasm=True)

        kasm_oidc.keycloak_side(setup)
        kasm_oidc.kasm_side(setup)

        setup.connection.get.assert_not_called()
        setup.kasm_factory.assert_not_called()


if __name__ == "__main__":
    unittest.main()
