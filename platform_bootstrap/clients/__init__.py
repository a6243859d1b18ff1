"""REST clients for the admin APIs the flows drive."""

from platform_bootstrap.clients.gitlab import GitLabClient
from platform_bootstrap.clients.harbor import HarborClient
from platform_bootstrap.clients.kasm import KasmClient
from platform_bootstrap.clients.keycloak import KeycloakClient
from platform_bootstrap.clients.rancher import RancherClient

__all__ = ["GitLabClient", "HarborClient", "KasmClient", "KeycloakClient", "RancherClient"]
