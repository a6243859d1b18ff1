"""
Constants shared by the bootstrap and teardown flows.
"""

# Repository layout: directories relative to the repo root, files relative to their directory
CLUSTER_DIR = "cluster"
SCRIPTS_DIR = "scripts"
SERVICES_DIR = "services"
ENV_FILE = ".env"
TFVARS_FILE = "terraform.tfvars"
RKE2_KUBECONFIG = "kubeconfig-rke2.yaml"
HARVESTER_KUBECONFIG = "kubeconfig-harvester.yaml"
CREDENTIALS_FILE = "credentials.txt"
VAULT_INIT_FILE = "vault-init.json"
ROOT_CA_FILE = "root-ca.pem"
OIDC_SECRETS_FILE = "oidc-client-secrets.json"
HARBOR_ROBOT_FILE = "harbor-robot-credentials.json"
GITLAB_TOKEN_FILE = ".gitlab-api-token"
DEPLOY_KEY_DIR = ".deploy-keys"
HARBOR_VALUES_FILE = "harbor/harbor-values.yaml"
ARGO_APPS_DIR = "argo/bootstrap/apps"
APP_OF_APPS_FILE = "argo/bootstrap/app-of-apps.yaml"

DEFAULT_DOMAIN = "example.com"
PLACEHOLDER_GIT_REPO_URL = "git@github.com:OWNER/rke2-cluster.git"

# Secrets generated on first run when the .env file does not define them.
# (env key, length)
GENERATED_SECRETS = [
    ("KEYCLOAK_BOOTSTRAP_CLIENT_SECRET", 32),
    ("KEYCLOAK_DB_PASSWORD", 32),
    ("MATTERMOST_DB_PASSWORD", 32),
    ("MATTERMOST_MINIO_ROOT_PASSWORD", 32),
    ("HARBOR_REDIS_PASSWORD", 32),
    ("HARBOR_ADMIN_PASSWORD", 32),
    ("HARBOR_MINIO_SECRET_KEY", 32),
    ("HARBOR_DB_PASSWORD", 32),
    ("KASM_PG_SUPERUSER_PASSWORD", 32),
    ("KASM_PG_APP_PASSWORD", 30),
    ("KC_ADMIN_PASSWORD", 24),
    ("GRAFANA_ADMIN_PASSWORD", 24),
    ("LIBRENMS_DB_PASSWORD", 32),
    ("LIBRENMS_VALKEY_PASSWORD", 32),
    ("GITLAB_ROOT_PASSWORD", 32),
    ("GITLAB_REDIS_PASSWORD", 32),
    ("IDENTITY_PORTAL_OIDC_SECRET", 32),
    ("OAUTH2_PROXY_REDIS_PASSWORD", 32),
]

# Manifest placeholder -> env key holding its value
PLACEHOLDER_ENV_KEYS = [
    ("CHANGEME_BOOTSTRAP_CLIENT_SECRET", "KEYCLOAK_BOOTSTRAP_CLIENT_SECRET"),
    ("CHANGEME_KEYCLOAK_DB_PASSWORD", "KEYCLOAK_DB_PASSWORD"),
    ("CHANGEME_MATTERMOST_DB_PASSWORD", "MATTERMOST_DB_PASSWORD"),
    ("CHANGEME_MINIO_ROOT_USER", "MATTERMOST_MINIO_ROOT_USER"),
    ("CHANGEME_MINIO_ROOT_PASSWORD", "MATTERMOST_MINIO_ROOT_PASSWORD"),
    ("CHANGEME_HARBOR_REDIS_PASSWORD", "HARBOR_REDIS_PASSWORD"),
    ("CHANGEME_GRAFANA_ADMIN_PASSWORD", "GRAFANA_ADMIN_PASSWORD"),
    ("CHANGEME_LIBRENMS_DB_PASSWORD", "LIBRENMS_DB_PASSWORD"),
    ("CHANGEME_LIBRENMS_VALKEY_PASSWORD", "LIBRENMS_VALKEY_PASSWORD"),
    ("CHANGEME_HARBOR_ADMIN_PASSWORD", "HARBOR_ADMIN_PASSWORD"),
    ("CHANGEME_HARBOR_MINIO_SECRET_KEY", "HARBOR_MINIO_SECRET_KEY"),
    ("CHANGEME_GITLAB_REDIS_PASSWORD", "GITLAB_REDIS_PASSWORD"),
    ("CHANGEME_HARBOR_DB_PASSWORD", "HARBOR_DB_PASSWORD"),
    ("CHANGEME_KASM_PG_SUPERUSER_PASSWORD", "KASM_PG_SUPERUSER_PASSWORD"),
    ("CHANGEME_KASM_PG_APP_PASSWORD", "KASM_PG_APP_PASSWORD"),
    ("CHANGEME_KC_ADMIN_PASSWORD", "KC_ADMIN_PASSWORD"),
    ("CHANGEME_IDENTITY_PORTAL_OIDC_SECRET", "IDENTITY_PORTAL_OIDC_SECRET"),
    ("CHANGEME_OAUTH2_PROXY_REDIS_PASSWORD", "OAUTH2_PROXY_REDIS_PASSWORD"),
    ("CHANGEME_TRAEFIK_LB_IP", "TRAEFIK_LB_IP"),
    ("CHANGEME_GIT_REPO_URL", "GIT_REPO_URL"),
    ("CHANGEME_GIT_BASE_URL", "GIT_BASE_URL"),
    ("CHANGEME_KC_REALM", "KC_REALM"),
    ("CHANGEME_RANCHER_FQDN", "RANCHER_FQDN"),
]

# Keycloak
KEYCLOAK_NAMESPACE = "keycloak"
KEYCLOAK_ADMIN_SECRET = "keycloak-admin-secret"
KEYCLOAK_ADMIN_CLIENT_ID_KEY = "KC_BOOTSTRAP_ADMIN_CLIENT_ID"
KEYCLOAK_ADMIN_CLIENT_SECRET_KEY = "KC_BOOTSTRAP_ADMIN_CLIENT_SECRET"
KEYCLOAK_DEFAULT_ADMIN_CLIENT_ID = "admin-cli-client"
KEYCLOAK_PORT_FORWARD_LOCAL = 18080
KEYCLOAK_PORT_FORWARD_REMOTE = 8080

PLATFORM_GROUPS = [
    "platform-admins",
    "harvester-admins",
    "rancher-admins",
    "infra-engineers",
    "senior-developers",
    "developers",
    "viewers",
]
ADMIN_GROUP = "platform-admins"
USER_GROUP = "developers"
GROUP_MAPPER_NAME = "group-membership"

# OIDC clients: (client_id, display name, redirect URIs with {domain})
OIDC_CLIENTS = [
    ("grafana", "Grafana", ["https://grafana.{domain}/*"]),
    ("argocd", "ArgoCD", ["https://argo.{domain}/auth/callback"]),
    ("harbor", "Harbor Registry", ["https://harbor.{domain}/c/oidc/callback"]),
    ("vault", "Vault", [
        "https://vault.{domain}/ui/vault/auth/oidc/oidc/callback",
        "http://localhost:8250/oidc/callback",
    ]),
    ("mattermost", "Mattermost", ["https://mattermost.{domain}/signup/openid/complete"]),
    ("kasm", "Kasm Workspaces", ["https://kasm.{domain}/api/oidc_callback"]),
    ("gitlab", "GitLab", ["https://gitlab.{domain}/users/auth/openid_connect/callback"]),
    ("oauth2-proxy", "OAuth2 Proxy", ["https://auth.{domain}/oauth2/callback"]),
]
KUBERNETES_CLIENT_ID = "kubernetes"
KUBERNETES_REDIRECT_URIS = ["http://localhost:8000", "http://localhost:18000"]

# KASM
KASM_NAMESPACE = "kasm"
KASM_SECRET = "kasm-secrets"
KASM_ADMIN_PASSWORD_KEY = "admin-password"
KASM_ADMIN_USER = "admin@kasm.local"
KASM_CLIENT_ID = "kasm"

# GitLab
GITLAB_GROUP_NAME = "Platform Services"
GITLAB_GROUP_PATH = "platform_services"
ARGOCD_NAMESPACE = "argocd"
ARGOCD_DEPLOY_KEY_NAME = "argocd-gitlab-deploy-key"
ARGOCD_REPO_CREDS_SECRET = "gitlab-repo-creds"
ARGOCD_KNOWN_HOSTS_CM = "argocd-ssh-known-hosts-cm"

# Harbor
HARBOR_PROJECTS = ["library", "charts", "dev"]
HARBOR_PULL_SECRET = "harbor-pull"
HARBOR_PULL_SECRET_NAMESPACE = "default"
ROBOT_PLACEHOLDER_SECRET = "<create-manually>"

# Teardown
TEARDOWN_REQUIRED_COMMANDS = ["kubectl", "terraform", "helm"]
GITLAB_NAMESPACE = "gitlab"
DATABASE_NAMESPACE = "database"
RANCHER_NAMESPACE = "fleet-default"
RANCHER_CREDENTIAL_NAMESPACE = "cattle-global-data"
RANCHER_CLUSTER_ID_KEY = "harvestercredentialConfig-clusterId"
CAPI_RESOURCE_TYPES = [
    "rke-machine.cattle.io.harvestermachines",
    "cluster.x-k8s.io.machines",
    "rke.cattle.io.rkecontrolplanes",
    "cluster.x-k8s.io.clusters",
]
STALE_SECRET_PASSES = 3

# Harvester reconciler timings (seconds)
VM_DELETE_TIMEOUT = 300
VM_DELETE_POLL_INTERVAL = 10
SETTLE_DELAY = 5

# Identity portal
IDENTITY_PORTAL_NAMESPACE = "identity-portal"
IDENTITY_PORTAL_MANIFESTS = "identity-portal"
IDENTITY_PORTAL_SECRET = "identity-portal-secret"
IDENTITY_PORTAL_CLIENT_ID = "identity-portal"
IDENTITY_PORTAL_ADMIN_CLIENT_ID = "identity-portal-admin"
IDENTITY_PORTAL_BACKEND = "identity-portal-backend"
IDENTITY_PORTAL_FRONTEND = "identity-portal-frontend"
ROOT_CA_CONFIGMAP = "vault-root-ca"
VAULT_SSH_MOUNT = "ssh-client-signer"
DEPLOYMENT_WAIT_TIMEOUT = 180
TLS_WAIT_TIMEOUT = 180
TLS_POLL_INTERVAL = 5

# CI/CD
GITHUB_HOST = "github.com"
GITHUB_DEPLOY_KEY_NAME = "argocd-deploy-key"
GITHUB_REPO_CREDS_SECRET = "github-repo-creds"
INFRA_REPO_SECRET = "repo-rke2-cluster"
HARBOR_NAMESPACE = "harbor"
SAMPLES_DIR = "scripts/samples"
REPO_CONNECT_WAIT = 10
