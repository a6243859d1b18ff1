#!/usr/bin/env python

import pytest
import yaml

from platform_bootstrap.errors import BootstrapError
from platform_bootstrap.manifests import (
    application_manifest,
    build_service_tree,
    is_values_file,
    list_base_resources,
    render_application,
    render_overlay,
    substitute_placeholders,
)
from platform_bootstrap.services import CORE_SERVICES, ServiceDescriptor, SyncPolicy, enabled_services
from tests.helpers import make_config

REPO = "git@gitlab.example.org:platform_services/svc-example-vault.git"


def test_auto_sync_application():
    service = ServiceDescriptor("keycloak", "services/keycloak", "keycloak")

    app = application_manifest(service, REPO, "overlays/rke2-prod")

    assert app["kind"] == "Application"
    assert app["metadata"] == {"name": "keycloak", "namespace": "argocd"}
    assert app["spec"]["source"] == {"repoURL": REPO, "targetRevision": "main", "path": "overlays/rke2-prod"}
    assert app["spec"]["destination"] == {"server": "https://kubernetes.default.svc", "namespace": "keycloak"}
    assert app["spec"]["syncPolicy"] == {
        "automated": {"prune": True, "selfHeal": True},
        "syncOptions": ["CreateNamespace=true"],
    }


def test_manual_sync_application_has_no_automation():
    service = ServiceDescriptor("vault", "services/vault", "vault", SyncPolicy.MANUAL)

    policy = application_manifest(service, REPO, "overlays/rke2-prod")["spec"]["syncPolicy"]

    assert policy == {"syncOptions": ["CreateNamespace=true"]}


def test_cluster_scoped_service_omits_namespace():
    service = ServiceDescriptor("rbac", "services/rbac", "")

    rendered = yaml.safe_load(render_application(service, REPO, "overlays/rke2-prod"))

    assert "namespace" not in rendered["spec"]["destination"]


def test_overlay_references_base():
    assert yaml.safe_load(render_overlay())["resources"] == ["../../base"]


@pytest.mark.parametrize("name,expected", [
    ("values.yaml", True),
    ("harbor-values.yaml", True),
    ("values-prod.yml", True),
    ("deployment.yaml", False),
    ("valuesfile.yaml", False),
    ("values.txt", False),
])
def test_is_values_file(name, expected):
    assert is_values_file(name) is expected


def test_list_base_resources(tmp_path):
    for name in ("service.yaml", "deployment.yml", "kustomization.yaml", "harbor-values.yaml", "README.md"):
        (tmp_path / name).write_text("x: 1\n")
    (tmp_path / "sub").mkdir()

    assert list_base_resources(tmp_path) == ["deployment.yml", "service.yaml"]


def test_substitute_placeholders_prefers_longer_tokens(tmp_path):
    config = make_config(tmp_path, KEYCLOAK_DB_PASSWORD="kc-db-pw")
    text = (
        "host: keycloak.CHANGEME_DOMAIN\n"
        "secret: tls-CHANGEME_DOMAIN_DASHED\n"
        "issuer: https://auth.example.ch\n"
        "bucket: example-dot-com\n"
        "name: example-com-tls\n"
        "password: CHANGEME_KEYCLOAK_DB_PASSWORD\n"
    )

    out = substitute_placeholders(text, config)

    assert "host: keycloak.example.org" in out
    assert "secret: tls-example-org" in out
    assert "issuer: https://auth.example.org" in out
    assert "bucket: example-dot-org" in out
    assert "name: example-org-tls" in out
    assert "password: kc-db-pw" in out
    assert "CHANGEME" not in out


def test_build_service_tree(tmp_path):
    config = make_config(tmp_path)
    source = tmp_path / "services" / "keycloak"
    source.mkdir(parents=True)
    (source / "deployment.yaml").write_text("host: keycloak.CHANGEME_DOMAIN\n")
    (source / "keycloak-values.yaml").write_text("x: 1\n")
    (source / "extras").mkdir()
    (source / "extras" / "cm.yaml").write_text("domain: CHANGEME_DOMAIN\n")
    work = tmp_path / "work"

    build_service_tree(source, work, "rke2-prod", config)

    base = work / "base"
    assert (base / "deployment.yaml").read_text() == "host: keycloak.example.org\n"
    assert (base / "extras" / "cm.yaml").read_text() == "domain: example.org\n"
    generated = yaml.safe_load((base / "kustomization.yaml").read_text())
    assert generated["resources"] == ["deployment.yaml"]
    overlay = yaml.safe_load((work / "overlays" / "rke2-prod" / "kustomization.yaml").read_text())
    assert overlay["resources"] == ["../../base"]


def test_build_service_tree_keeps_existing_kustomization(tmp_path):
    config = make_config(tmp_path)
    source = tmp_path / "svc"
    source.mkdir()
    (source / "kustomization.yaml").write_text("resources:\n- a.yaml\n- b.yaml\n")
    (source / "a.yaml").write_text("a: 1\n")

    build_service_tree(source, tmp_path / "work", "rke2-prod", config)

    assert (tmp_path / "work" / "base" / "kustomization.yaml").read_text() == "resources:\n- a.yaml\n- b.yaml\n"


def test_build_service_tree_requires_source(tmp_path):
    with pytest.raises(BootstrapError, match="Source directory not found"):
        build_service_tree(tmp_path / "missing", tmp_path / "work", "rke2-prod", make_config(tmp_path))


def test_enabled_services_follow_flags(tmp_path):
    names = [s.name for s in enabled_services(make_config(tmp_path, DEPLOY_LIBRENMS="true"))]
    assert names[:len(CORE_SERVICES)] == [s.name for s in CORE_SERVICES]
    assert names[len(CORE_SERVICES):] == ["uptime-kuma", "librenms"]

    names = [s.name for s in enabled_services(make_config(tmp_path, DEPLOY_UPTIME_KUMA="false"))]
    assert "uptime-kuma" not in names and "librenms" not in names


def test_repo_name():
    assert CORE_SERVICES[0].repo_name("example") == "svc-example-argocd"
