#!/usr/bin/env python3
"""
Post-deploy bootstrap and teardown for the RKE2-on-Harvester platform.

Commands are independent: none of them chains into another.

Usage:
  platform-bootstrap destroy [--auto] [--skip-tf] [--dirty]    # tear the cluster down
  platform-bootstrap keycloak [--from N] [--dry-run]           # realm, OIDC clients, bindings
  platform-bootstrap kasm-oidc [--skip-keycloak] [--skip-kasm] # KASM <-> Keycloak OIDC
  platform-bootstrap gitlab-services [--from N] [--dry-run]    # service repos + ArgoCD apps
  platform-bootstrap harbor-ci [--dry-run]                     # Harbor projects and robots
  platform-bootstrap identity-portal [--skip-vault] [--skip-keycloak] [--dry-run]
                                                               # SSH CA, clients, portal deploy
  platform-bootstrap cicd [--from N] [--dry-run]               # GitHub, ArgoCD, Rollouts, Harbor
  platform-bootstrap kubectl-oidc [-o FILE]                    # kubeconfig for OIDC logins
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from platform_bootstrap.config import load_platform_config
from platform_bootstrap.errors import BootstrapError
from platform_bootstrap.flows import (
    cicd,
    destroy,
    gitlab_services,
    harbor_ci,
    identity_portal,
    kasm_oidc,
    keycloak_setup,
    kubectl_oidc,
)

COMMANDS = {
    "destroy": destroy.run,
    "keycloak": keycloak_setup.run,
    "kasm-oidc": kasm_oidc.run,
    "gitlab-services": gitlab_services.run,
    "harbor-ci": harbor_ci.run,
    "identity-portal": identity_portal.run,
    "cicd": cicd.run,
    "kubectl-oidc": kubectl_oidc.run,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="platform-bootstrap",
        description="Bootstrap and tear down the RKE2 platform cluster.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s keycloak --from 3
  %(prog)s destroy --auto --skip-tf
  %(prog)s kubectl-oidc -o /tmp/oidc.yaml
""",
    )
    parser.add_argument(
        "--repo-root",
        default=os.getcwd(),
        help="Infrastructure repository root (default: current directory).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", help="Action to perform")

    p = subparsers.add_parser("destroy", help="Destroy the RKE2 cluster and clean up orphans")
    p.add_argument("--auto", action="store_true", help="Skip the confirmation prompt")
    p.add_argument("--skip-tf", action="store_true", help="Only clean up orphans, skip terraform destroy")
    p.add_argument("--dirty", action="store_true",
                   help="Also purge stuck CAPI objects and orphaned cloud credentials")
    p.add_argument("--dry-run", action="store_true", help="Show what would be deleted")

    p = subparsers.add_parser("keycloak", help="Create the realm, OIDC clients and service bindings")
    p.add_argument("--from", dest="from_phase", type=int, default=1, help="Resume from phase N (1-5)")
    p.add_argument("--dry-run", action="store_true", help="Show what would be configured")

    p = subparsers.add_parser("kasm-oidc", help="Wire KASM Workspaces to Keycloak")
    p.add_argument("--dry-run", action="store_true", help="Show what would be configured")
    p.add_argument("--skip-keycloak", action="store_true", help="Skip the Keycloak side")
    p.add_argument("--skip-kasm", action="store_true", help="Skip the KASM side")

    p = subparsers.add_parser("gitlab-services", help="Push service manifests to GitLab and wire ArgoCD")
    p.add_argument("--from", dest="from_phase", type=int, default=1, help="Resume from phase N (1-5)")
    p.add_argument("--dry-run", action="store_true", help="Show what would be created")

    p = subparsers.add_parser("harbor-ci", help="Create Harbor CI projects, robots and pull secret")
    p.add_argument("--dry-run", action="store_true", help="Show what would be created")

    p = subparsers.add_parser("identity-portal", help="Vault SSH CA, Keycloak clients and the identity portal")
    p.add_argument("--skip-vault", action="store_true", help="Skip the Vault SSH CA and policies")
    p.add_argument("--skip-keycloak", action="store_true", help="Skip the Keycloak clients")
    p.add_argument("--dry-run", action="store_true", help="Show what would be configured")

    p = subparsers.add_parser("cicd", help="Wire GitHub, ArgoCD, Argo Rollouts and Harbor CI")
    p.add_argument("--from", dest="from_phase", type=int, default=1, help="Resume from phase N (1-6)")
    p.add_argument("--dry-run", action="store_true", help="Show what would be configured")

    p = subparsers.add_parser("kubectl-oidc", help="Print a kubeconfig snippet for Keycloak logins")
    p.add_argument("-o", "--output", help="Write to FILE instead of stdout")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if not args.command:
        print(f"Error: no command specified. Use one of: {', '.join(COMMANDS)}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_platform_config(args.repo_root, dry_run=getattr(args, "dry_run", False))
        if config.dry_run:
            print("DRY RUN: no changes will be made.")
        return COMMANDS[args.command](config, args)
    except (BootstrapError, FileNotFoundError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
