"""
Argo Rollouts templating: cluster-wide Prometheus analysis templates and the
sample Rollout, workflow and Application files handed to application teams.
"""

from __future__ import annotations

from typing import Any

import yaml

from platform_bootstrap.constants import ARGOCD_NAMESPACE

ROLLOUTS_API = "argoproj.io/v1alpha1"
GATEWAY_API = "gateway.networking.k8s.io/v1"
PROMETHEUS_ADDRESS = "http://prometheus.monitoring.svc.cluster.local:9090"
SAMPLE_APP = "sample-app"

_SELECTOR = 'namespace="{{args.namespace}}",\n    service="{{args.service-name}}"'
_REQUESTS = "sum(rate(\n  http_requests_total{{{extra}\n    " + _SELECTOR + "\n  }}[5m]\n))"


def _ratio(status_filter: str) -> str:
    numerator = _REQUESTS.format(extra=f"\n    status{status_filter},")
    return f"{numerator} /\n{_REQUESTS.format(extra='')}\n"


def analysis_template(
    name: str,
    args: list[dict[str, str]],
    condition: str,
    query: str,
    count: int = 10,
    failure_limit: int = 2,
) -> dict[str, Any]:
    """ClusterAnalysisTemplate with one Prometheus metric polled every 30s."""
    return {
        "apiVersion": ROLLOUTS_API,
        "kind": "ClusterAnalysisTemplate",
        "metadata": {"name": name},
        "spec": {
            "args": args,
            "metrics": [{
                "name": name,
                "interval": "30s",
                "count": count,
                "failureLimit": failure_limit,
                "successCondition": condition,
                "provider": {"prometheus": {"address": PROMETHEUS_ADDRESS, "query": query}},
            }],
        },
    }


def _args(*names: str, **defaults: str) -> list[dict[str, str]]:
    out = [{"name": name} for name in names]
    out += [{"name": name.replace("_", "-"), "value": value} for name, value in defaults.items()]
    return out


def analysis_templates() -> list[dict[str, Any]]:
    return [
        analysis_template(
            "success-rate", _args("service-name", "namespace"),
            "result[0] > 0.99", _ratio('!~"5.."'),
        ),
        analysis_template(
            "latency-p99", _args("service-name", "namespace", threshold_ms="500"),
            "result[0] < {{args.threshold-ms}}",
            "histogram_quantile(0.99,\n  sum(rate(\n    http_request_duration_seconds_bucket{\n    "
            + _SELECTOR + "\n    }[5m]\n  )) by (le)\n) * 1000\n",
        ),
        analysis_template(
            "error-rate", _args("service-name", "namespace", threshold="0.01"),
            "result[0] < {{args.threshold}}", _ratio('=~"5.."'), failure_limit=1,
        ),
        analysis_template(
            "pod-restarts", _args("namespace", "rollout-name"),
            "result[0] == 0",
            "sum(increase(\n  kube_pod_container_status_restarts_total{\n"
            '    namespace="{{args.namespace}}",\n    pod=~"{{args.rollout-name}}-.*"\n  }[2m]\n))\n',
            count=5, failure_limit=1,
        ),
    ]


def _dump_all(docs: list[dict[str, Any]]) -> str:
    return yaml.safe_dump_all(docs, sort_keys=False, default_flow_style=False)


def _analysis(templates: list[str], **args: str) -> dict[str, Any]:
    return {
        "templates": [{"clusterTemplateRef": {"name": name}} for name in templates],
        "args": [{"name": name.replace("_", "-"), "value": value} for name, value in args.items()],
    }


def _service(name: str, app: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": SAMPLE_APP},
        "spec": {"selector": {"app": app}, "ports": [{"port": 80, "targetPort": 8080}]},
    }


def _route(name: str, host: str, backends: list[str]) -> dict[str, Any]:
    return {
        "apiVersion": GATEWAY_API,
        "kind": "HTTPRoute",
        "metadata": {"name": name, "namespace": SAMPLE_APP},
        "spec": {
            "parentRefs": [{"name": SAMPLE_APP, "sectionName": "https"}],
            "hostnames": [host],
            "rules": [{
                "matches": [{"path": {"type": "PathPrefix", "value": "/"}}],
                "backendRefs": [{"name": backend, "port": 80} for backend in backends],
            }],
        },
    }


def _rollout(name: str, domain: str, strategy: dict[str, Any], replicas: int = 3) -> dict[str, Any]:
    container: dict[str, Any] = {
        "name": "app",
        "image": f"harbor.{domain}/library/{SAMPLE_APP}:latest",
        "ports": [{"containerPort": 8080}],
    }
    return {
        "apiVersion": ROLLOUTS_API,
        "kind": "Rollout",
        "metadata": {"name": name, "namespace": SAMPLE_APP},
        "spec": {
            "replicas": replicas,
            "revisionHistoryLimit": 3,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"nodeSelector": {"workload-type": "general"}, "containers": [container]},
            },
            "strategy": strategy,
        },
    }


def _gateway_plugin(route: str) -> dict[str, Any]:
    return {"plugins": {"argoproj-labs/gatewayAPI": {"httpRoute": route, "namespace": SAMPLE_APP}}}


def bluegreen_sample(domain: str, domain_dashed: str) -> str:
    """
    Blue/green Rollout: success-rate and latency before promotion, error-rate
    and pod restarts after. Includes its Services, Gateway and HTTPRoute.
    """
    host = f"{SAMPLE_APP}.{domain}"
    rollout = _rollout(SAMPLE_APP, domain, {"blueGreen": {
        "activeService": f"{SAMPLE_APP}-active",
        "previewService": f"{SAMPLE_APP}-preview",
        "autoPromotionEnabled": False,
        "scaleDownDelaySeconds": 30,
        "prePromotionAnalysis": _analysis(
            ["success-rate", "latency-p99"], service_name=f"{SAMPLE_APP}-preview", namespace=SAMPLE_APP,
        ),
        "postPromotionAnalysis": _analysis(
            ["error-rate", "pod-restarts"],
            service_name=f"{SAMPLE_APP}-active", namespace=SAMPLE_APP, rollout_name=SAMPLE_APP,
        ),
        "trafficRouting": _gateway_plugin(f"{SAMPLE_APP}-route"),
    }})
    container = rollout["spec"]["template"]["spec"]["containers"][0]
    container["resources"] = {
        "requests": {"cpu": "100m", "memory": "128Mi"},
        "limits": {"cpu": "500m", "memory": "256Mi"},
    }
    gateway = {
        "apiVersion": GATEWAY_API,
        "kind": "Gateway",
        "metadata": {
            "name": SAMPLE_APP,
            "namespace": SAMPLE_APP,
            "annotations": {"cert-manager.io/cluster-issuer": "vault-issuer"},
        },
        "spec": {
            "gatewayClassName": "traefik",
            "listeners": [
                {"name": "http", "protocol": "HTTP", "port": 8000},
                {
                    "name": "https", "protocol": "HTTPS", "port": 8443, "hostname": host,
                    "tls": {"mode": "Terminate",
                            "certificateRefs": [{"name": f"{SAMPLE_APP}-{domain_dashed}-tls"}]},
                },
            ],
        },
    }
    return _dump_all([
        rollout,
        _service(f"{SAMPLE_APP}-active", SAMPLE_APP),
        _service(f"{SAMPLE_APP}-preview", SAMPLE_APP),
        gateway,
        _route(f"{SAMPLE_APP}-route", host, [f"{SAMPLE_APP}-active", f"{SAMPLE_APP}-preview"]),
    ])


def canary_sample(domain: str) -> str:
    """Canary Rollout shifting 10% -> 30% -> 60% -> 100% with analysis at each pause."""
    name = f"{SAMPLE_APP}-canary"
    preview, stable = f"{name}-preview", f"{name}-stable"
    pause = {"pause": {"duration": "60s"}}
    steps = [
        {"setWeight": 10}, pause,
        {"analysis": _analysis(["success-rate", "pod-restarts"],
                               service_name=preview, namespace=SAMPLE_APP, rollout_name=name)},
        {"setWeight": 30}, pause,
        {"analysis": _analysis(["success-rate", "latency-p99"],
                               service_name=preview, namespace=SAMPLE_APP, threshold_ms="500")},
        {"setWeight": 60}, pause,
        {"analysis": _analysis(["success-rate", "error-rate"], service_name=preview, namespace=SAMPLE_APP)},
        {"setWeight": 100},
    ]
    rollout = _rollout(name, domain, {"canary": {
        "canaryService": preview,
        "stableService": stable,
        "trafficRouting": _gateway_plugin(f"{name}-route"),
        "steps": steps,
    }})
    del rollout["spec"]["revisionHistoryLimit"]
    return _dump_all([
        rollout,
        _service(stable, name),
        _service(preview, name),
        _route(f"{name}-route", f"{name}.{domain}", [stable, preview]),
    ])


def _argocd_deploy_step(environment: str, timeout: int) -> dict[str, Any]:
    app = "${{ github.event.repository.name }}-" + environment
    return {
        "name": f"Deploy to {environment}",
        "run": (
            "argocd login ${{ secrets.ARGOCD_SERVER }} \\\n"
            "  --auth-token ${{ secrets.ARGOCD_AUTH_TOKEN }} \\\n"
            "  --grpc-web --insecure\n"
            f"argocd app set {app} \\\n"
            "  --kustomize-image ${{ env.IMAGE_NAME }}:${{ github.sha }}\n"
            f"argocd app sync {app} --prune --force\n"
            f"argocd app wait {app} --health --timeout {timeout}\n"
        ),
    }


INSTALL_ARGOCD = {
    "name": "Install ArgoCD CLI",
    "run": (
        "curl -sSL -o argocd https://github.com/argoproj/argo-cd/releases/latest/download/argocd-linux-amd64\n"
        "chmod +x argocd\n"
        "sudo mv argocd /usr/local/bin/\n"
    ),
}
CHECKOUT = {"uses": "actions/checkout@v4"}
ON_MAIN = "github.ref == 'refs/heads/main'"


def github_actions_sample() -> str:
    """lint -> build and push to Harbor -> test -> staging -> production (manual approval)."""
    workflow = {
        "name": "CI/CD Pipeline",
        "on": {"push": {"branches": ["main"]}, "pull_request": {"branches": ["main"]}},
        "env": {"IMAGE_NAME": "${{ secrets.HARBOR_REGISTRY }}/library/${{ github.event.repository.name }}"},
        "jobs": {
            "lint-yaml": {
                "runs-on": "ubuntu-latest",
                "steps": [CHECKOUT, {"name": "Lint YAML", "uses": "ibiqlik/action-yamllint@v3",
                                     "with": {"config_data": "extends: relaxed"}}],
            },
            "build": {
                "runs-on": "ubuntu-latest",
                "needs": ["lint-yaml"],
                "if": ON_MAIN,
                "steps": [
                    CHECKOUT,
                    {"name": "Set up Docker Buildx", "uses": "docker/setup-buildx-action@v3"},
                    {"name": "Login to Harbor", "uses": "docker/login-action@v3", "with": {
                        "registry": "${{ secrets.HARBOR_REGISTRY }}",
                        "username": "${{ secrets.HARBOR_CI_USER }}",
                        "password": "${{ secrets.HARBOR_CI_PASSWORD }}",
                    }},
                    {"name": "Build and push", "uses": "docker/build-push-action@v6", "with": {
                        "push": True,
                        "tags": "${{ env.IMAGE_NAME }}:${{ github.sha }}\n${{ env.IMAGE_NAME }}:latest\n",
                        "cache-from": "type=gha",
                        "cache-to": "type=gha,mode=max",
                    }},
                ],
            },
            "test": {
                "runs-on": "ubuntu-latest",
                "needs": ["build"],
                "if": ON_MAIN,
                "steps": [CHECKOUT, {"name": "Run integration tests", "run": 'echo "Add your integration tests here"'}],
            },
            "deploy-staging": {
                "runs-on": "ubuntu-latest",
                "needs": ["test"],
                "if": ON_MAIN,
                "environment": "staging",
                "steps": [INSTALL_ARGOCD, _argocd_deploy_step("staging", 300)],
            },
            "deploy-production": {
                "runs-on": "ubuntu-latest",
                "needs": ["deploy-staging"],
                "if": ON_MAIN,
                "environment": {"name": "production"},
                "steps": [INSTALL_ARGOCD, _argocd_deploy_step("production", 600)],
            },
        },
    }
    return yaml.safe_dump(workflow, sort_keys=False, default_flow_style=False)


def argocd_app_sample(owner: str) -> str:
    """Application syncing a Rollout-managed app; replica count is left to the Rollouts controller."""
    return yaml.safe_dump({
        "apiVersion": ROLLOUTS_API,
        "kind": "Application",
        "metadata": {"name": f"{SAMPLE_APP}-production", "namespace": ARGOCD_NAMESPACE},
        "spec": {
            "project": "default",
            "source": {
                "repoURL": f"git@github.com:{owner}/{SAMPLE_APP}.git",
                "targetRevision": "main",
                "path": "deploy/production",
            },
            "destination": {"server": "https://kubernetes.default.svc", "namespace": SAMPLE_APP},
            "syncPolicy": {
                "automated": {"prune": True, "selfHeal": True},
                "syncOptions": ["CreateNamespace=true", "RespectIgnoreDifferences=true"],
                "retry": {"limit": 3, "backoff": {"duration": "5s", "factor": 2, "maxDuration": "3m"}},
            },
            "ignoreDifferences": [
                {"group": "argoproj.io", "kind": "Rollout", "jsonPointers": ["/spec/replicas"]},
            ],
        },
    }, sort_keys=False)


def sample_files(domain: str, domain_dashed: str, owner: str) -> dict[str, str]:
    """File name -> content for every sample written to ``scripts/samples``."""
    return {
        "sample-rollout-bluegreen.yaml": bluegreen_sample(domain, domain_dashed),
        "sample-rollout-canary.yaml": canary_sample(domain),
        "sample-github-actions.yml": github_actions_sample(),
        "sample-argocd-app.yaml": argocd_app_sample(owner),
    }
