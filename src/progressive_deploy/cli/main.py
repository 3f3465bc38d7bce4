"""
pdctl: command-line interface for progressive-deploy.

Usage:
    pdctl status my-app
    pdctl list -A
    pdctl promote my-app
    pdctl rollback my-app --force
    pdctl pause my-app
    pdctl resume my-app
    pdctl run --config operator.yaml
    pdctl crd
    pdctl version
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable, List, Optional

import yaml

from progressive_deploy import __version__
from progressive_deploy.config import OperatorConfig
from progressive_deploy.delivery.overrides import (
    DeploymentClient,
    OverrideError,
    StatusView,
    format_age,
)
from progressive_deploy.delivery.rollout import Phase
from progressive_deploy.k8s import generate_crd_manifest, utcnow
from progressive_deploy.store import ResourceNotFoundError, StoreError

logger = logging.getLogger(__name__)

_PHASE_HINTS = {
    Phase.ANALYZING.value: "Analyzing metrics, waiting for the step duration",
    Phase.PROMOTING.value: "Promoting to the next step",
    Phase.ROLLING_BACK.value: "Rolling back to the stable version",
    Phase.COMPLETED.value: "Deployment completed successfully",
    Phase.ROLLED_BACK.value: "Deployment was rolled back",
    Phase.FAILED.value: "Deployment failed",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdctl",
        description="Manage progressive canary deployments",
    )
    parser.add_argument("-n", "--namespace", default="default", help="Kubernetes namespace")
    parser.add_argument("--kubeconfig", default=None, help="Path to a kubeconfig file")
    subparsers = parser.add_subparsers(dest="command")

    status_parser = subparsers.add_parser("status", help="Show the status of a progressive deployment")
    status_parser.add_argument("name")
    status_parser.add_argument("-o", "--output", choices=["text", "json"], default="text")

    list_parser = subparsers.add_parser("list", help="List progressive deployments")
    list_parser.add_argument("-A", "--all-namespaces", action="store_true",
                             help="List across all namespaces")

    promote_parser = subparsers.add_parser("promote", help="Promote to the next canary step")
    promote_parser.add_argument("name")

    rollback_parser = subparsers.add_parser("rollback", help="Roll back to the stable version")
    rollback_parser.add_argument("name")
    rollback_parser.add_argument("--force", action="store_true", help="Skip the confirmation prompt")

    pause_parser = subparsers.add_parser("pause", help="Hold the rollout at its current step")
    pause_parser.add_argument("name")

    resume_parser = subparsers.add_parser("resume", help="Resume a paused rollout")
    resume_parser.add_argument("name")

    run_parser = subparsers.add_parser("run", help="Run the operator")
    run_parser.add_argument("--config", default=None, help="Operator configuration YAML")

    subparsers.add_parser("crd", help="Print the CustomResourceDefinition as YAML")
    subparsers.add_parser("version", help="Show version")
    return parser


def _default_client(kubeconfig: Optional[str]) -> DeploymentClient:
    from progressive_deploy.k8s.store import KubernetesStore, load_kube_config

    load_kube_config(kubeconfig)
    return DeploymentClient(KubernetesStore())


def _error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


def _print_status(view: StatusView) -> None:
    print(f"Progressive Deployment: {view.namespace}/{view.name}")
    print(f"  Phase:    {view.phase}{' (paused)' if view.paused else ''}")
    print(f"  Step:     {view.step} ({view.canary_percentage}%)")
    print(f"  Health:   {view.health}")
    print(f"  Target:   {view.target_deployment}")
    if view.canary_deployment:
        print(f"  Canary:   {view.canary_deployment}")
    print(f"  Age:      {view.age()}")
    if view.metrics:
        print("  Metrics:")
        for key, value in sorted(view.metrics.items()):
            print(f"    {key + ':':<15} {value:.6f}")
    if view.message:
        print(f"  Message:  {view.message}")
    hint = _PHASE_HINTS.get(view.phase)
    if hint:
        print()
        print(hint)


def _print_table(client: DeploymentClient, namespace: Optional[str]) -> int:
    records = client.list(namespace)
    if not records:
        if namespace is None:
            print("No progressive deployments found in any namespace")
        else:
            print(f"No progressive deployments found in namespace '{namespace}'")
        return 0

    now = utcnow()
    rows: List[List[str]] = []
    for record in records:
        view = StatusView.from_record(record)
        age = (
            format_age((now - view.created).total_seconds()) if view.created else "<unknown>"
        )
        row = [view.name, view.phase, view.step, f"{view.canary_percentage}%", view.health, age]
        if namespace is None:
            row.insert(0, view.namespace)
        rows.append(row)

    header = ["NAME", "PHASE", "STEP", "PERCENTAGE", "HEALTH", "AGE"]
    if namespace is None:
        header.insert(0, "NAMESPACE")
    widths = [max(len(r[i]) for r in [header] + rows) for i in range(len(header))]
    for row in [header] + rows:
        print("   ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return 0


def _rollback(client: DeploymentClient, namespace: str, name: str, force: bool,
              input_fn: Callable[[str], str]) -> int:
    view = client.status(namespace, name)
    if view.phase == Phase.ROLLED_BACK.value:
        print("Deployment is already rolled back")
        return 0
    if view.phase == Phase.COMPLETED.value:
        return _error("cannot rollback a completed deployment")
    if view.phase == Phase.FAILED.value:
        return _error("deployment is in Failed state; fix the target and recreate it")

    if not force:
        print(f"About to rollback '{name}' (currently in {view.phase} phase)")
        answer = input_fn("Continue? (y/N): ").strip()
        if answer not in ("y", "Y"):
            print("Rollback cancelled")
            return 0

    result = client.rollback(namespace, name)
    if not result.changed:
        print(f"Nothing to do: {result.message}")
        return 0
    print(f"Rollback initiated for {name}")
    print("  The operator will restore the stable deployment")
    return 0


def _run(config_path: Optional[str], kubeconfig: Optional[str]) -> int:
    from progressive_deploy.controller.manager import Operator
    from progressive_deploy.delivery.reconciler import Reconciler
    from progressive_deploy.k8s.store import KubernetesStore, load_kube_config
    from progressive_deploy.metrics.prometheus import PrometheusPool

    config = OperatorConfig.from_yaml(config_path) if config_path else OperatorConfig()
    config = config.with_env()
    if kubeconfig:
        config = config.model_copy(update={"kubeconfig": kubeconfig})

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_kube_config(config.kubeconfig)
    store = KubernetesStore()
    reconciler = Reconciler(
        store,
        metrics_backend=PrometheusPool(config.prometheus_url, timeout=config.query_timeout_seconds),
        retry_seconds=config.retry_seconds,
        default_prometheus_url=config.prometheus_url,
    )
    operator = Operator(reconciler, store, config)
    operator.start()
    try:
        operator.wait()
    except KeyboardInterrupt:
        pass
    finally:
        operator.stop()
    return 0


def cli(
    args: Optional[List[str]] = None,
    client: Optional[DeploymentClient] = None,
    input_fn: Callable[[str], str] = input,
) -> int:
    """Main CLI entry point. Returns exit code."""
    parser = _build_parser()
    parsed = parser.parse_args(args)

    if parsed.command == "version":
        print(f"pdctl {__version__}")
        return 0

    if parsed.command == "crd":
        print(yaml.safe_dump(generate_crd_manifest(), sort_keys=False), end="")
        return 0

    if parsed.command == "run":
        return _run(parsed.config, parsed.kubeconfig)

    if parsed.command is None:
        parser.print_help()
        return 1

    if client is None:
        client = _default_client(parsed.kubeconfig)
    namespace = parsed.namespace

    try:
        if parsed.command == "status":
            view = client.status(namespace, parsed.name)
            if parsed.output == "json":
                print(json.dumps(view.to_dict(), indent=2))
            else:
                _print_status(view)
            return 0

        if parsed.command == "list":
            return _print_table(client, None if parsed.all_namespaces else namespace)

        if parsed.command == "promote":
            record = client.get(namespace, parsed.name)
            if (record.spec or {}).get("autoPromote", True):
                print("Warning: autoPromote is enabled. The operator will promote automatically.")
            result = client.promote(namespace, parsed.name)
            if result.changed:
                step = record.status.current_step
                print(f"Promoted {parsed.name} to next step")
                print(f"  Moving from step {step + 1} to step {step + 2}")
            else:
                print("Already promoting...")
            return 0

        if parsed.command == "rollback":
            return _rollback(client, namespace, parsed.name, parsed.force, input_fn)

        if parsed.command in ("pause", "resume"):
            result = getattr(client, parsed.command)(namespace, parsed.name)
            if result.changed:
                print(f"{parsed.name} {'paused' if parsed.command == 'pause' else 'resumed'}")
            else:
                print(f"Nothing to do: {result.message}")
            return 0
    except ResourceNotFoundError as exc:
        return _error(f"progressive deployment {exc.namespace}/{exc.name} not found")
    except (OverrideError, StoreError) as exc:
        return _error(str(exc))

    parser.print_help()
    return 1


def main() -> Any:
    sys.exit(cli())


if __name__ == "__main__":
    main()
