#!/usr/bin/env python3
"""CLI entry point for neon-deploy.

Noun-action subcommands:
- infra: Cloud resources (provision/teardown)
- deploy: Fixed topology on the cluster (apply)
- nodes: Storage-node registration (register)
- compute: Per-tenant compute instances (create/teardown/list)
- tenants: Storage-layer tenants (list/clear)
- verify: Post-deployment health checks
- preflight: Credentials, tools and state checks

Every fatal path prints a labeled failure with a suggested corrective
command and exits 1. Every run ends with a passed/failed/warnings tally.
"""

import argparse
import json
import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from common import (
    STATUS_FAILED,
    STATUS_OK,
    STATUS_WARNING,
    DeployError,
    PreconditionError,
    StepResult,
    confirm,
)
from config import BACKEND_AWS_S3, DeployConfig, apply_persisted_state, load_config
from reporting import RunReport

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "infra": "Cloud resources (provision/teardown)",
    "deploy": "Fixed topology on the cluster (apply)",
    "nodes": "Storage-node registration (register)",
    "compute": "Per-tenant compute instances (create/teardown/list)",
    "tenants": "Storage-layer tenants (list/clear)",
    "verify": "Post-deployment health checks",
    "preflight": "Check credentials, tools and deployment state",
}

NOUN_ACTIONS = {
    "infra": {"provision": "Create cloud resources (idempotent)",
              "teardown": "Destroy every resource (typed confirmation)"},
    "deploy": {"apply": "Apply the fixed topology in dependency order"},
    "nodes": {"register": "Register storage nodes with the storage controller"},
    "compute": {"create": "Create tenant, timeline and compute instance",
                "teardown": "Remove a compute (or --all); tenant data is kept",
                "list": "List compute instances"},
    "tenants": {"list": "List tenants known to the storage controller",
                "clear": "Delete all tenants (requires --delete)"},
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"neon-deploy {get_version()}")
    print()
    print("Usage: neon-deploy <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'neon-deploy <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  neon-deploy infra provision")
    print("  neon-deploy deploy apply --dry-run")
    print("  neon-deploy compute create")
    print("  neon-deploy compute teardown --all")
    print("  neon-deploy tenants clear --delete")


def _print_noun_usage(noun: str) -> None:
    print(f"Usage: neon-deploy {noun} <action> [options]")
    print()
    print("Actions:")
    for action, desc in NOUN_ACTIONS[noun].items():
        print(f"  {action:<10} {desc}")
    print()
    print(f"Run 'neon-deploy {noun} <action> --help' for action-specific options.")


def _common_parser(command: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by every command."""
    parser = argparse.ArgumentParser(prog=f'neon-deploy {command}', description=description)
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to deploy.yaml (default: $NEON_DEPLOY_CONFIG or ./deploy.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _out(args, *lines: str) -> None:
    """Print operator-facing text (stderr under --json-output)."""
    stream = sys.stderr if getattr(args, 'json_output', False) else sys.stdout
    for line in lines:
        print(line, file=stream)


# -----------------------------------------------------------------------------
# Run context
# -----------------------------------------------------------------------------

@dataclass
class RunContext:
    """Everything a handler needs for one invocation."""
    config: DeployConfig
    state: Any
    providers: Any
    report: RunReport
    context: dict


def _load(args, state_must_exist: bool, with_providers: bool = True) -> tuple[DeployConfig, Any, Any]:
    from providers import build_providers
    from state_store import open_state

    config = load_config(args.config)
    state = open_state(config.state_file, must_exist=state_must_exist)
    config = apply_persisted_state(config, state)
    providers = build_providers(config) if with_providers else None
    return config, state, providers


def _connect_cluster(ctx: RunContext) -> None:
    """Point kubectl at the provisioned cluster."""
    cluster = ctx.state.require('CLUSTER_NAME')
    logger.info(f"Updating kubeconfig for cluster '{cluster}'...")
    ctx.providers.cluster.update_kubeconfig(cluster)


def _run(command: str, args, handler: Callable[[RunContext], bool],
         state_must_exist: bool = True, write_report: bool = True,
         needs_credentials: bool = True) -> int:
    """Run a handler with uniform error labelling, tally and reporting."""
    from validation import require_credentials

    _setup_logging(args.verbose, args.json_output)
    report = RunReport(command=command, report_dir=Path('reports'))
    report.start()
    context: dict = {}
    success = False
    try:
        if needs_credentials:
            require_credentials()
        config, state, providers = _load(args, state_must_exist)
        report.report_dir = config.report_dir
        ctx = RunContext(config, state, providers, report, context)
        success = handler(ctx)
    except PreconditionError as e:
        report.error = str(e)
        _out(args, "", f"FAILED [{command}]: {e}")
        if e.hint:
            _out(args, f"  {e.hint}")
    except DeployError as e:
        report.error = str(e)
        _out(args, "", f"FAILED [{command}]: {e}")
        _out(args, "  Fix the problem above and re-run; completed steps are skipped.")
    except KeyboardInterrupt:
        report.error = 'interrupted'
        _out(args, "", f"FAILED [{command}]: interrupted")

    report.finish(success, write=write_report and not getattr(args, 'dry_run', False))
    _out(args, "", f"{command}: {report.tally_line()}")
    if args.json_output:
        print(json.dumps(report.to_dict(context), indent=2))
    return 0 if report.success else 1


def _print_steps(args, results: list[StepResult]) -> None:
    markers = {'ok': '✓', 'skipped': '✓', 'absent': '✓', 'warning': '!', 'failed': '✗'}
    for r in results:
        suffix = f": {r.message}" if r.message else ''
        _out(args, f"  {markers.get(r.status, '?')} {r.name} ({r.status}){suffix}")


# -----------------------------------------------------------------------------
# infra
# -----------------------------------------------------------------------------

def infra_provision_main(argv: list) -> int:
    """Handle 'infra provision'."""
    parser = _common_parser('infra provision', 'Create cloud resources (safe to re-run)')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from provisioner import provision_infrastructure

        results: list[StepResult] = []
        try:
            results = provision_infrastructure(ctx.config, ctx.providers, ctx.state)
        finally:
            ctx.report.extend(results)
        _out(args, "", "Provisioned resources:")
        _print_steps(args, results)
        _out(args, f"  State written to {ctx.config.state_file}",
             "", "Next: neon-deploy deploy apply")
        ctx.context.update(ctx.state.items())
        return True

    return _run('infra provision', args, handler, state_must_exist=False)


def infra_teardown_main(argv: list) -> int:
    """Handle 'infra teardown'."""
    parser = _common_parser('infra teardown', 'Destroy every resource recorded in the state file')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from teardown import CONFIRM_WORD, TeardownOrchestrator

        orchestrator = TeardownOrchestrator(
            ctx.config, ctx.state, ctx.providers,
            confirm_fn=lambda prompt: confirm(prompt, accept=(CONFIRM_WORD,), exact=True),
        )
        summary = orchestrator.teardown_all()
        if not summary.confirmed:
            _out(args, "Aborted. Nothing was deleted.")
            return True
        ctx.report.extend(summary.results)
        _print_steps(args, summary.results)
        if summary.state_removed:
            _out(args, "", "All resources destroyed.")
        return summary.failed == 0

    return _run('infra teardown', args, handler)


# -----------------------------------------------------------------------------
# deploy / nodes
# -----------------------------------------------------------------------------

def deploy_apply_main(argv: list) -> int:
    """Handle 'deploy apply'."""
    parser = _common_parser('deploy apply', 'Apply the fixed topology in dependency order')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print the ordered stage plan without applying anything',
    )
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from sequencer import StageFailedError
        from topology import build_sequencer, check_deploy_state, proxy_endpoint

        check_deploy_state(ctx.config, ctx.state)
        sequencer = build_sequencer(ctx.config, ctx.state, ctx.providers.kube, ctx.providers.metadata)
        if args.dry_run:
            sequencer.preview()
            return True

        logger.info(f"Storage backend: {ctx.config.storage_backend}")
        _connect_cluster(ctx)
        try:
            sequencer.apply()
        finally:
            ctx.report.extend(sequencer.results)
            _print_steps(args, sequencer.results)
        ctx.context['stages'] = sequencer.statuses

        endpoint = proxy_endpoint(ctx.providers.kube)
        if endpoint:
            _out(args, "", f"Proxy external endpoint: {endpoint}:5432")
        else:
            _out(args, "", f"Proxy LoadBalancer is provisioning - run "
                           f"'kubectl get svc proxy -n {ctx.config.namespace}' to check.")
        _out(args, "Next: neon-deploy verify")
        return not any(r.status == STATUS_FAILED for r in sequencer.results)

    return _run('deploy apply', args, handler)


def nodes_register_main(argv: list) -> int:
    """Handle 'nodes register'."""
    parser = _common_parser('nodes register', 'Register storage nodes with the storage controller')
    parser.add_argument('--count', type=int, help='Replica count (default: live statefulset size)')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from registrar import NodeRegistrar

        _connect_cluster(ctx)
        registrar = NodeRegistrar(ctx.config, ctx.providers.metadata, kube=ctx.providers.kube)
        summary = registrar.register_all(args.count)
        results = summary.to_results()
        ctx.report.extend(results)
        _print_steps(args, results)
        return True

    return _run('nodes register', args, handler)


# -----------------------------------------------------------------------------
# compute
# -----------------------------------------------------------------------------

def _compute_manager(ctx: RunContext):
    from compute import ComputeManager
    return ComputeManager(ctx.config, ctx.state, ctx.providers.kube, ctx.providers.metadata)


def compute_create_main(argv: list) -> int:
    """Handle 'compute create'."""
    parser = _common_parser('compute create', 'Create tenant → timeline → compute instance')
    parser.add_argument('--tenant-id', help='Existing or new 32-hex tenant id (default: generated)')
    parser.add_argument('--timeline-id', help='Existing or new 32-hex timeline id (default: generated)')
    parser.add_argument('--ancestor-timeline-id', help='Branch the new timeline from this timeline')
    parser.add_argument('--ancestor-start-lsn', help='LSN on the ancestor to branch at')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from compute import connection_instructions

        _connect_cluster(ctx)
        handle = _compute_manager(ctx).create_compute(
            tenant_id=args.tenant_id,
            timeline_id=args.timeline_id,
            ancestor_timeline_id=args.ancestor_timeline_id,
            ancestor_start_lsn=args.ancestor_start_lsn,
        )
        ctx.report.add(StepResult(f'create-{handle.compute_id}', STATUS_OK,
                                  f"tenant {handle.tenant_id} timeline {handle.timeline_id}"))
        for warning in handle.warnings:
            ctx.report.add(StepResult(f'ready-{handle.compute_id}', STATUS_WARNING, warning))
        ctx.context.update({
            'compute_id': handle.compute_id,
            'tenant_id': handle.tenant_id,
            'timeline_id': handle.timeline_id,
            'ready': handle.ready,
        })
        _out(args, "", *connection_instructions(ctx.config, handle))
        return True

    return _run('compute create', args, handler)


def compute_teardown_main(argv: list) -> int:
    """Handle 'compute teardown <id> | --all'."""
    parser = _common_parser('compute teardown',
                            'Remove compute Pod, Service and ConfigMap (tenant data is kept)')
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('compute_id', nargs='?', help='Compute id (e.g. compute-a1b2c3d4)')
    target.add_argument('--all', action='store_true', help='Tear down ALL compute instances')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        manager = _compute_manager(ctx)
        if not args.all:
            ctx.report.add(manager.teardown_compute(args.compute_id))
            _out(args, "Tenant/timeline data remains on the storage layer.")
            return True

        summary = manager.teardown_all(confirm_fn=confirm)
        ctx.report.extend(summary.results)
        _print_steps(args, summary.results)
        ctx.context['deleted'] = summary.deleted
        return summary.failed == 0

    return _run('compute teardown', args, handler, needs_credentials=False)


def compute_list_main(argv: list) -> int:
    """Handle 'compute list'."""
    parser = _common_parser('compute list', 'List compute instances')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        computes = _compute_manager(ctx).list_computes()
        ctx.context['computes'] = [c.__dict__ for c in computes]
        if not computes:
            _out(args, f"No compute pods in namespace '{ctx.config.namespace}'.")
            return True
        _out(args, f"{'NAME':<42} {'STATUS':<10} {'TENANT':<34} CREATED")
        for c in computes:
            _out(args, f"{c.name:<42} {c.phase:<10} {c.tenant_id:<34} {c.created}")
        return True

    return _run('compute list', args, handler, write_report=False, needs_credentials=False)


# -----------------------------------------------------------------------------
# tenants
# -----------------------------------------------------------------------------

def tenants_list_main(argv: list) -> int:
    """Handle 'tenants list'."""
    parser = _common_parser('tenants list', 'List tenants known to the storage controller')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from tenants import list_tenants

        ids = list_tenants(ctx.providers.metadata)
        ctx.context['tenants'] = ids
        _out(args, f"Found {len(ids)} tenant(s):", *(f"  {t}" for t in ids))
        return True

    return _run('tenants list', args, handler, write_report=False, needs_credentials=False)


def tenants_clear_main(argv: list) -> int:
    """Handle 'tenants clear --delete'."""
    parser = _common_parser('tenants clear', 'Delete all tenants (controller metadata and storage state)')
    parser.add_argument('--delete', action='store_true', help='Actually delete (after confirmation)')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from tenants import clear_tenants, list_tenants

        if not args.delete:
            ids = list_tenants(ctx.providers.metadata)
            _out(args, f"Found {len(ids)} tenant(s):", *(f"  {t}" for t in ids),
                 "", "Re-run with --delete to remove them.")
            return True

        summary = clear_tenants(ctx.providers.metadata, confirm_fn=confirm)
        ctx.report.extend(summary.results)
        ctx.context['deleted'] = summary.deleted
        return summary.failed == 0

    return _run('tenants clear', args, handler, needs_credentials=False)


# -----------------------------------------------------------------------------
# verify / preflight
# -----------------------------------------------------------------------------

def verify_main(argv: list) -> int:
    """Handle 'verify'."""
    parser = _common_parser('verify', 'Verify the deployment is healthy')
    args = parser.parse_args(argv)

    def handler(ctx: RunContext) -> bool:
        from verify import format_verification_results, run_verification

        success, results = run_verification(ctx.config, ctx.providers.kube)
        _out(args, format_verification_results(ctx.config, results))
        for key, section in results.items():
            ctx.report.extend(StepResult(key, STATUS_OK, item) for item in section['passed'])
            ctx.report.extend(StepResult(key, STATUS_FAILED, item) for item in section['failed'])
            ctx.report.extend(StepResult(key, STATUS_WARNING, item) for item in section['warnings'])
        return success

    return _run('verify', args, handler, state_must_exist=False, needs_credentials=False)


def preflight_main(argv: list) -> int:
    """Handle 'preflight'."""
    from validation import format_preflight_results, run_preflight_checks

    parser = _common_parser('preflight', 'Check credentials, tools and deployment state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = load_config(args.config)
    except PreconditionError as e:
        print(f"FAILED [preflight]: {e}")
        return 1

    success, results = run_preflight_checks(config.state_file)
    if args.json_output:
        print(json.dumps({'success': success, 'results': results}, indent=2))
    else:
        print(format_preflight_results(results))
        if config.storage_backend == BACKEND_AWS_S3:
            print(f"Storage backend: {config.storage_backend} (bucket {config.bucket_name})")
        else:
            print(f"Storage backend: {config.storage_backend}")
    return 0 if success else 1


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------

ACTION_HANDLERS: dict[tuple[str, Optional[str]], Callable[[list], int]] = {
    ('infra', 'provision'): infra_provision_main,
    ('infra', 'teardown'): infra_teardown_main,
    ('deploy', 'apply'): deploy_apply_main,
    ('nodes', 'register'): nodes_register_main,
    ('compute', 'create'): compute_create_main,
    ('compute', 'teardown'): compute_teardown_main,
    ('compute', 'list'): compute_list_main,
    ('tenants', 'list'): tenants_list_main,
    ('tenants', 'clear'): tenants_clear_main,
    ('verify', None): verify_main,
    ('preflight', None): preflight_main,
}


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "infra", "compute")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if (noun, None) in ACTION_HANDLERS:
        return ACTION_HANDLERS[(noun, None)](argv)

    if not argv or argv[0].startswith('-'):
        _print_noun_usage(noun)
        return 1 if not argv else 0

    action = argv[0]
    handler = ACTION_HANDLERS.get((noun, action))
    if handler is None:
        print(f"Error: Unknown {noun} action '{action}'")
        print(f"Available actions: {', '.join(NOUN_ACTIONS[noun])}")
        return 1
    return handler(argv[1:])


def main(argv: Optional[list] = None) -> int:
    """CLI entry point - dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"neon-deploy {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
