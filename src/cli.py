#!/usr/bin/env python3
"""CLI entry point for fuoco.

Subcommands:
- deploy: provision an ephemeral VM, keep it until SIGINT/SIGTERM, destroy it
- undeploy: destroy the resources of a run whose process exited

Usage:
    fuoco deploy -c aws [-r eu-west-1] [-i t4g.micro] [-s setup.sh] [-p tcp:22 -p tcp:80]
    fuoco deploy -c gcp --project-id my-project [--json-output]
    fuoco undeploy -c aws -r eu-west-1
"""

import argparse
import json
import logging
import sys
from importlib import metadata

import catalog
from config import load_settings
from driver import TerraformDriver
from errors import FuocoError
from lifecycle import EXIT_FAILURE, LifecycleController
from session import ProvisioningSession
from validation import format_preflight_errors, run_preflight
from variables import RunConfiguration

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def get_version() -> str:
    """Get the installed package version ('dev' when running from a checkout)."""
    try:
        return metadata.version('fuoco')
    except metadata.PackageNotFoundError:
        return 'dev'


def _setup_logging(verbose: bool = False, json_output: bool = False) -> None:
    """Configure the root logger once.

    With --json-output, logs go to stderr so stdout carries only JSON.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stderr if json_output else sys.stdout,
        force=True,
    )


def _add_common_arguments(parser: argparse.ArgumentParser, region_required: bool) -> None:
    """Options shared by deploy and undeploy."""
    parser.add_argument(
        '--provider', '-c',
        required=True,
        help=f'Cloud provider: {", ".join(catalog.list_providers())}',
    )
    parser.add_argument(
        '--region', '-r',
        required=region_required,
        help='Cloud region (AWS/GCP region or Hetzner location)',
    )
    parser.add_argument(
        '--instance-type', '-i',
        help='Instance type (default: t4g.nano for AWS, e2-micro for GCP, cx11 for Hetzner)',
    )
    parser.add_argument(
        '--project-id',
        help='GCP project id (or GOOGLE_PROJECT)',
    )
    parser.add_argument(
        '--token',
        help='Hetzner Cloud API token (or HCLOUD_TOKEN)',
    )
    parser.add_argument(
        '--debug', '-d',
        action='store_true',
        help='Show external tool output live',
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
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='fuoco',
        description='Ephemeral VMs: deploy, keep until interrupted, destroy',
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'fuoco {get_version()}',
    )
    subparsers = parser.add_subparsers(dest='command')

    deploy = subparsers.add_parser(
        'deploy',
        help='Deploy an ephemeral VM and optionally run a startup script',
    )
    _add_common_arguments(deploy, region_required=False)
    deploy.add_argument(
        '--script-path', '-s',
        help='Path to a Bash script to execute on VM startup',
    )
    deploy.add_argument(
        '--inbound-rule', '-p',
        dest='inbound_rules',
        action='append',
        metavar='PROTO:PORT',
        help='Inbound rule, repeatable (default: tcp:22)',
    )
    deploy.add_argument(
        '--ssh-public-key-path', '-k',
        help='Public key to install on the machine (default: first of ~/.ssh/id_ed25519.pub, id_rsa.pub, id_ecdsa.pub)',
    )

    undeploy = subparsers.add_parser(
        'undeploy',
        help='Destroy an existing ephemeral VM deployment',
    )
    _add_common_arguments(undeploy, region_required=True)

    return parser


def _run_configuration(args) -> RunConfiguration:
    """Build the validated run configuration from parsed arguments."""
    extras = {}
    if args.project_id:
        extras['project_id'] = args.project_id
    if args.token:
        extras['hcloud_token'] = args.token

    return RunConfiguration.create(
        provider=args.provider,
        region=args.region,
        instance_type=args.instance_type,
        script_path=getattr(args, 'script_path', None),
        debug=args.debug,
        inbound_rules=getattr(args, 'inbound_rules', None),
        ssh_public_key_path=getattr(args, 'ssh_public_key_path', None),
        extras=extras,
    )


def _summary(session: ProvisioningSession) -> dict:
    return {
        'provider': session.config.provider.value,
        'region': session.variables.get('region'),
        'state': session.state.value,
        'outputs': dict(session.outputs),
    }


def print_parameters(session: ProvisioningSession, out=None) -> None:
    """Print the resolved parameters (sensitive values masked)."""
    out = out or sys.stdout
    print(f"Deploying to {session.config.provider.value}:", file=out)
    for line in session.variables.describe():
        print(f"  {line}", file=out)


def print_outputs(session: ProvisioningSession, json_output: bool = False) -> None:
    """Print the outputs block once resources are live."""
    if json_output:
        print(json.dumps(_summary(session), indent=2), flush=True)
        print("Resources deployed. Press Ctrl+C or send SIGTERM to destroy and exit.", file=sys.stderr)
        return

    print("*" * 27 + " Outputs " + "*" * 26)
    for key, value in session.outputs.items():
        print(f"{key}: {value}")
    print("*" * 62)
    print("Resources deployed.\n\nPress Ctrl+C or send SIGTERM to destroy and exit.", flush=True)


def main(argv=None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_FAILURE

    _setup_logging(args.verbose, args.json_output)
    info_out = sys.stderr if args.json_output else sys.stdout

    try:
        settings = load_settings()
        config = _run_configuration(args)
        descriptor = catalog.resolve(config.provider)
    except FuocoError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if settings.source:
        logger.debug(f"Loaded settings from {settings.source}")

    if not args.skip_preflight:
        errors = run_preflight(descriptor, settings)
        if errors:
            print(format_preflight_errors(errors), file=sys.stderr)
            return EXIT_FAILURE

    driver = TerraformDriver(binary=settings.binary, debug=config.debug or settings.debug)
    controller = LifecycleController(driver=driver, settings=settings)

    try:
        if args.command == 'deploy':
            result = controller.deploy(
                config,
                on_running=lambda s: print_outputs(s, args.json_output),
                on_resolved=lambda s: print_parameters(s, info_out),
            )
        else:
            result = controller.undeploy(config)
    except FuocoError as e:
        # Raised before any workspace or cloud call
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.json_output and (args.command == 'undeploy' or result.error is not None):
        report = _summary(controller.session)
        report['destroy_succeeded'] = result.destroy_succeeded
        if result.error is not None:
            report['error'] = str(result.error)
        print(json.dumps(report, indent=2))
    elif result.error is not None:
        print(f"Error: {result.error}", file=sys.stderr)

    if result.success:
        print("Resources destroyed." if result.destroy_succeeded else "Done.", file=info_out)
    return result.exit_code


if __name__ == '__main__':
    sys.exit(main())
