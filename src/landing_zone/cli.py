#!/usr/bin/env python3
"""Landing Zone Stack Orchestrator - Main Entry Point.

Command line wrapper around target resolution, the stack upsert engine
and the default resource steps.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from . import __version__
from .accounts.directory import AccountDirectory
from .core.aws_client import AWSClientManager
from .core.config import Configuration, ConfigurationError
from .core.credentials import CredentialBroker
from .core.errors import OrchestrationError
from .defaults.ebs_encryption import (
    create_default_ebs_encryption_keys,
    enable_default_ebs_encryption,
)
from .deployment.allocator import SharedKeyAllocator
from .deployment.orchestrator import BatchReport, DeploymentOrchestrator
from .deployment.registry import StackRegistry
from .deployment.sharing import vpc_shared_account_keys
from .deployment.targets import (
    AccountSet, AllAccounts, OwnershipRule, SharedVia, TargetResolver,
)
from .deployment.templates import TemplateStore
from .deployment.upsert import StackUpsertEngine
from .runtime.create_stack import handler


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Landing Zone Stack Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s create-stack request.yaml         # Create or update one stack
  %(prog)s resolve --all                     # List every target
  %(prog)s resolve --shared-vpc Central      # Targets a VPC is shared to
  %(prog)s ebs-keys --dry-run                # Render EBS key stacks only
        """,
    )

    parser.add_argument(
        "--config",
        help="Path to configuration file (default: auto-detect config.yaml)",
    )
    parser.add_argument("--profile", help="AWS profile name to use for credentials")
    parser.add_argument("--region", help="AWS region to use (overrides configuration file)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--version", action="version", version=f"Landing Zone Stack Orchestrator v{__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    create_stack = subparsers.add_parser(
        "create-stack", help="Create or update one stack from a request file"
    )
    create_stack.add_argument("request_file", help="YAML or JSON create-stack request")

    resolve = subparsers.add_parser("resolve", help="Print the targets of an ownership rule")
    group = resolve.add_mutually_exclusive_group(required=True)
    group.add_argument("--account", action="append", help="Account key (repeatable)")
    group.add_argument("--all", action="store_true", help="Every account in the directory")
    group.add_argument("--shared-vpc", help="Name of a configured VPC")
    resolve.add_argument(
        "--target-region", action="append", default=[], help="Target region (repeatable)"
    )

    ebs_keys = subparsers.add_parser(
        "ebs-keys", help="Create default EBS encryption keys for every VPC account"
    )
    ebs_keys.add_argument(
        "--dry-run", action="store_true", help="Print the stack templates without deploying"
    )

    return parser.parse_args(argv)


def auto_detect_config() -> Optional[str]:
    """Auto-detect configuration file in current directory.

    Returns:
        Path to configuration file if found, None otherwise
    """
    if Path("config.yaml").exists():
        return "config.yaml"

    if Path("config/settings.yaml").exists():
        return "config/settings.yaml"

    return None


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # botocore is very chatty at debug level
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def load_directory(config: Configuration, aws_client: AWSClientManager) -> AccountDirectory:
    """Load the account directory from the configured source.

    Raises:
        ConfigurationError: When no account source is configured
    """
    if config.get_accounts_file():
        return AccountDirectory.load_from_file(config.get_accounts_file())
    if config.get_parameters_table():
        return AccountDirectory.load_from_parameters_table(
            config.get_parameters_table(), aws_client
        )
    raise ConfigurationError(
        "No account source configured. Set 'accounts.file' or 'accounts.parameters_table'."
    )


def build_engine(config: Configuration, aws_client: AWSClientManager,
                 registry: Optional[StackRegistry] = None) -> StackUpsertEngine:
    retry_policy = config.get_retry_policy()
    return StackUpsertEngine(
        aws_client,
        CredentialBroker(aws_client, retry_policy),
        TemplateStore(aws_client),
        registry=registry,
        retry_policy=retry_policy,
        timeout_seconds=config.get_timeout_seconds(),
        poll_interval_seconds=config.get_poll_interval_seconds(),
    )


def build_rule(args: argparse.Namespace, config: Configuration) -> OwnershipRule:
    """Build the ownership rule selected on the command line.

    Raises:
        ConfigurationError: When the named VPC is not configured
    """
    regions = tuple(args.target_region)
    if args.all:
        return AllAccounts(regions=regions)
    if args.account:
        return AccountSet(tuple(args.account), regions=regions)

    for entry in config.get_vpc_configs():
        if entry.vpc_config.get('name') == args.shared_vpc:
            return SharedVia(
                entry.account_key,
                vpc_shared_account_keys,
                entry.vpc_config,
                entry.ou_key,
                regions=regions or ((entry.region,) if entry.region else ()),
            )
    raise ConfigurationError(f"VPC {args.shared_vpc} is not configured")


def print_report(report: BatchReport) -> None:
    """Print a batch report."""
    for result in sorted(report.successes, key=lambda r: r.target):
        print(f"✅ {result.target}: {result.outcome.value}")
    for failure in sorted(report.failures, key=lambda f: f.target):
        retry_hint = "safe to retry" if failure.retry_safe else "fix required before retry"
        print(f"❌ {failure.target}: {failure.error_kind} ({retry_hint})")
        print(f"   {failure.message}")
    for warning in report.warnings:
        print(f"⚠️  {warning}")

    print("-" * 50)
    print(
        f"{len(report.successes)} succeeded, {len(report.failures)} failed, "
        f"{len(report.warnings)} warnings"
    )


def run_create_stack(args: argparse.Namespace, config: Optional[Configuration],
                     aws_client: AWSClientManager) -> int:
    try:
        with open(args.request_file, "r", encoding="utf-8") as f:
            event = yaml.safe_load(f) or {}
    except (IOError, yaml.YAMLError) as e:
        print(f"❌ Unable to read request file {args.request_file}: {e}")
        return 1

    if config is not None and not event.get('parametersTableName') and config.get_parameters_table():
        event['parametersTableName'] = config.get_parameters_table()

    retry_policy = config.get_retry_policy() if config is not None else None
    result = handler(event, aws_client=aws_client, retry_policy=retry_policy)
    print(f"✅ {result['stackName']} in {result['target']}: {result['outcome']}")
    if result['stackId']:
        print(f"   Stack ID: {result['stackId']}")
    return 0


def run_resolve(args: argparse.Namespace, config: Configuration,
                aws_client: AWSClientManager) -> int:
    directory = load_directory(config, aws_client)
    resolver = TargetResolver(config.get_home_region())
    targets = resolver.resolve(build_rule(args, config), directory)
    for target in targets:
        print(target)
    return 0


def run_ebs_keys(args: argparse.Namespace, config: Configuration,
                 aws_client: AWSClientManager) -> int:
    directory = load_directory(config, aws_client)
    home_region = config.get_home_region()
    resolver = TargetResolver(home_region)
    registry = StackRegistry(directory, home_region, config.get_stack_name_prefix())

    step = create_default_ebs_encryption_keys(
        config.get_vpc_configs(),
        directory,
        resolver,
        registry,
        SharedKeyAllocator(),
        alias_prefix=config.get_stack_name_prefix(),
    )

    if args.dry_run:
        for handle in registry.handles():
            print(f"# {handle.name} ({handle.target})")
            print(handle.render_template())
        for warning in step.warnings:
            print(f"⚠️  {warning}")
        return 0

    engine = build_engine(config, aws_client, registry)
    orchestrator = DeploymentOrchestrator(directory, resolver, engine, config.get_max_workers())
    report = orchestrator.deploy_registry(
        registry, role_name=config.get_assume_role_name()
    )
    enable_default_ebs_encryption(
        report,
        step,
        directory,
        aws_client,
        engine.broker,
        role_name=config.get_assume_role_name(),
        alias_prefix=config.get_stack_name_prefix(),
    )
    report.warnings[:0] = step.warnings
    print_report(report)
    return 0 if report.ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_arguments(argv)
    configure_logging(args.verbose)

    if args.region:
        os.environ["AWS_REGION"] = args.region

    config = None
    config_path = args.config or auto_detect_config()
    if config_path:
        print(f"📄 Using configuration file: {config_path}")
        try:
            config = Configuration(config_path)
        except ConfigurationError as e:
            print(f"❌ Configuration error: {e}")
            return 1

    if config is None and args.command != "create-stack":
        print("❌ No configuration file found.")
        print("   Please create config.yaml or specify one with --config.")
        return 1

    profile = args.profile or (config.get_profile_name() if config else None)
    region = args.region or (config.get_home_region() if config else None)
    try:
        aws_client = AWSClientManager(profile_name=profile, region_name=region)
    except Exception as e:
        print(f"❌ AWS client initialization failed: {e}")
        return 1

    commands = {
        "create-stack": run_create_stack,
        "resolve": run_resolve,
        "ebs-keys": run_ebs_keys,
    }

    try:
        return commands[args.command](args, config, aws_client)
    except OrchestrationError as e:
        print(f"❌ {e.kind}: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
