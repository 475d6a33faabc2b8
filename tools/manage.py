#!/usr/bin/env python3
"""
Attestation Relay Management CLI

Commands for operating the relay:
- check-config: Validate environment configuration (secrets masked)
- action-types: List supported action types and their on-chain ids
- attest: Run one orchestration against live services
- verified: Ask the ledger contract whether an action is recorded
- generate-key: Generate a fresh submitter signing key

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage check-config
    python -m tools.manage attest --user 0xAbC... --action TEMP_SEOUL_GT_15
    python -m tools.manage verified --user 0xAbC... --action TEMP_SEOUL_GT_15 --since 1717000000
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_check_config(args):
    """Validate configuration and print it with secrets masked."""
    from attestation_relay.config import RelayConfig
    from attestation_relay.core.errors import ConfigurationError

    try:
        config = RelayConfig.from_env()
    except ConfigurationError as e:
        print(f"[FAIL] {e}")
        return 1

    print("=== Attestation Relay Configuration ===\n")
    for name, value in config.redacted().items():
        print(f"  {name}: {value}")

    problems = config.problems()
    if not config.weather_api_key:
        print("\n[WARN] OPENWEATHERMAP_API_KEY is not set; TEMP_SEOUL_GT_15 requests will fail")

    if problems:
        print("\n[FAIL] Configuration problems:")
        for problem in problems:
            print(f"  - {problem}")
        return 1

    print(f"\n[OK] Configuration valid (hub fee {config.fee_wei} wei)")
    return 0


def cmd_action_types(args):
    """List supported action types."""
    from attestation_relay.config import RelayConfig
    from attestation_relay.core.registry import build_registry

    registry = build_registry(RelayConfig.from_env())
    definitions = [d.to_dict() for d in registry.definitions()]

    if args.json:
        print(json.dumps(definitions, indent=2))
        return 0

    for d in definitions:
        rule = d["rule"]
        print(f"{d['name']}")
        print(f"  id:   {d['id']}")
        print(f"  rule: value {rule['comparison']} {rule['threshold']} {rule['unit']}")
        print(f"  {d['description']}")
    return 0


async def _attest(user: str, action: str) -> dict:
    import httpx
    from attestation_relay.config import RelayConfig
    from attestation_relay.main import build_orchestrator

    config = RelayConfig.from_env()
    async with httpx.AsyncClient() as client:
        orchestrator = build_orchestrator(config, client)
        record = await orchestrator.run(user, action)
    return record.to_dict()


def cmd_attest(args):
    """Run one orchestration and print the resulting record."""
    from attestation_relay.core.errors import RelayError
    from attestation_relay.observability import setup_logging

    setup_logging()
    try:
        record = asyncio.run(_attest(args.user, args.action))
    except RelayError as e:
        print(f"[FAIL] {e}")
        return 1

    print(json.dumps(record, indent=2))
    return 0 if record["outcome"] in ("succeeded", "condition-not-met") else 2


def cmd_verified(args):
    """Query isActionVerified on the ledger contract."""
    from attestation_relay.config import RelayConfig
    from attestation_relay.core.chain import ChainSubmitter
    from attestation_relay.core.errors import RelayError
    from attestation_relay.schemas.actions import ActionType

    try:
        action = ActionType.parse(args.action)
    except ValueError:
        print(f"[FAIL] Unsupported action type: {args.action}")
        return 1

    try:
        submitter = ChainSubmitter.from_config(RelayConfig.from_env())
        verified = asyncio.run(submitter.is_action_verified(args.user, action, args.since))
    except RelayError as e:
        print(f"[FAIL] {e}")
        return 1

    status = "[OK] verified" if verified else "[--] not verified"
    print(f"{status}: {args.user} {action.value} since {args.since}")
    return 0


def cmd_generate_key(args):
    """Generate a new submitter signing key."""
    from eth_account import Account

    account = Account.create()
    private_key = "0x" + bytes(account.key).hex()
    print("Generated submitter account\n")
    print(f"  Address: {account.address}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Fund the address on the target chain, then set:")
    print(f"  PROVIDER_PRIVATE_KEY={private_key}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Attestation Relay Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # check-config
    subparsers.add_parser(
        "check-config",
        help="Validate environment configuration"
    )

    # action-types
    p_actions = subparsers.add_parser(
        "action-types",
        help="List supported action types"
    )
    p_actions.add_argument("--json", action="store_true", help="Print as JSON")

    # attest
    p_attest = subparsers.add_parser(
        "attest",
        help="Run one orchestration against live services"
    )
    p_attest.add_argument("--user", required=True, help="User address")
    p_attest.add_argument("--action", required=True, help="Action type name")

    # verified
    p_verified = subparsers.add_parser(
        "verified",
        help="Ask the ledger whether an action is recorded"
    )
    p_verified.add_argument("--user", required=True, help="User address")
    p_verified.add_argument("--action", required=True, help="Action type name")
    p_verified.add_argument("--since", type=int, default=0, help="Minimum unix timestamp")

    # generate-key
    subparsers.add_parser(
        "generate-key",
        help="Generate a submitter signing key"
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "check-config": cmd_check_config,
        "action-types": cmd_action_types,
        "attest": cmd_attest,
        "verified": cmd_verified,
        "generate-key": cmd_generate_key,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
