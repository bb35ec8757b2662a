"""
delegation_audit.py — stale token delegation audit
==================================================
Subcommands:

  audit     discover the owners' token accounts for the given mints, replay
            each account's full history and report every owner reassignment
            that left a delegate behind
  cleanup   revoke the current delegate of every such account
  simulate  build the stale-delegate pattern on a test cluster

Owner identities are keypair files (Solana CLI JSON array), base58 secret
keys, or, for `audit` only, plain base58 public keys.

Usage:
  python delegation_audit.py audit   --owner OWNER --mint MINT [--mint MINT2]
  python delegation_audit.py cleanup --owner ~/.config/solana/id.json --mint MINT --dry-run
  python delegation_audit.py --replay data/replay_cases.json audit --owner OWNER --mint MINT
"""

import argparse
import json
import logging
import os
import sys

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from audit_engine.config import build_config, check_ignored_kinds
from audit_engine.errors import AuditError
from audit_engine.report import print_quick_metrics, save_outputs
from audit_engine.risk import assess_report
from audit_engine.scanner import run_audit
from remediation import run_cleanup, simulate
from solana_fetcher import ReplayRpcClient, SolanaRpcClient

log = logging.getLogger("delegation_audit")

KEYPAIR_LEN = 64


# ─────────────────────────────────────────────────────────────────────────────
# KEYS
# ─────────────────────────────────────────────────────────────────────────────

def load_keypair(source: str) -> Keypair:
    """Keypair from a JSON-array key file or a base58 secret key."""
    path = os.path.expanduser(source)
    try:
        if os.path.isfile(path):
            with open(path, encoding="utf-8") as f:
                secret = bytes(json.load(f))
        else:
            secret = base58.b58decode(source.strip())
    except (TypeError, ValueError) as e:
        raise argparse.ArgumentTypeError(f"not a keypair file or base58 secret key: {source}") from e
    if len(secret) != KEYPAIR_LEN:
        raise argparse.ArgumentTypeError(f"not a keypair file or base58 secret key: {source}")
    try:
        return Keypair.from_bytes(secret)
    except ValueError as e:
        # public half does not match the secret half
        raise argparse.ArgumentTypeError(f"corrupt keypair: {source}") from e


def owner_pubkey(source: str) -> str:
    """Base58 owner address from a public key, a key file or a secret key."""
    try:
        return str(Pubkey.from_string(source))
    except ValueError:
        return str(load_keypair(source).pubkey())


def parse_pubkey(value: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid address: {value}") from e


def parse_ignored_kind(value: str) -> str:
    try:
        check_ignored_kinds((value,))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    return value


# ─────────────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────────────

def cmd_audit(args, client, cfg) -> int:
    owners = [owner_pubkey(o) for o in args.owner]
    mints  = [str(m) for m in args.mint]

    report   = run_audit(client, owners, mints, cfg)
    findings = assess_report(report)
    _, metrics = save_outputs(report, findings, cfg)
    print_quick_metrics(metrics, cfg["output_dir"])
    return 0


def cmd_cleanup(args, client, cfg) -> int:
    owners    = [load_keypair(o) for o in args.owner]
    fee_payer = load_keypair(args.fee_payer) if args.fee_payer else owners[0]
    mints     = [str(m) for m in args.mint]

    results = run_cleanup(client, owners, mints, fee_payer, dry_run=args.dry_run)
    revoked = sum(1 for done in results.values() for _, sig in done if sig)
    print(f"\n  Accounts handled: {sum(len(d) for d in results.values())}  |  Revoked: {revoked}"
          f"{'  (dry run)' if args.dry_run else ''}\n")
    return 0


def cmd_simulate(args, client, cfg) -> int:
    if not args.fee_payer:
        log.error("[SIMULATE] --fee-payer is required")
        return 2
    result = simulate(
        client,
        load_keypair(args.fee_payer),
        target=args.target,
        mint=args.mint[0],
        source=args.source,
        dry_run=args.dry_run,
    )
    print(result)
    return 0


COMMANDS = {"audit": cmd_audit, "cleanup": cmd_cleanup, "simulate": cmd_simulate}


# ─────────────────────────────────────────────────────────────────────────────
# CLI ENTRY POINT
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Audit SPL token accounts for delegates that survived an owner reassignment"
    )
    parser.add_argument("--url", help="Solana JSON-RPC endpoint (default: $SOLANA_RPC_URL or mainnet-beta)")
    parser.add_argument("--replay", metavar="FILE", help="Answer RPC calls from a JSON fixture instead")
    parser.add_argument("--dry-run", action="store_true", help="Build and price transactions, never send")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--output-dir", help="Where audit outputs are written")
    parser.add_argument("--fee-payer", help="Keypair paying remediation fees (default: first owner)")

    scan = parser.add_argument_group("history scan")
    scan.add_argument("--lenient", action="store_true",
                      help="Log and skip unrecognized token instructions instead of aborting")
    scan.add_argument("--ignore-kind", action="append", default=[], metavar="KIND", type=parse_ignored_kind,
                      help="Treat this instruction kind as harmless (repeatable)")
    scan.add_argument("--no-owner-burns", action="store_true",
                      help="Do not record burns signed by the recognized owner")
    scan.add_argument("--page-size", type=int, help="Signatures per history page")
    scan.add_argument("--max-retries", type=int, help="Retries on transport errors, HTTP 429 and 5xx")
    scan.add_argument("--tx-workers", type=int, help="Parallel transaction fetches per page")
    scan.add_argument("--account-workers", type=int, help="Parallel token-account scans")

    sub = parser.add_subparsers(dest="command", required=True)
    for name, helptext in (("audit", "Report stale delegations"),
                           ("cleanup", "Revoke current delegates"),
                           ("simulate", "Create a stale-delegate account on a test cluster")):
        cmd = sub.add_parser(name, help=helptext)
        cmd.add_argument("--mint", action="append", required=True, type=parse_pubkey,
                         help="Token mint address (repeatable)")
        if name == "simulate":
            cmd.add_argument("--source", required=True, type=parse_pubkey,
                             help="Fee payer's token account the tokens move from")
            cmd.add_argument("--target", required=True, type=parse_pubkey,
                             help="Owner the aux account is handed to")
        else:
            cmd.add_argument("--owner", action="append", required=True,
                             help="Owner public key, keypair file or base58 secret key (repeatable)")
    return parser


def config_from_args(args) -> dict:
    return build_config(
        rpc_url=args.url,
        output_dir=args.output_dir,
        strict=False if args.lenient else None,
        record_owner_burns=False if args.no_owner_burns else None,
        extra_ignored_kinds=tuple(args.ignore_kind) or None,
        signatures_page_limit=args.page_size,
        max_retries=args.max_retries,
        tx_fetch_workers=args.tx_workers,
        account_workers=args.account_workers,
    )


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    cfg    = config_from_args(args)
    client = ReplayRpcClient.from_file(args.replay) if args.replay else SolanaRpcClient.from_config(cfg)

    try:
        return COMMANDS[args.command](args, client, cfg)
    except argparse.ArgumentTypeError as e:
        log.error("[ABORT] %s", e)
        return 2
    except AuditError as e:
        log.error("[ABORT] %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
