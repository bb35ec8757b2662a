"""
remediation.py — revoke delegates, and reproduce the stale-delegate pattern
===========================================================================

CLEANUP
───────
For every token account of an owner (filtered by mint) that currently
exposes a delegate, send one `revoke` signed by the owner and paid for by
the fee payer. The fee payer's balance is checked against the quoted fee
before anything is signed; a short balance stops that owner's cleanup.
With dry_run every read-only step still runs (blockhash, fee quote,
balance check) and nothing is submitted.

SIMULATE
────────
Builds the exact sequence the audit is meant to catch, for devnet/testnet
rehearsal: a fresh token account owned by the fee payer approves the fee
payer as delegate, tokens go in and out, then ownership is handed to the
target. The target now owns an account carrying a delegate it never
granted.
"""

import base64
import logging

from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, create_account
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    ApproveParams,
    AuthorityType,
    InitializeAccountParams,
    RevokeParams,
    SetAuthorityParams,
    TransferParams,
    approve,
    initialize_account,
    revoke,
    set_authority,
    transfer,
)

from audit_engine.errors import InsufficientFunds
from solana_fetcher import TOKEN_ACCOUNT_LEN, iter_token_accounts

log = logging.getLogger(__name__)

SIMULATED_APPROVAL = 9_999_999
SIMULATED_TRANSFER = 123


def _b64(obj) -> str:
    return base64.b64encode(bytes(obj)).decode("ascii")


def _unique_signers(*keypairs) -> list:
    seen, out = set(), []
    for kp in keypairs:
        if kp.pubkey() not in seen:
            seen.add(kp.pubkey())
            out.append(kp)
    return out


def ensure_fee_affordable(client, fee_payer: Pubkey, message: Message, extra_lamports: int = 0) -> int:
    """Raise InsufficientFunds unless the fee payer covers the message fee (plus `extra_lamports`)."""
    fee     = client.get_fee_for_message(_b64(message))
    balance = client.get_balance(str(fee_payer))
    if balance < fee + extra_lamports:
        raise InsufficientFunds(str(fee_payer), balance, fee + extra_lamports)
    return fee


def submit(client, message: Message, signers: list, blockhash) -> str:
    tx = Transaction(_unique_signers(*signers), message, blockhash)
    signature = client.send_transaction(_b64(tx))
    client.wait_for_confirmation(signature)
    return signature


# ─────────────────────────────────────────────────────────────────────────────
# CLEANUP
# ─────────────────────────────────────────────────────────────────────────────

def build_revoke_instruction(account: Pubkey, owner: Pubkey):
    return revoke(RevokeParams(program_id=TOKEN_PROGRAM_ID, account=account, owner=owner))


def cleanup_account(client, owner: Keypair, fee_payer: Keypair, state, dry_run: bool = True):
    """Revoke the current delegate of one token account. Returns the txid, or None."""
    if not state.delegate:
        return None

    log.info("[CLEANUP] revoking delegate %s for account %s", state.delegate, state.address)
    ix = build_revoke_instruction(Pubkey.from_string(state.address), owner.pubkey())
    blockhash = client.get_latest_blockhash()
    message = Message.new_with_blockhash([ix], fee_payer.pubkey(), blockhash)
    fee = ensure_fee_affordable(client, fee_payer.pubkey(), message)

    if dry_run:
        log.info("[CLEANUP] dry run, not submitted (fee %d lamports): %s", fee, _b64(message))
        return None

    signature = submit(client, message, [owner, fee_payer], blockhash)
    log.info("[CLEANUP] txid: %s", signature)
    return signature


def run_cleanup(client, owners: list, mints: list, fee_payer: Keypair, dry_run: bool = True) -> dict:
    """
    Revoke every current delegate on the owners' token accounts for `mints`.

    Returns owner pubkey → list of (token account, txid or None). An owner
    whose fee payer runs short is reported and skipped; the others continue.
    """
    results = {}
    for owner in owners:
        owner_key = str(owner.pubkey())
        done = results.setdefault(owner_key, [])
        try:
            for _, state in iter_token_accounts(client, [owner_key], mints):
                done.append((state.address, cleanup_account(client, owner, fee_payer, state, dry_run)))
        except InsufficientFunds as e:
            log.error("[CLEANUP] %s; nothing further submitted for owner %s", e, owner_key)
    return results


# ─────────────────────────────────────────────────────────────────────────────
# SIMULATE
# ─────────────────────────────────────────────────────────────────────────────

def build_simulation_instructions(fee_payer: Pubkey, aux: Pubkey, mint: Pubkey,
                                  source: Pubkey, target: Pubkey, rent_lamports: int) -> list:
    return [
        create_account(CreateAccountParams(
            from_pubkey=fee_payer,
            to_pubkey=aux,
            lamports=rent_lamports,
            space=TOKEN_ACCOUNT_LEN,
            owner=TOKEN_PROGRAM_ID,
        )),
        initialize_account(InitializeAccountParams(
            program_id=TOKEN_PROGRAM_ID, account=aux, mint=mint, owner=fee_payer,
        )),
        approve(ApproveParams(
            program_id=TOKEN_PROGRAM_ID, source=aux, delegate=fee_payer, owner=fee_payer,
            amount=SIMULATED_APPROVAL,
        )),
        transfer(TransferParams(
            program_id=TOKEN_PROGRAM_ID, source=source, dest=aux, owner=fee_payer,
            amount=SIMULATED_TRANSFER,
        )),
        transfer(TransferParams(
            program_id=TOKEN_PROGRAM_ID, source=aux, dest=source, owner=fee_payer,
            amount=SIMULATED_TRANSFER,
        )),
        set_authority(SetAuthorityParams(
            program_id=TOKEN_PROGRAM_ID,
            account=aux,
            authority=AuthorityType.ACCOUNT_OWNER,
            current_authority=fee_payer,
            new_authority=target,
        )),
    ]


def simulate(client, fee_payer: Keypair, target: Pubkey, mint: Pubkey, source: Pubkey,
             dry_run: bool = True, aux: Keypair = None) -> str:
    """
    Hand `target` a token account with a delegate it never approved.

    Returns the txid, or the base64 message when `dry_run`.
    """
    aux  = aux or Keypair()
    rent = client.get_minimum_balance_for_rent_exemption(TOKEN_ACCOUNT_LEN)
    ixs  = build_simulation_instructions(fee_payer.pubkey(), aux.pubkey(), mint, source, target, rent)

    blockhash = client.get_latest_blockhash()
    message = Message.new_with_blockhash(ixs, fee_payer.pubkey(), blockhash)
    ensure_fee_affordable(client, fee_payer.pubkey(), message, extra_lamports=rent)

    if dry_run:
        encoded = _b64(message)
        log.info("[SIMULATE] dry run, aux account %s: %s", aux.pubkey(), encoded)
        return encoded

    signature = submit(client, message, [aux, fee_payer], blockhash)
    log.info("[SIMULATE] aux account %s handed to %s, txid: %s", aux.pubkey(), target, signature)
    return signature
