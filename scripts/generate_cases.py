"""
Generate synthetic but structurally exact token-account histories for:
  - Case 1: Pre-approved account handed over, then drained   (Danger)
  - Case 2: Pre-approved account handed over, not yet used   (Warning)
  - Case 3: Plain account handed over, no delegation          (Safe)
  - Case 4: Account opened and funded by its owner            (no reassignment)

All four belong to one victim and one mint. A fifth account of the same
owner holds a different mint and must be filtered out at discovery.

The pattern behind cases 1 and 2 is the "gift account" scam: someone
creates a token account, approves themselves as delegate, then hands the
account's ownership to the victim. The victim sees a new account in the
wallet, deposits into it, and the delegate can still move the funds.

Output is a replay fixture (see solana_fetcher.ReplayRpcClient):
  python delegation_audit.py --replay data/replay_cases.json \
      audit --owner <VICTIM> --mint <MINT>
"""

import hashlib
import json
import os

from solders.pubkey import Pubkey
from solders.signature import Signature

from audit_engine.instructions import TOKEN_PROGRAM_ID

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
BLOCK_TIME_0      = 1_700_000_000


def fake_addr(seed: str) -> str:
    return str(Pubkey(hashlib.sha256(("addr_" + seed).encode()).digest()))


def fake_sig(seed: str) -> str:
    return str(Signature.from_bytes(hashlib.sha512(("sig_" + seed).encode()).digest()))


VICTIM         = fake_addr("victim")
MINT           = fake_addr("mint_usdc_like")
OTHER_MINT     = fake_addr("mint_other")
SCAMMER        = fake_addr("scammer")
SCAMMER_TOKENS = fake_addr("scammer_token_account")
PREV_OWNER     = fake_addr("previous_owner")
PREV_DELEGATE  = fake_addr("previous_delegate")
VICTIM_MAIN    = fake_addr("victim_main_token_account")
AMM_PROGRAM    = fake_addr("amm_program")

FRAUD_ACCOUNT   = fake_addr("case1_fraud_account")
WARNING_ACCOUNT = fake_addr("case2_warning_account")
SAFE_ACCOUNT    = fake_addr("case3_safe_account")
CLEAN_ACCOUNT   = fake_addr("case4_clean_account")
OTHER_ACCOUNT   = fake_addr("case5_other_mint_account")


# ─────────────────────────────────────────────────────────────────────────────
# INSTRUCTION BUILDERS (jsonParsed shapes)
# ─────────────────────────────────────────────────────────────────────────────

def token_ix(kind: str, **info) -> dict:
    return {
        "program":     "spl-token",
        "programId":   TOKEN_PROGRAM_ID,
        "parsed":      {"type": kind, "info": info},
        "stackHeight": None,
    }


def system_transfer(source: str, destination: str, lamports: int) -> dict:
    return {
        "program":   "system",
        "programId": SYSTEM_PROGRAM_ID,
        "parsed":    {"type": "transfer",
                      "info": {"source": source, "destination": destination, "lamports": lamports}},
        "stackHeight": None,
    }


def amm_swap() -> dict:
    return {"programId": AMM_PROGRAM, "accounts": [], "data": "3Bxs4h24hBtQy9rw", "stackHeight": None}


def token_amount(amount: int, decimals: int = 6) -> dict:
    ui = f"{amount / 10 ** decimals:.{decimals}f}".rstrip("0").rstrip(".")
    return {"amount": str(amount), "decimals": decimals, "uiAmount": float(ui), "uiAmountString": ui}


# ─────────────────────────────────────────────────────────────────────────────
# HISTORY BUILDER
# ─────────────────────────────────────────────────────────────────────────────

class History:
    """Accumulates one account's signatures and transaction bodies, oldest first."""

    def __init__(self, address: str):
        self.address      = address
        self.signatures   = []
        self.transactions = {}

    def tx(self, seed: str, slot: int, instructions: list, inner: dict = None, failed: bool = False):
        sig = fake_sig(f"{self.address}:{seed}")
        err = {"InstructionError": [0, {"Custom": 1}]} if failed else None
        self.signatures.append({
            "signature":          sig,
            "slot":               slot,
            "err":                err,
            "memo":               None,
            "blockTime":          BLOCK_TIME_0 + slot,
            "confirmationStatus": "finalized",
        })
        if not failed:
            self.transactions[sig] = {
                "slot":      slot,
                "blockTime": BLOCK_TIME_0 + slot,
                "meta": {
                    "err": None,
                    "fee": 5000,
                    "innerInstructions": [
                        {"index": index, "instructions": ixs} for index, ixs in sorted((inner or {}).items())
                    ],
                },
                "transaction": {
                    "signatures": [sig],
                    "message":    {"instructions": instructions},
                },
                "version": 0,
            }
        return sig

    def newest_first(self) -> list:
        return list(reversed(self.signatures))


def token_account(address: str, mint: str, owner: str, amount: int, delegate: str = None,
                  delegated: int = 0) -> dict:
    info = {
        "isNative":    False,
        "mint":        mint,
        "owner":       owner,
        "state":       "initialized",
        "tokenAmount": token_amount(amount),
    }
    if delegate:
        info["delegate"] = delegate
        info["delegatedAmount"] = token_amount(delegated)
    return {
        "pubkey": address,
        "account": {
            "data": {"parsed": {"info": info, "type": "account"}, "program": "spl-token", "space": 165},
            "executable": False,
            "lamports":   2039280,
            "owner":      TOKEN_PROGRAM_ID,
            "rentEpoch":  0,
        },
    }


# ─────────────────────────────────────────────────────────────────────────────
# CASES
# ─────────────────────────────────────────────────────────────────────────────

def case_fraud() -> History:
    # Scammer opens the account, approves itself, hands it to the victim,
    # waits for a deposit and pulls it out as delegate.
    h = History(FRAUD_ACCOUNT)
    h.tx("open", 1000, [
        token_ix("initializeAccount", account=FRAUD_ACCOUNT, mint=MINT, owner=SCAMMER,
                 rentSysvar="SysvarRent111111111111111111111111111111111"),
    ])
    h.tx("approve", 1000, [
        token_ix("approveChecked", source=FRAUD_ACCOUNT, mint=MINT, delegate=SCAMMER, owner=SCAMMER,
                 tokenAmount=token_amount(9_999_999_000_000)),
    ])
    h.tx("handover", 1001, [
        token_ix("setAuthority", account=FRAUD_ACCOUNT, authorityType="accountOwner",
                 newAuthority=VICTIM, authority=SCAMMER),
    ])
    h.tx("deposit", 1500, [
        token_ix("transferChecked", source=VICTIM_MAIN, destination=FRAUD_ACCOUNT, mint=MINT,
                 authority=VICTIM, tokenAmount=token_amount(250_000_000)),
    ])
    h.tx("drain_failed", 1600, [], failed=True)
    # the drain goes through an AMM program: the transfer is a CPI
    h.tx("drain", 1601, [amm_swap()], inner={0: [
        token_ix("transfer", source=FRAUD_ACCOUNT, destination=SCAMMER_TOKENS,
                 authority=SCAMMER, amount="250000000"),
    ]})
    return h


def case_warning() -> History:
    h = History(WARNING_ACCOUNT)
    h.tx("open", 2000, [
        token_ix("initializeAccount", account=WARNING_ACCOUNT, mint=MINT, owner=PREV_OWNER,
                 rentSysvar="SysvarRent111111111111111111111111111111111"),
    ])
    h.tx("approve", 2050, [
        token_ix("approve", source=WARNING_ACCOUNT, delegate=PREV_DELEGATE, owner=PREV_OWNER,
                 amount="1000000000"),
    ])
    h.tx("handover", 2100, [
        token_ix("setAuthority", account=WARNING_ACCOUNT, authorityType="accountOwner",
                 newAuthority=VICTIM, authority=PREV_OWNER),
    ])
    h.tx("fund_rent", 2150, [system_transfer(VICTIM, PREV_OWNER, 5000)])
    h.tx("own_spend", 2200, [
        token_ix("transfer", source=WARNING_ACCOUNT, destination=VICTIM_MAIN,
                 authority=VICTIM, amount="10"),
    ])
    return h


def case_safe() -> History:
    h = History(SAFE_ACCOUNT)
    h.tx("open", 3000, [
        token_ix("initializeAccount", account=SAFE_ACCOUNT, mint=MINT, owner=PREV_OWNER,
                 rentSysvar="SysvarRent111111111111111111111111111111111"),
    ])
    h.tx("handover", 3100, [
        token_ix("setAuthority", account=SAFE_ACCOUNT, authorityType="accountOwner",
                 newAuthority=VICTIM, authority=PREV_OWNER),
    ])
    h.tx("own_approve", 3200, [
        token_ix("approve", source=SAFE_ACCOUNT, delegate=AMM_PROGRAM, owner=VICTIM, amount="5"),
    ])
    h.tx("own_revoke", 3300, [
        token_ix("revoke", source=SAFE_ACCOUNT, owner=VICTIM),
    ])
    return h


def case_clean() -> History:
    h = History(CLEAN_ACCOUNT)
    h.tx("open", 4000, [
        system_transfer(VICTIM, CLEAN_ACCOUNT, 2039280),
        token_ix("initializeAccount", account=CLEAN_ACCOUNT, mint=MINT, owner=VICTIM,
                 rentSysvar="SysvarRent111111111111111111111111111111111"),
    ])
    h.tx("mint", 4001, [
        token_ix("mintTo", mint=MINT, account=CLEAN_ACCOUNT, mintAuthority=PREV_OWNER, amount="700"),
    ])
    h.tx("spend", 4002, [
        token_ix("burn", account=CLEAN_ACCOUNT, mint=MINT, authority=VICTIM, amount="100"),
    ])
    return h


def build_cases() -> dict:
    histories = [case_fraud(), case_warning(), case_safe(), case_clean()]
    fixture = {
        "token_accounts": {
            VICTIM: [
                token_account(FRAUD_ACCOUNT, MINT, VICTIM, 0, delegate=SCAMMER, delegated=9_999_749_000_000),
                token_account(WARNING_ACCOUNT, MINT, VICTIM, 0, delegate=PREV_DELEGATE, delegated=1_000_000_000),
                token_account(SAFE_ACCOUNT, MINT, VICTIM, 0),
                token_account(CLEAN_ACCOUNT, MINT, VICTIM, 600),
                token_account(OTHER_ACCOUNT, OTHER_MINT, VICTIM, 42),
            ],
        },
        "signatures":   {},
        "transactions": {},
        "balances":     {VICTIM: 50_000_000},
        "fee":          5000,
        "rent":         2039280,
    }
    for h in histories:
        fixture["signatures"][h.address] = h.newest_first()
        fixture["transactions"].update(h.transactions)
    return fixture


def main(output_path: str = "data/replay_cases.json") -> dict:
    fixture = build_cases()
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(fixture, f, indent=2)

    n_sigs = sum(len(s) for s in fixture["signatures"].values())
    print(f"\n{'='*60}")
    print(f"  ✅ Replay fixture saved → {output_path}")
    print(f"  Owner        : {VICTIM}")
    print(f"  Mint         : {MINT}")
    print(f"  Token accts  : {len(fixture['token_accounts'][VICTIM])}")
    print(f"  Signatures   : {n_sigs}")
    print(f"  Expected     : Danger {FRAUD_ACCOUNT[:8]}…  Warning {WARNING_ACCOUNT[:8]}…"
          f"  Safe {SAFE_ACCOUNT[:8]}…")
    print(f"{'='*60}\n")
    return fixture


if __name__ == "__main__":
    main()
