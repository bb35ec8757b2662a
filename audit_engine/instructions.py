"""
Token-program instruction decoding
==================================
`getTransaction(..., encoding="jsonParsed")` hands back loosely-typed JSON.
This module turns each token-program instruction into one of a closed set
of variants and refuses anything that claims a known kind but lacks the
fields that kind always carries.

  TransferIx      transfer / transferChecked
  BurnIx          burn / burnChecked
  ApproveIx       approve / approveChecked
  SetAuthorityIx  setAuthority (any authority type)
  IgnorableIx     initializeAccount / closeAccount / mintTo / mintToChecked / revoke
  UnknownIx       everything else

The classifier only ever sees these variants.
"""

import json
from dataclasses import dataclass

from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID as _TOKEN_PROGRAM_PUBKEY

from audit_engine.errors import DecodeFailure

TOKEN_PROGRAM_ID = str(_TOKEN_PROGRAM_PUBKEY)

TRANSFER_KINDS  = {"transfer", "transferChecked"}
BURN_KINDS      = {"burn", "burnChecked"}
APPROVE_KINDS   = {"approve", "approveChecked"}
IGNORABLE_KINDS = {"initializeAccount", "closeAccount", "mintTo", "mintToChecked", "revoke"}

ACCOUNT_OWNER = "accountOwner"

# kinds the detection rules depend on; never operator-ignorable
PROTECTED_KINDS = TRANSFER_KINDS | BURN_KINDS | APPROVE_KINDS | {"setAuthority", f"setAuthority:{ACCOUNT_OWNER}"}


@dataclass(frozen=True)
class TransferIx:
    kind: str
    source: str
    destination: str
    authority: str
    amount: str
    mint: str = None
    original: str = ""


@dataclass(frozen=True)
class BurnIx:
    kind: str
    account: str
    authority: str
    amount: str
    mint: str = None
    original: str = ""


@dataclass(frozen=True)
class ApproveIx:
    kind: str
    source: str
    delegate: str
    owner: str
    amount: str
    mint: str = None
    original: str = ""


@dataclass(frozen=True)
class SetAuthorityIx:
    kind: str
    authority_type: str
    account: str = None
    new_authority: str = None
    authority: str = None
    original: str = ""


@dataclass(frozen=True)
class IgnorableIx:
    kind: str
    original: str = ""


@dataclass(frozen=True)
class UnknownIx:
    kind: str
    original: str = ""


# ─────────────────────────────────────────────
# FIELD ACCESS
# ─────────────────────────────────────────────
def _address(info: dict, *names: str, kind: str) -> str:
    """First present field among `names`, validated as a base58 pubkey."""
    for name in names:
        if name in info:
            value = info[name]
            try:
                return str(Pubkey.from_string(value))
            except (TypeError, ValueError) as e:
                raise DecodeFailure(f"{kind}: field '{name}' is not an address: {value!r}") from e
    raise DecodeFailure(f"{kind}: missing field {' / '.join(repr(n) for n in names)}")


def _optional_address(info: dict, name: str, kind: str):
    if info.get(name) is None:
        return None
    return _address(info, name, kind=kind)


def _amount(info: dict, kind: str) -> str:
    token_amount = info.get("tokenAmount")
    if token_amount is not None:
        if not isinstance(token_amount, dict) or "uiAmountString" not in token_amount:
            raise DecodeFailure(f"{kind}: malformed tokenAmount {token_amount!r}")
        return str(token_amount["uiAmountString"])
    if "amount" not in info:
        raise DecodeFailure(f"{kind}: missing field 'amount' / 'tokenAmount'")
    return str(info["amount"])


def canonical_text(parsed: dict) -> str:
    return json.dumps(parsed, sort_keys=True, separators=(",", ":"))


# ─────────────────────────────────────────────
# DECODE
# ─────────────────────────────────────────────
def is_token_instruction(ix: dict) -> bool:
    return ix.get("programId") == TOKEN_PROGRAM_ID


def decode_instruction(ix: dict):
    """Decode one token-program instruction from a jsonParsed transaction."""
    parsed = ix.get("parsed")
    if not isinstance(parsed, dict):
        raise DecodeFailure(f"token instruction was not parsed by the node: {ix!r}")
    kind = parsed.get("type")
    if not isinstance(kind, str):
        raise DecodeFailure(f"token instruction without a type: {parsed!r}")
    original = canonical_text(parsed)

    if kind in IGNORABLE_KINDS:
        return IgnorableIx(kind=kind, original=original)
    if kind not in TRANSFER_KINDS | BURN_KINDS | APPROVE_KINDS | {"setAuthority"}:
        return UnknownIx(kind=kind, original=original)

    info = parsed.get("info")
    if not isinstance(info, dict):
        raise DecodeFailure(f"{kind}: missing 'info' object")

    if kind in TRANSFER_KINDS:
        return TransferIx(
            kind=kind,
            source=_address(info, "source", kind=kind),
            destination=_address(info, "destination", kind=kind),
            authority=_address(info, "authority", "multisigAuthority", kind=kind),
            amount=_amount(info, kind),
            mint=_optional_address(info, "mint", kind),
            original=original,
        )
    if kind in BURN_KINDS:
        return BurnIx(
            kind=kind,
            account=_address(info, "account", kind=kind),
            authority=_address(info, "authority", "multisigAuthority", kind=kind),
            amount=_amount(info, kind),
            mint=_optional_address(info, "mint", kind),
            original=original,
        )
    if kind in APPROVE_KINDS:
        return ApproveIx(
            kind=kind,
            source=_address(info, "source", kind=kind),
            delegate=_address(info, "delegate", kind=kind),
            owner=_address(info, "owner", "multisigOwner", kind=kind),
            amount=_amount(info, kind),
            mint=_optional_address(info, "mint", kind),
            original=original,
        )

    # setAuthority
    authority_type = info.get("authorityType")
    if not isinstance(authority_type, str):
        raise DecodeFailure("setAuthority: missing field 'authorityType'")
    if authority_type != ACCOUNT_OWNER:
        return SetAuthorityIx(kind=kind, authority_type=authority_type, original=original)
    return SetAuthorityIx(
        kind=kind,
        authority_type=authority_type,
        account=_address(info, "account", kind=kind),
        new_authority=_address(info, "newAuthority", kind=kind),
        authority=_address(info, "authority", "multisigAuthority", kind=kind),
        original=original,
    )


# ─────────────────────────────────────────────
# FLATTEN
# ─────────────────────────────────────────────
def flatten_instructions(tx_result: dict) -> list:
    """
    Top-level and inner (CPI) instructions in execution order: each
    top-level instruction is followed by the inner instructions it produced.
    """
    try:
        top_level = tx_result["transaction"]["message"]["instructions"]
    except (KeyError, TypeError) as e:
        raise DecodeFailure(f"transaction without a parsed message: {e}") from e

    meta = tx_result.get("meta") or {}
    inner_by_index = {}
    for group in meta.get("innerInstructions") or ():
        inner_by_index.setdefault(group["index"], []).extend(group.get("instructions", ()))

    flat = []
    for index, ix in enumerate(top_level):
        flat.append(ix)
        flat.extend(inner_by_index.pop(index, ()))
    # inner groups pointing past the message are kept rather than dropped
    for index in sorted(inner_by_index):
        flat.extend(inner_by_index[index])
    return flat
