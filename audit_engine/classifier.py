"""
Instruction classifier
======================
Decides, for one decoded token-program instruction, whether it is a threat
signal for the audited token account.

  transfer / transferChecked   outbound, not signed by the owner  → DelegateTransfer
  burn / burnChecked           on the audited account             → DelegateBurn
  approve / approveChecked     on the audited account, not owner  → DelegateChange
  setAuthority (accountOwner)  on the audited account, not owner  → OwnerChange
  setAuthority (other types)                                      → unrecognized
  initializeAccount, closeAccount, mintTo(Checked), revoke        → ignored
  anything else                                                   → unrecognized

"Owner" is the owner recognised at discovery time and never changes during
a scan: a reassignment is exactly what is being looked for.
"""

from audit_engine.errors import DecodeFailure
from audit_engine.events import DelegateBurn, DelegateChange, DelegateTransfer, OwnerChange
from audit_engine.instructions import (
    ACCOUNT_OWNER,
    ApproveIx,
    BurnIx,
    IgnorableIx,
    SetAuthorityIx,
    TransferIx,
    UnknownIx,
)

IGNORED      = "ignored"
CONSUMED     = "consumed"
UNRECOGNIZED = "unrecognized"


class ClassifiedOutcome:
    __slots__ = ("status", "event", "kind")

    def __init__(self, status: str, event=None, kind: str = ""):
        self.status = status
        self.event  = event
        self.kind   = kind

    @property
    def understood(self) -> bool:
        return self.status != UNRECOGNIZED

    def __repr__(self):
        return f"ClassifiedOutcome({self.status}, {self.kind}, {self.event!r})"


def _ignored(kind):
    return ClassifiedOutcome(IGNORED, kind=kind)


def _consumed(kind, event):
    return ClassifiedOutcome(CONSUMED, event=event, kind=kind)


def _unrecognized(kind):
    return ClassifiedOutcome(UNRECOGNIZED, kind=kind)


def _check_mint(ix, mint):
    if mint and ix.mint and ix.mint != mint:
        raise DecodeFailure(f"{ix.kind} on the audited account names mint {ix.mint}, expected {mint}")


def classify(
    current_owner: str,
    audited_address: str,
    mint: str,
    slot: int,
    tx_id: str,
    instruction,
    record_owner_burns: bool = True,
    extra_ignored_kinds=(),
) -> ClassifiedOutcome:
    """Classify one decoded instruction. Pure: recording is the caller's job."""
    kind = getattr(instruction, "kind", None)

    if isinstance(instruction, TransferIx):
        if instruction.source != audited_address and instruction.destination != audited_address:
            # unrelated accounts can share the transaction
            return _ignored(kind)
        if instruction.source != audited_address:
            # inbound
            return _ignored(kind)
        if instruction.authority == current_owner:
            return _ignored(kind)
        _check_mint(instruction, mint)
        return _consumed(kind, DelegateTransfer(
            slot=slot,
            transaction_id=tx_id,
            signer=instruction.authority,
            amount=instruction.amount,
            original_instruction=instruction.original,
        ))

    if isinstance(instruction, BurnIx):
        if instruction.account != audited_address:
            return _ignored(kind)
        if not record_owner_burns and instruction.authority == current_owner:
            return _ignored(kind)
        _check_mint(instruction, mint)
        return _consumed(kind, DelegateBurn(
            slot=slot,
            transaction_id=tx_id,
            signer=instruction.authority,
            amount=instruction.amount,
            original_instruction=instruction.original,
        ))

    if isinstance(instruction, ApproveIx):
        if instruction.source != audited_address:
            return _ignored(kind)
        if instruction.owner == current_owner:
            return _ignored(kind)
        _check_mint(instruction, mint)
        return _consumed(kind, DelegateChange(
            slot=slot,
            transaction_id=tx_id,
            signer=instruction.owner,
            new_delegate=instruction.delegate,
            original_instruction=instruction.original,
        ))

    if isinstance(instruction, SetAuthorityIx):
        if instruction.authority_type != ACCOUNT_OWNER:
            qualified = f"{kind}:{instruction.authority_type}"
            if qualified in extra_ignored_kinds:
                return _ignored(qualified)
            return _unrecognized(qualified)
        if instruction.account != audited_address:
            return _ignored(kind)
        if instruction.authority == current_owner:
            return _ignored(kind)
        return _consumed(kind, OwnerChange(
            slot=slot,
            transaction_id=tx_id,
            signer=instruction.authority,
            new_owner=instruction.new_authority,
            original_instruction=instruction.original,
        ))

    if isinstance(instruction, IgnorableIx):
        return _ignored(kind)

    if isinstance(instruction, UnknownIx):
        if kind in extra_ignored_kinds:
            return _ignored(kind)
        return _unrecognized(kind)

    raise TypeError(f"not a decoded token instruction: {instruction!r}")
