"""
Event model
===========
The four security-relevant event kinds plus the per-account aggregate.

Addresses and signatures are kept as base58 strings: every address that
reaches an event has already been validated by the instruction decoder.
Amounts stay strings so nothing is lost to float rounding.

Slots order events across transactions only. Two events in the same slot
have no reliable relative order, which is why the aggregate keeps every
delegate it ever saw instead of a single "current delegate".
"""

from dataclasses import asdict, dataclass, field


@dataclass
class DelegateTransfer:
    slot: int
    transaction_id: str
    signer: str
    amount: str
    original_instruction: str = ""

    kind = "delegate_transfer"


@dataclass
class DelegateBurn:
    slot: int
    transaction_id: str
    signer: str
    amount: str
    original_instruction: str = ""

    kind = "delegate_burn"


@dataclass
class OwnerChange:
    slot: int
    transaction_id: str
    signer: str
    new_owner: str
    original_instruction: str = ""

    kind = "owner_change"


@dataclass
class DelegateChange:
    slot: int
    transaction_id: str
    signer: str
    new_delegate: str
    original_instruction: str = ""

    kind = "delegate_change"


EVENT_TYPES = {
    cls.kind: cls for cls in (OwnerChange, DelegateChange, DelegateTransfer, DelegateBurn)
}


def event_sort_key(event) -> tuple:
    return (event.slot, event.transaction_id)


@dataclass
class TokenAccountEntry:
    """Everything learned about one token account during one audit run."""

    address: str
    recognized_owner: str
    mint: str
    current_delegate: str = None
    all_delegate_addresses: set = field(default_factory=set)

    total_tx_count: int = 0
    scanned_tx_count: int = 0
    scanned_instruction_count: int = 0
    failed_tx_count: int = 0
    skipped_tx_count: int = 0
    unrecognized_instruction_count: int = 0

    possible_delegate_transfers: list = field(default_factory=list)
    possible_delegate_burns: list = field(default_factory=list)
    owner_changes: list = field(default_factory=list)
    delegate_changes: list = field(default_factory=list)

    def record(self, event) -> None:
        """Append an event to its list; approvals also feed the delegate set."""
        if isinstance(event, DelegateTransfer):
            self.possible_delegate_transfers.append(event)
        elif isinstance(event, DelegateBurn):
            self.possible_delegate_burns.append(event)
        elif isinstance(event, OwnerChange):
            self.owner_changes.append(event)
        elif isinstance(event, DelegateChange):
            self.all_delegate_addresses.add(event.new_delegate)
            self.delegate_changes.append(event)
        else:
            raise TypeError(f"not an audit event: {event!r}")

    def events(self) -> list:
        """All events as (kind, event) pairs in accumulation order."""
        return (
            [(e.kind, e) for e in self.owner_changes]
            + [(e.kind, e) for e in self.delegate_changes]
            + [(e.kind, e) for e in self.possible_delegate_transfers]
            + [(e.kind, e) for e in self.possible_delegate_burns]
        )

    def is_reconciled(self) -> bool:
        return (
            self.failed_tx_count + self.skipped_tx_count + self.scanned_tx_count
            == self.total_tx_count
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["all_delegate_addresses"] = sorted(self.all_delegate_addresses)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TokenAccountEntry":
        d = dict(d)
        d["all_delegate_addresses"] = set(d.get("all_delegate_addresses", ()))
        d["possible_delegate_transfers"] = [DelegateTransfer(**e) for e in d.get("possible_delegate_transfers", ())]
        d["possible_delegate_burns"]     = [DelegateBurn(**e) for e in d.get("possible_delegate_burns", ())]
        d["owner_changes"]               = [OwnerChange(**e) for e in d.get("owner_changes", ())]
        d["delegate_changes"]            = [DelegateChange(**e) for e in d.get("delegate_changes", ())]
        return cls(**d)


class AuditReport:
    """
    The audit run's output: token-account address → entry.

    Owned by the run orchestrator; each scan task fills in exactly one entry.
    """

    def __init__(self):
        self.entries_by_token_address = {}

    def __contains__(self, address) -> bool:
        return address in self.entries_by_token_address

    def __len__(self) -> int:
        return len(self.entries_by_token_address)

    def add(self, entry: TokenAccountEntry) -> None:
        if entry.address in self.entries_by_token_address:
            raise ValueError(f"token account {entry.address} already in report")
        self.entries_by_token_address[entry.address] = entry

    def get(self, address):
        return self.entries_by_token_address.get(address)

    def entries(self) -> list:
        """Entries sorted by token-account address."""
        return [self.entries_by_token_address[a] for a in sorted(self.entries_by_token_address)]

    def to_dict(self) -> dict:
        return {a: e.to_dict() for a, e in sorted(self.entries_by_token_address.items())}

    @classmethod
    def from_dict(cls, d: dict) -> "AuditReport":
        report = cls()
        for entry in d.values():
            report.add(TokenAccountEntry.from_dict(entry))
        return report
