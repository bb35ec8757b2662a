"""
Correlation / risk engine
=========================
For every owner reassignment at slot S of a token account:

  1. stale delegations  = delegate changes with slot <= S
  2. exploitation       = transfers/burns with slot >= S signed by a stale delegate
  3. classification
       no stale delegation                   → SAFE
       stale delegation, no exploitation     → WARNING (revoke now)
       stale delegation and exploitation     → DANGER  (possible fraud)

Both comparisons are inclusive. The ledger does not order transactions
within a slot, so "same slot" has to count as both before and after; the
engine over-flags rather than misses.

An account that was never reassigned produces no findings at all: any
delegate it exposes was granted by the owner who still controls it.
"""

import logging
from dataclasses import dataclass, field

from audit_engine.events import TokenAccountEntry, event_sort_key

log = logging.getLogger(__name__)

SAFE    = "Safe (reassignment only)"
WARNING = "Warning: revoke delegation immediately"
DANGER  = "Danger: possible fraud"

SEVERITY = {SAFE: 0, WARNING: 1, DANGER: 2}

STATUS_SAFE    = "safe"
STATUS_REVOKE  = "needs immediate delegation revocation"
STATUS_FRAUD   = "possible fraud in progress"


@dataclass
class RiskFinding:
    account: str
    owner_change: object
    level: str
    stale_delegates: list = field(default_factory=list)
    implicated: list = field(default_factory=list)      # DelegateTransfer / DelegateBurn events

    @property
    def implicated_signatures(self) -> list:
        seen, out = set(), []
        for event in self.implicated:
            if event.transaction_id not in seen:
                seen.add(event.transaction_id)
                out.append(event.transaction_id)
        return out

    def to_dict(self) -> dict:
        return {
            "account":               self.account,
            "owner_change_slot":     self.owner_change.slot,
            "owner_change_signature": self.owner_change.transaction_id,
            "owner_change_signer":   self.owner_change.signer,
            "new_owner":             self.owner_change.new_owner,
            "risk_level":            self.level,
            "stale_delegates":       list(self.stale_delegates),
            "implicated_signatures": self.implicated_signatures,
        }


def assess_owner_change(entry: TokenAccountEntry, owner_change) -> RiskFinding:
    slot = owner_change.slot
    stale_delegates = sorted({
        dc.new_delegate for dc in entry.delegate_changes if dc.slot <= slot
    })
    if not stale_delegates:
        return RiskFinding(entry.address, owner_change, SAFE)

    stale = set(stale_delegates)
    implicated = sorted(
        (ev for ev in entry.possible_delegate_transfers + entry.possible_delegate_burns
         if ev.slot >= slot and ev.signer in stale),
        key=event_sort_key,
    )
    level = DANGER if implicated else WARNING
    return RiskFinding(entry.address, owner_change, level, stale_delegates, implicated)


def assess(entry: TokenAccountEntry) -> list:
    """One finding per owner change, in slot order."""
    findings = [
        assess_owner_change(entry, oc)
        for oc in sorted(entry.owner_changes, key=event_sort_key)
    ]
    for f in findings:
        if f.level != SAFE:
            log.info("[RISK] %s reassigned at slot %d: %s (%d implicated tx)",
                     entry.address, f.owner_change.slot, f.level, len(f.implicated_signatures))
    return findings


def account_status(findings: list) -> str:
    worst = max((SEVERITY[f.level] for f in findings), default=0)
    if worst == SEVERITY[DANGER]:
        return STATUS_FRAUD
    if worst == SEVERITY[WARNING]:
        return STATUS_REVOKE
    return STATUS_SAFE


def assess_report(report) -> dict:
    """token-account address → findings, for every entry of an AuditReport."""
    return {entry.address: assess(entry) for entry in report.entries()}


def dedupe_findings(findings: list) -> list:
    """
    (finding, first_seen_signatures, duplicate_count) per finding.

    An account reassigned more than once with the same stale delegate still
    around reports the same exploit under every reassignment. Each signature
    is kept only under the earliest reassignment that implicates it; later
    findings keep their level and count how many they gave up.
    """
    out = []
    reported = {}
    for f in sorted(findings, key=lambda f: (f.account, event_sort_key(f.owner_change))):
        seen = reported.setdefault(f.account, set())
        fresh = [s for s in f.implicated_signatures if s not in seen]
        seen.update(fresh)
        out.append((f, fresh, len(f.implicated_signatures) - len(fresh)))
    return out
