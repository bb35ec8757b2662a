"""
Report renderer
===============
Serialises an AuditReport and its risk findings.

  summary.csv   one row per (token account, owner change)
  accounts.csv  one row per token account, with its status and counters
  detail.csv    every recorded event, four sections
  report.json   full aggregate + per-reassignment findings (no de-duplication)
  report.txt    human-readable report
  metrics.json  run counters

The CSV column sets are consumed by downstream tooling: change them only
together with their readers. Rows are sorted by account, then slot, then
signature, so identical on-chain state always renders identical files.
Multi-valued cells are ';'-joined.
"""

import json
import logging
import os
from datetime import datetime

import pandas as pd

from audit_engine.events import EVENT_TYPES, AuditReport, TokenAccountEntry
from audit_engine.risk import (
    DANGER,
    STATUS_FRAUD,
    STATUS_REVOKE,
    STATUS_SAFE,
    WARNING,
    account_status,
    dedupe_findings,
)

log = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    "account", "owner", "mint",
    "owner_change_slot", "owner_change_signature", "owner_change_signer", "new_owner",
    "risk_level", "stale_delegates", "implicated_signatures", "duplicate_implicated_count",
]

ACCOUNT_COLUMNS = [
    "account", "owner", "mint", "status", "current_delegate", "all_delegate_addresses",
    "total_tx_count", "scanned_tx_count", "scanned_instruction_count", "failed_tx_count",
    "skipped_tx_count", "unrecognized_instruction_count",
    "owner_change_count", "delegate_change_count", "delegate_transfer_count", "delegate_burn_count",
]

DETAIL_COLUMNS = [
    "section", "account", "owner", "mint", "slot", "signature", "signer",
    "new_authority", "amount", "original_instruction",
]

DETAIL_SECTIONS = ["owner_change", "delegate_change", "delegate_transfer", "delegate_burn"]

SLOT_ORDER_CAVEAT = (
    "Transactions inside one slot have no guaranteed order. A delegation and a "
    "reassignment in the same slot are treated as delegation-first, and a "
    "transfer in the reassignment's slot as happening after it, so same-slot "
    "findings may be false positives."
)


def join_cell(values) -> str:
    return ";".join(values)


def split_cell(cell: str) -> list:
    return [v for v in cell.split(";") if v] if cell else []


# ─────────────────────────────────────────────
# FRAMES
# ─────────────────────────────────────────────
def summary_frame(report: AuditReport, findings_by_account: dict) -> pd.DataFrame:
    all_findings = [f for findings in findings_by_account.values() for f in findings]
    rows = []
    for finding, fresh, duplicates in dedupe_findings(all_findings):
        entry = report.get(finding.account)
        oc = finding.owner_change
        rows.append({
            "account":                    entry.address,
            "owner":                      entry.recognized_owner,
            "mint":                       entry.mint,
            "owner_change_slot":          oc.slot,
            "owner_change_signature":     oc.transaction_id,
            "owner_change_signer":        oc.signer,
            "new_owner":                  oc.new_owner,
            "risk_level":                 finding.level,
            "stale_delegates":            join_cell(finding.stale_delegates),
            "implicated_signatures":      join_cell(fresh),
            "duplicate_implicated_count": duplicates,
        })
    df = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
    return df.sort_values(["account", "owner_change_slot", "owner_change_signature"]).reset_index(drop=True)


def accounts_frame(report: AuditReport, findings_by_account: dict) -> pd.DataFrame:
    rows = []
    for entry in report.entries():
        rows.append({
            "account":                        entry.address,
            "owner":                          entry.recognized_owner,
            "mint":                           entry.mint,
            "status":                         account_status(findings_by_account.get(entry.address, [])),
            "current_delegate":               entry.current_delegate or "",
            "all_delegate_addresses":         join_cell(sorted(entry.all_delegate_addresses)),
            "total_tx_count":                 entry.total_tx_count,
            "scanned_tx_count":               entry.scanned_tx_count,
            "scanned_instruction_count":      entry.scanned_instruction_count,
            "failed_tx_count":                entry.failed_tx_count,
            "skipped_tx_count":               entry.skipped_tx_count,
            "unrecognized_instruction_count": entry.unrecognized_instruction_count,
            "owner_change_count":             len(entry.owner_changes),
            "delegate_change_count":          len(entry.delegate_changes),
            "delegate_transfer_count":        len(entry.possible_delegate_transfers),
            "delegate_burn_count":            len(entry.possible_delegate_burns),
        })
    return pd.DataFrame(rows, columns=ACCOUNT_COLUMNS)


def detail_frame(report: AuditReport) -> pd.DataFrame:
    rows = []
    for entry in report.entries():
        for section, event in entry.events():
            rows.append({
                "section":              section,
                "account":              entry.address,
                "owner":                entry.recognized_owner,
                "mint":                 entry.mint,
                "slot":                 event.slot,
                "signature":            event.transaction_id,
                "signer":               event.signer,
                "new_authority":        getattr(event, "new_owner", None) or getattr(event, "new_delegate", ""),
                "amount":               getattr(event, "amount", ""),
                "original_instruction": event.original_instruction,
            })
    df = pd.DataFrame(rows, columns=DETAIL_COLUMNS)
    df["_section_order"] = df["section"].map(DETAIL_SECTIONS.index)
    df = df.sort_values(["_section_order", "account", "slot", "signature"])
    return df.drop(columns="_section_order").reset_index(drop=True)


# ─────────────────────────────────────────────
# READERS
# ─────────────────────────────────────────────
def read_csv(path_or_buffer) -> pd.DataFrame:
    """Every cell as the exact string written (no NaN, no numeric coercion)."""
    return pd.read_csv(path_or_buffer, dtype=str, keep_default_na=False)


def read_detail_csv(path_or_buffer) -> AuditReport:
    """Rebuild the event lists of an AuditReport from detail.csv."""
    df = read_csv(path_or_buffer)
    missing = set(DETAIL_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"[ERROR] detail CSV missing columns: {sorted(missing)}")

    report = AuditReport()
    for _, row in df.iterrows():
        entry = report.get(row["account"])
        if entry is None:
            entry = TokenAccountEntry(address=row["account"], recognized_owner=row["owner"], mint=row["mint"])
            report.add(entry)
        cls = EVENT_TYPES[row["section"]]
        common = {
            "slot":                 int(row["slot"]),
            "transaction_id":       row["signature"],
            "signer":               row["signer"],
            "original_instruction": row["original_instruction"],
        }
        if row["section"] == "owner_change":
            event = cls(new_owner=row["new_authority"], **common)
        elif row["section"] == "delegate_change":
            event = cls(new_delegate=row["new_authority"], **common)
        else:
            event = cls(amount=row["amount"], **common)
        entry.record(event)
    return report


# ─────────────────────────────────────────────
# TEXT REPORT
# ─────────────────────────────────────────────
def format_text_report(report: AuditReport, findings_by_account: dict) -> str:
    accounts = accounts_frame(report, findings_by_account)
    summary  = summary_frame(report, findings_by_account)
    counts   = accounts["status"].value_counts().to_dict() if len(accounts) else {}

    lines = []
    lines.append("=" * 72)
    lines.append("  TOKEN DELEGATION AUDIT — STALE DELEGATE REPORT")
    lines.append(f"  Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append(f"  Token accounts audited: {len(report)}")
    lines.append("=" * 72)

    lines.append(f"\n  🔴 {STATUS_FRAUD:<40} {counts.get(STATUS_FRAUD, 0):>5}")
    lines.append(f"  🟠 {STATUS_REVOKE:<40} {counts.get(STATUS_REVOKE, 0):>5}")
    lines.append(f"  🟢 {STATUS_SAFE:<40} {counts.get(STATUS_SAFE, 0):>5}")

    lines.append("\n  OWNER REASSIGNMENTS")
    lines.append("  " + "-" * 68)
    if summary.empty:
        lines.append("  No token account was reassigned by anyone but its recognized owner.")
    for _, row in summary.iterrows():
        emoji = {DANGER: "🔴", WARNING: "🟠"}.get(row["risk_level"], "🟢")
        lines.append(f"\n  {emoji} {row['risk_level']}")
        lines.append(f"  Account   : {row['account']}  (mint {row['mint']})")
        lines.append(f"  Owner     : {row['owner']}")
        lines.append(f"  Reassigned: slot {row['owner_change_slot']} by {row['owner_change_signer']}"
                     f" → {row['new_owner']}")
        lines.append(f"  Tx        : {row['owner_change_signature']}")
        for delegate in split_cell(row["stale_delegates"]):
            lines.append(f"  Stale delegate : {delegate}")
        for sig in split_cell(row["implicated_signatures"]):
            lines.append(f"  Implicated tx  : {sig}")
        if row["duplicate_implicated_count"]:
            lines.append(f"  ({row['duplicate_implicated_count']} implicated tx already listed "
                         f"under an earlier reassignment)")

    lines.append("\n  CAVEAT")
    lines.append("  " + "-" * 68)
    words, line = SLOT_ORDER_CAVEAT.split(), "  "
    for w in words:
        if len(line) + len(w) + 1 > 70:
            lines.append(line)
            line = "  " + w
        else:
            line += (" " if line.strip() else "") + w
    lines.append(line)

    lines.append(f"\n{'=' * 72}")
    lines.append("  END OF REPORT")
    lines.append("=" * 72)
    return "\n".join(lines)


# ─────────────────────────────────────────────
# SAVE OUTPUTS
# ─────────────────────────────────────────────
def build_metrics(report: AuditReport, findings_by_account: dict) -> dict:
    entries  = report.entries()
    statuses = [account_status(findings_by_account.get(e.address, [])) for e in entries]
    findings = [f for fs in findings_by_account.values() for f in fs]
    return {
        "run_at":              datetime.now().isoformat(),
        "accounts":            len(entries),
        "total_tx":            sum(e.total_tx_count for e in entries),
        "scanned_tx":          sum(e.scanned_tx_count for e in entries),
        "skipped_tx":          sum(e.skipped_tx_count for e in entries),
        "failed_tx":           sum(e.failed_tx_count for e in entries),
        "scanned_instructions": sum(e.scanned_instruction_count for e in entries),
        "unrecognized_instructions": sum(e.unrecognized_instruction_count for e in entries),
        "owner_changes":       sum(len(e.owner_changes) for e in entries),
        "findings":            len(findings),
        "status": {
            STATUS_FRAUD:  statuses.count(STATUS_FRAUD),
            STATUS_REVOKE: statuses.count(STATUS_REVOKE),
            STATUS_SAFE:   statuses.count(STATUS_SAFE),
        },
    }


def save_outputs(report: AuditReport, findings_by_account: dict, cfg: dict):
    out = cfg["output_dir"]
    os.makedirs(out, exist_ok=True)

    summary_frame(report, findings_by_account).to_csv(os.path.join(out, "summary.csv"), index=False)
    accounts_frame(report, findings_by_account).to_csv(os.path.join(out, "accounts.csv"), index=False)
    detail_frame(report).to_csv(os.path.join(out, "detail.csv"), index=False)

    full = {
        "entries_by_token_address": report.to_dict(),
        "findings": {
            address: [f.to_dict() for f in findings]
            for address, findings in sorted(findings_by_account.items())
        },
    }
    with open(os.path.join(out, "report.json"), "w") as f:
        json.dump(full, f, indent=2)

    text = format_text_report(report, findings_by_account)
    with open(os.path.join(out, "report.txt"), "w", encoding="utf-8") as f:
        f.write(text)

    metrics = build_metrics(report, findings_by_account)
    with open(os.path.join(out, "metrics.json"), "w") as f:
        json.dump(metrics, f, indent=2)

    for name in ("summary.csv", "accounts.csv", "detail.csv", "report.json", "metrics.json"):
        log.info("[SAVE] %s", os.path.join(out, name))
    log.info("[SAVE] %s  ← READ THIS", os.path.join(out, "report.txt"))
    return text, metrics


def print_quick_metrics(metrics: dict, output_dir: str) -> None:
    status = metrics["status"]
    print("\n" + "=" * 60)
    print("  --- QUICK METRICS — DELEGATION AUDIT ---")
    print("=" * 60)
    print(f"  Accounts : {metrics['accounts']}  |  Tx : {metrics['total_tx']}  "
          f"|  Scanned : {metrics['scanned_tx']}  |  Failed : {metrics['failed_tx']}")
    print(f"  Owner changes : {metrics['owner_changes']}  |  Findings : {metrics['findings']}")
    print(f"\n  🔴 {STATUS_FRAUD:<40}: {status[STATUS_FRAUD]}")
    print(f"  🟠 {STATUS_REVOKE:<40}: {status[STATUS_REVOKE]}")
    print(f"  🟢 {STATUS_SAFE:<40}: {status[STATUS_SAFE]}")
    print("=" * 60)
    print(f"\n  ✅ Full report: {output_dir}/report.txt")
    print(f"  ✅ Summary:     {output_dir}/summary.csv\n")
