"""Report outputs: CSV layouts, round-trip, determinism."""

import io
import json

import pytest

from audit_engine.config import build_config
from audit_engine.events import AuditReport
from audit_engine.report import (
    ACCOUNT_COLUMNS,
    DETAIL_COLUMNS,
    DETAIL_SECTIONS,
    SUMMARY_COLUMNS,
    accounts_frame,
    detail_frame,
    read_csv,
    read_detail_csv,
    save_outputs,
    split_cell,
    summary_frame,
)
from audit_engine.risk import DANGER, SAFE, STATUS_FRAUD, STATUS_REVOKE, STATUS_SAFE, WARNING, assess_report
from audit_engine.scanner import run_audit
from generate_cases import (
    FRAUD_ACCOUNT,
    MINT,
    SCAMMER,
    VICTIM,
    WARNING_ACCOUNT,
    build_cases,
    fake_sig,
)
from solana_fetcher import ReplayRpcClient

OUTPUT_FILES = ["summary.csv", "accounts.csv", "detail.csv", "report.json", "report.txt", "metrics.json"]


@pytest.fixture
def audited():
    report = run_audit(ReplayRpcClient(build_cases()), [VICTIM], [MINT])
    return report, assess_report(report)


def event_key(kind_event):
    kind, event = kind_event
    return (kind, event.slot, event.transaction_id)


def test_detail_csv_round_trip(audited):
    report, _ = audited
    buf = io.StringIO()
    detail_frame(report).to_csv(buf, index=False)
    buf.seek(0)
    rebuilt = read_detail_csv(buf)

    with_events = [e for e in report.entries() if e.events()]
    assert sorted(rebuilt.entries_by_token_address) == sorted(e.address for e in with_events)
    for entry in with_events:
        again = rebuilt.get(entry.address)
        assert again.recognized_owner == entry.recognized_owner
        assert again.mint == entry.mint
        assert sorted(again.events(), key=event_key) == sorted(entry.events(), key=event_key)
        assert again.all_delegate_addresses == entry.all_delegate_addresses


def test_detail_sections_in_order(audited):
    report, _ = audited
    sections = list(detail_frame(report)["section"])
    assert sections == sorted(sections, key=DETAIL_SECTIONS.index)


def test_read_detail_csv_rejects_other_layouts():
    with pytest.raises(ValueError, match="missing columns"):
        read_detail_csv(io.StringIO("account,slot\nx,1\n"))


def test_summary_rows(audited):
    report, findings = audited
    df = summary_frame(report, findings)
    assert list(df.columns) == SUMMARY_COLUMNS
    levels = dict(zip(df["account"], df["risk_level"]))
    assert levels[FRAUD_ACCOUNT] == DANGER
    assert levels[WARNING_ACCOUNT] == WARNING
    assert sorted(levels.values()) == sorted([DANGER, WARNING, SAFE])

    fraud = df[df["account"] == FRAUD_ACCOUNT].iloc[0]
    assert split_cell(fraud["stale_delegates"]) == [SCAMMER]
    assert split_cell(fraud["implicated_signatures"]) == [fake_sig(f"{FRAUD_ACCOUNT}:drain")]
    assert fraud["owner_change_signature"] == fake_sig(f"{FRAUD_ACCOUNT}:handover")


def test_accounts_frame_status(audited):
    report, findings = audited
    df = accounts_frame(report, findings)
    assert list(df.columns) == ACCOUNT_COLUMNS
    assert sorted(df["status"]) == sorted([STATUS_FRAUD, STATUS_REVOKE, STATUS_SAFE, STATUS_SAFE])
    fraud = df[df["account"] == FRAUD_ACCOUNT].iloc[0]
    assert fraud["current_delegate"] == SCAMMER
    assert fraud["failed_tx_count"] == 1


def test_save_outputs_writes_every_file(audited, tmp_path):
    report, findings = audited
    text, metrics = save_outputs(report, findings, build_config(output_dir=str(tmp_path)))

    for name in OUTPUT_FILES:
        assert (tmp_path / name).exists(), name
    assert "Danger: possible fraud" in text
    assert "CAVEAT" in text
    assert metrics["accounts"] == 4
    assert metrics["status"] == {STATUS_FRAUD: 1, STATUS_REVOKE: 1, STATUS_SAFE: 2}
    assert metrics["skipped_tx"] >= 1
    assert metrics["failed_tx"] + metrics["skipped_tx"] + metrics["scanned_tx"] == metrics["total_tx"]

    detail = read_csv(tmp_path / "detail.csv")
    assert list(detail.columns) == DETAIL_COLUMNS

    full = json.loads((tmp_path / "report.json").read_text())
    assert AuditReport.from_dict(full["entries_by_token_address"]).to_dict() == report.to_dict()
    assert full["findings"][FRAUD_ACCOUNT][0]["risk_level"] == DANGER


def test_csv_outputs_are_deterministic(tmp_path):
    for run in ("a", "b"):
        report = run_audit(ReplayRpcClient(build_cases()), [VICTIM], [MINT])
        save_outputs(report, assess_report(report), build_config(output_dir=str(tmp_path / run)))
    for name in ("summary.csv", "accounts.csv", "detail.csv", "report.json"):
        assert (tmp_path / "a" / name).read_bytes() == (tmp_path / "b" / name).read_bytes(), name


def test_empty_report_still_renders(tmp_path):
    text, metrics = save_outputs(AuditReport(), {}, build_config(output_dir=str(tmp_path)))
    assert metrics["accounts"] == 0
    assert "No token account was reassigned" in text
    assert read_csv(tmp_path / "summary.csv").empty
