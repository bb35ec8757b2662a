"""History scan and audit orchestration, against replayed RPC answers."""

import pytest

from audit_engine.config import build_config
from audit_engine.errors import DecodeFailure, NetworkFailure, UnrecognizedInstruction
from audit_engine.scanner import run_audit, scan_account
from generate_cases import (
    CLEAN_ACCOUNT,
    FRAUD_ACCOUNT,
    MINT,
    SAFE_ACCOUNT,
    SCAMMER,
    VICTIM,
    WARNING_ACCOUNT,
    History,
    build_cases,
    fake_addr,
    system_transfer,
    token_account,
    token_ix,
)
from solana_fetcher import ReplayRpcClient

ACCOUNT = fake_addr("scan_account")


def single_account(history: History, owner: str = VICTIM) -> ReplayRpcClient:
    return ReplayRpcClient({
        "token_accounts": {owner: [token_account(history.address, MINT, owner, 0)]},
        "signatures":     {history.address: history.newest_first()},
        "transactions":   dict(history.transactions),
    })


def revokes(n: int) -> History:
    h = History(ACCOUNT)
    for i in range(n):
        h.tx(f"revoke{i}", 100 + i, [token_ix("revoke", source=ACCOUNT, owner=VICTIM)])
    return h


def method_calls(client, method):
    return [params for m, params in client.calls if m == method]


# ── pagination ───────────────────────────────────────────────────────────────

@pytest.mark.parametrize("pages", [1, 2, 3])
def test_exact_multiple_of_page_size_needs_one_extra_request(pages):
    client = single_account(revokes(pages * 2))
    entry = scan_account(client, ACCOUNT, VICTIM, MINT, build_config(signatures_page_limit=2))
    assert len(method_calls(client, "getSignaturesForAddress")) == pages + 1
    assert entry.total_tx_count == pages * 2


def test_short_last_page_ends_history():
    client = single_account(revokes(5))
    entry = scan_account(client, ACCOUNT, VICTIM, MINT, build_config(signatures_page_limit=2))
    requests = method_calls(client, "getSignaturesForAddress")
    assert len(requests) == 3
    assert "before" not in requests[0][1]
    assert entry.total_tx_count == 5
    assert entry.scanned_tx_count == 5


def test_pages_are_walked_with_before_cursor():
    h = revokes(4)
    client = single_account(h)
    scan_account(client, ACCOUNT, VICTIM, MINT, build_config(signatures_page_limit=2))
    cursors = [opts.get("before") for _, opts in method_calls(client, "getSignaturesForAddress")]
    newest_first = [s["signature"] for s in h.newest_first()]
    assert cursors == [None, newest_first[1], newest_first[3]]


# ── counters ─────────────────────────────────────────────────────────────────

def test_failed_signatures_are_counted_not_fetched():
    h = History(ACCOUNT)
    h.tx("ok", 10, [token_ix("revoke", source=ACCOUNT, owner=VICTIM)])
    h.tx("bad1", 11, [], failed=True)
    h.tx("bad2", 12, [], failed=True)
    client = single_account(h)
    entry = scan_account(client, ACCOUNT, VICTIM, MINT)
    assert (entry.total_tx_count, entry.failed_tx_count, entry.scanned_tx_count) == (3, 2, 1)
    assert len(method_calls(client, "getTransaction")) == 1


def test_body_error_counts_as_failed():
    h = History(ACCOUNT)
    sig = h.tx("reverted", 10, [token_ix("transfer", source=ACCOUNT, destination=fake_addr("d"),
                                          authority=SCAMMER, amount="1")])
    h.transactions[sig]["meta"]["err"] = {"InstructionError": [0, "Custom"]}
    entry = scan_account(single_account(h), ACCOUNT, VICTIM, MINT)
    assert entry.failed_tx_count == 1
    assert entry.possible_delegate_transfers == []
    assert entry.is_reconciled()


def test_transaction_without_token_instructions_is_skipped():
    h = History(ACCOUNT)
    h.tx("lamports", 10, [system_transfer(VICTIM, ACCOUNT, 1)])
    entry = scan_account(single_account(h), ACCOUNT, VICTIM, MINT)
    assert (entry.skipped_tx_count, entry.scanned_tx_count, entry.scanned_instruction_count) == (1, 0, 0)


def test_instruction_count_includes_inner_instructions():
    h = History(ACCOUNT)
    h.tx("cpi", 10, [token_ix("revoke", source=ACCOUNT, owner=VICTIM)], inner={0: [
        token_ix("transfer", source=ACCOUNT, destination=fake_addr("d"), authority=SCAMMER, amount="2"),
        system_transfer(VICTIM, SCAMMER, 1),
    ]})
    entry = scan_account(single_account(h), ACCOUNT, VICTIM, MINT)
    assert entry.scanned_tx_count == 1
    assert entry.scanned_instruction_count == 2
    assert [t.signer for t in entry.possible_delegate_transfers] == [SCAMMER]


def test_missing_transaction_body_is_network_failure():
    h = revokes(2)
    h.transactions.pop(h.signatures[0]["signature"])
    with pytest.raises(NetworkFailure):
        scan_account(single_account(h), ACCOUNT, VICTIM, MINT)


def test_malformed_instruction_aborts_scan():
    h = History(ACCOUNT)
    h.tx("broken", 10, [token_ix("approve", source=ACCOUNT, owner=SCAMMER, amount="1")])
    with pytest.raises(DecodeFailure):
        scan_account(single_account(h), ACCOUNT, VICTIM, MINT)


# ── unrecognized instructions ────────────────────────────────────────────────

def unknown_history() -> History:
    h = History(ACCOUNT)
    h.tx("freeze", 10, [token_ix("freezeAccount", account=ACCOUNT, mint=MINT, freezeAuthority=SCAMMER)])
    h.tx("approve", 11, [token_ix("approve", source=ACCOUNT, delegate=SCAMMER, owner=SCAMMER, amount="1")])
    return h


def test_strict_mode_aborts_on_unrecognized_instruction():
    with pytest.raises(UnrecognizedInstruction) as exc:
        scan_account(single_account(unknown_history()), ACCOUNT, VICTIM, MINT)
    assert exc.value.kind == "freezeAccount"
    assert exc.value.slot == 10


def test_lenient_mode_counts_and_continues():
    cfg = build_config(strict=False)
    entry = scan_account(single_account(unknown_history()), ACCOUNT, VICTIM, MINT, cfg)
    assert entry.unrecognized_instruction_count == 1
    assert len(entry.delegate_changes) == 1
    assert entry.scanned_tx_count == 2


def test_extra_ignored_kinds_keep_strict_mode_usable():
    cfg = build_config(extra_ignored_kinds=("freezeAccount",))
    entry = scan_account(single_account(unknown_history()), ACCOUNT, VICTIM, MINT, cfg)
    assert entry.unrecognized_instruction_count == 0
    assert len(entry.delegate_changes) == 1


# ── full audit over the bundled cases ────────────────────────────────────────

@pytest.fixture
def report():
    return run_audit(ReplayRpcClient(build_cases()), [VICTIM], [MINT])


def test_discovery_filters_other_mints(report):
    assert sorted(e.address for e in report.entries()) == sorted(
        [FRAUD_ACCOUNT, WARNING_ACCOUNT, SAFE_ACCOUNT, CLEAN_ACCOUNT]
    )


def test_every_entry_reconciles(report):
    for entry in report.entries():
        assert entry.is_reconciled(), entry.address


def test_delegate_set_matches_delegate_changes(report):
    for entry in report.entries():
        assert entry.all_delegate_addresses == {dc.new_delegate for dc in entry.delegate_changes}


def test_fraud_case_counters(report):
    entry = report.get(FRAUD_ACCOUNT)
    assert entry.recognized_owner == VICTIM
    assert entry.current_delegate == SCAMMER
    assert (entry.total_tx_count, entry.failed_tx_count, entry.scanned_tx_count, entry.skipped_tx_count) == (6, 1, 5, 0)
    assert entry.scanned_instruction_count == 5
    assert [oc.signer for oc in entry.owner_changes] == [SCAMMER]
    assert [t.signer for t in entry.possible_delegate_transfers] == [SCAMMER]


def test_warning_case_counters(report):
    entry = report.get(WARNING_ACCOUNT)
    assert (entry.total_tx_count, entry.scanned_tx_count, entry.skipped_tx_count) == (5, 4, 1)
    assert entry.possible_delegate_transfers == []


def test_owner_actions_leave_no_events(report):
    safe = report.get(SAFE_ACCOUNT)
    assert safe.delegate_changes == []
    assert len(safe.owner_changes) == 1
    clean = report.get(CLEAN_ACCOUNT)
    assert clean.owner_changes == [] and clean.delegate_changes == []
    assert [b.signer for b in clean.possible_delegate_burns] == [VICTIM]


def test_owner_burns_dropped_when_policy_off():
    report = run_audit(ReplayRpcClient(build_cases()), [VICTIM], [MINT], build_config(record_owner_burns=False))
    assert report.get(CLEAN_ACCOUNT).possible_delegate_burns == []


def test_account_listed_twice_is_scanned_once():
    client = ReplayRpcClient(build_cases())
    report = run_audit(client, [VICTIM, VICTIM], [MINT])
    assert len(report) == 4
    assert len(method_calls(client, "getProgramAccounts")) == 2


def test_parallel_runs_match_sequential(report):
    cfg = build_config(tx_fetch_workers=4, account_workers=3)
    parallel = run_audit(ReplayRpcClient(build_cases()), [VICTIM], [MINT], cfg)
    assert parallel.to_dict() == report.to_dict()


def test_no_matching_mint_gives_empty_report():
    report = run_audit(ReplayRpcClient(build_cases()), [VICTIM], [fake_addr("unused_mint")])
    assert len(report) == 0
