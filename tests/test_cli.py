"""CLI wiring over replay fixtures."""

import json

import pytest
from solders.keypair import Keypair

import delegation_audit
from generate_cases import MINT, VICTIM, History, build_cases, fake_addr, token_account, token_ix


@pytest.fixture
def replay_file(tmp_path):
    path = tmp_path / "cases.json"
    path.write_text(json.dumps(build_cases()))
    return str(path)


def write_keypair(tmp_path, kp) -> str:
    path = tmp_path / "id.json"
    path.write_text(json.dumps(list(bytes(kp))))
    return str(path)


def test_audit_writes_outputs(replay_file, tmp_path, capsys):
    out = tmp_path / "out"
    code = delegation_audit.main([
        "--replay", replay_file, "--output-dir", str(out),
        "audit", "--owner", VICTIM, "--mint", MINT,
    ])
    assert code == 0
    for name in ("summary.csv", "accounts.csv", "detail.csv", "report.json", "report.txt", "metrics.json"):
        assert (out / name).exists(), name
    metrics = json.loads((out / "metrics.json").read_text())
    assert metrics["accounts"] == 4
    assert "QUICK METRICS" in capsys.readouterr().out


def unknown_instruction_fixture(tmp_path) -> str:
    account = fake_addr("cli_account")
    h = History(account)
    h.tx("thaw", 5, [token_ix("thawAccount", account=account, mint=MINT, freezeAuthority=VICTIM)])
    fixture = {
        "token_accounts": {VICTIM: [token_account(account, MINT, VICTIM, 0)]},
        "signatures":     {account: h.newest_first()},
        "transactions":   h.transactions,
    }
    path = tmp_path / "unknown.json"
    path.write_text(json.dumps(fixture))
    return str(path)


def test_strict_audit_aborts_without_partial_report(tmp_path):
    out = tmp_path / "out"
    code = delegation_audit.main([
        "--replay", unknown_instruction_fixture(tmp_path), "--output-dir", str(out),
        "audit", "--owner", VICTIM, "--mint", MINT,
    ])
    assert code == 1
    assert not (out / "summary.csv").exists()


@pytest.mark.parametrize("flag", [["--lenient"], ["--ignore-kind", "thawAccount"]])
def test_unrecognized_instruction_can_be_tolerated(tmp_path, flag):
    out = tmp_path / "out"
    code = delegation_audit.main([
        "--replay", unknown_instruction_fixture(tmp_path), "--output-dir", str(out), *flag,
        "audit", "--owner", VICTIM, "--mint", MINT,
    ])
    assert code == 0
    assert (out / "accounts.csv").exists()


def test_owner_from_keypair_file(tmp_path):
    kp = Keypair.from_seed(bytes([3] * 32))
    fixture = {"token_accounts": {str(kp.pubkey()): []}}
    replay = tmp_path / "empty.json"
    replay.write_text(json.dumps(fixture))
    code = delegation_audit.main([
        "--replay", str(replay), "--output-dir", str(tmp_path / "out"),
        "audit", "--owner", write_keypair(tmp_path, kp), "--mint", MINT,
    ])
    assert code == 0
    assert delegation_audit.owner_pubkey(write_keypair(tmp_path, kp)) == str(kp.pubkey())


def test_cleanup_dry_run(tmp_path, capsys):
    kp = Keypair.from_seed(bytes([4] * 32))
    owner = str(kp.pubkey())
    fixture = {
        "token_accounts": {owner: [token_account(fake_addr("cli_acc"), MINT, owner, 1,
                                                 delegate=fake_addr("cli_delegate"), delegated=1)]},
        "balances": {owner: 10_000_000},
    }
    replay = tmp_path / "cleanup.json"
    replay.write_text(json.dumps(fixture))
    code = delegation_audit.main([
        "--replay", str(replay), "--dry-run",
        "cleanup", "--owner", write_keypair(tmp_path, kp), "--mint", MINT,
    ])
    assert code == 0
    assert "Revoked: 0" in capsys.readouterr().out


def test_cleanup_rejects_public_key_as_owner(tmp_path, replay_file):
    code = delegation_audit.main([
        "--replay", replay_file, "cleanup", "--owner", fake_addr("not_a_secret"), "--mint", MINT,
    ])
    assert code == 2


def test_simulate_requires_fee_payer(replay_file):
    code = delegation_audit.main([
        "--replay", replay_file, "--dry-run",
        "simulate", "--mint", MINT, "--source", fake_addr("s"), "--target", fake_addr("t"),
    ])
    assert code == 2


def test_flags_override_config():
    args = delegation_audit.build_parser().parse_args([
        "--lenient", "--no-owner-burns", "--ignore-kind", "a", "--ignore-kind", "b",
        "--page-size", "10", "--max-retries", "2", "--tx-workers", "3",
        "audit", "--owner", VICTIM, "--mint", MINT,
    ])
    cfg = delegation_audit.config_from_args(args)
    assert cfg["strict"] is False
    assert cfg["record_owner_burns"] is False
    assert cfg["extra_ignored_kinds"] == ("a", "b")
    assert (cfg["signatures_page_limit"], cfg["max_retries"], cfg["tx_fetch_workers"]) == (10, 2, 3)
    assert cfg["account_workers"] == 1


def test_defaults_are_strict():
    args = delegation_audit.build_parser().parse_args(["audit", "--owner", VICTIM, "--mint", MINT])
    cfg = delegation_audit.config_from_args(args)
    assert cfg["strict"] is True
    assert cfg["record_owner_burns"] is True
    assert cfg["extra_ignored_kinds"] == ()


def test_invalid_mint_is_usage_error():
    with pytest.raises(SystemExit) as exc:
        delegation_audit.build_parser().parse_args(["audit", "--owner", VICTIM, "--mint", "nope"])
    assert exc.value.code == 2


@pytest.mark.parametrize("kind", ["setAuthority", "transfer", "approve", "burnChecked"])
def test_ignoring_a_rule_kind_is_usage_error(replay_file, kind):
    with pytest.raises(SystemExit) as exc:
        delegation_audit.main([
            "--replay", replay_file, "--ignore-kind", kind,
            "audit", "--owner", VICTIM, "--mint", MINT,
        ])
    assert exc.value.code == 2


def test_mismatched_keypair_file_is_usage_error(replay_file, tmp_path):
    path = tmp_path / "id.json"
    path.write_text(json.dumps(list(range(64))))
    code = delegation_audit.main([
        "--replay", replay_file, "--output-dir", str(tmp_path / "out"),
        "audit", "--owner", str(path), "--mint", MINT,
    ])
    assert code == 2
