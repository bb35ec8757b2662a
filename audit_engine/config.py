"""
Run configuration.

One dict of named tunables. Callers override per run with
`build_config(**overrides)`, the same way the dashboard and CLI layer
their own values on top of the defaults.
"""

import os

from audit_engine.instructions import PROTECTED_KINDS

MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"

# ─────────────────────────────────────────────
# CONFIG
# ─────────────────────────────────────────────
CONFIG = {
    # ── RPC ──
    "rpc_url":             os.getenv("SOLANA_RPC_URL", MAINNET_RPC_URL),
    "request_timeout":     30,
    "max_retries":         0,      # 0 = fail on the first transport error
    "retry_backoff":       0.5,    # seconds, doubled per attempt
    "retry_backoff_max":   8.0,

    # ── History scan ──
    "signatures_page_limit": 1000,
    "tx_fetch_workers":      1,    # parallel getTransaction calls inside one page
    "account_workers":       1,    # parallel token-account scans

    # ── Classification policy ──
    "strict":              True,   # unrecognized token instruction aborts the run
    "record_owner_burns":  True,   # burns signed by the recognized owner are still recorded
    "extra_ignored_kinds": (),     # operator-approved harmless instruction kinds

    # ── Output ──
    "output_dir":          "output_audit",
}


def build_config(**overrides) -> dict:
    """Return a copy of CONFIG with the non-None overrides applied."""
    unknown = set(overrides) - set(CONFIG)
    if unknown:
        raise KeyError(f"unknown config keys: {sorted(unknown)}")
    cfg = dict(CONFIG)
    cfg.update({k: v for k, v in overrides.items() if v is not None})
    check_ignored_kinds(cfg["extra_ignored_kinds"])
    return cfg


def check_ignored_kinds(kinds) -> tuple:
    """Reject ignore-list entries that would switch off a detection rule."""
    protected = sorted(PROTECTED_KINDS.intersection(kinds))
    if protected:
        raise ValueError(f"cannot ignore instruction kinds the audit relies on: {protected}")
    return tuple(kinds)
