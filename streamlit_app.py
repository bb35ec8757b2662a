"""
Delegation Audit — report viewer
================================
Browse the outputs of `delegation_audit.py audit` in the browser: account
status counts, every owner reassignment with its risk level, and the
recorded events behind each finding.

Three sources:
  - an output directory written by the CLI
  - uploaded summary.csv / accounts.csv / detail.csv
  - the bundled synthetic cases, audited on the spot from a replay fixture

Run locally:
    pip install -e .
    streamlit run streamlit_app.py
"""

import os
import sys

import streamlit as st

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "scripts"))

from audit_engine.config import CONFIG, build_config
from audit_engine.errors import AuditError
from audit_engine.report import (
    accounts_frame,
    detail_frame,
    read_csv,
    split_cell,
    summary_frame,
)
from audit_engine.risk import (
    DANGER,
    SAFE,
    STATUS_FRAUD,
    STATUS_REVOKE,
    STATUS_SAFE,
    WARNING,
    assess_report,
)
from audit_engine.scanner import run_audit
from generate_cases import MINT, VICTIM, build_cases
from solana_fetcher import ReplayRpcClient

st.set_page_config(
    page_title="Delegation Audit · Report Viewer",
    page_icon="🔍",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
  .stApp { background-color: #08080e; }
  section[data-testid="stSidebar"] { background-color: #0e0e1c; border-right: 1px solid rgba(91,115,248,0.14); }
  div[data-testid="metric-container"] {
    background-color: #0e0e1c;
    border: 1px solid rgba(91,115,248,0.14);
    border-radius: 12px;
    padding: 1rem 1.25rem;
  }
  div[data-testid="stExpander"] { background-color: #0e0e1c; border-radius: 12px; }
  h1, h2, h3 { color: #ededf5 !important; }
</style>
""", unsafe_allow_html=True)

LEVEL_EMOJI  = {DANGER: "🔴", WARNING: "🟠", SAFE: "🟢"}
STATUS_EMOJI = {STATUS_FRAUD: "🔴", STATUS_REVOKE: "🟠", STATUS_SAFE: "🟢"}


def short(address: str, n: int = 8) -> str:
    return f"{address[:n]}…{address[-4:]}" if len(address) > n + 4 else address


@st.cache_data
def load_directory(path: str):
    return tuple(read_csv(os.path.join(path, name)) for name in ("summary.csv", "accounts.csv", "detail.csv"))


@st.cache_data
def audit_bundled_cases(lenient: bool):
    client = ReplayRpcClient(build_cases())
    cfg = build_config(strict=not lenient)
    report = run_audit(client, [VICTIM], [MINT], cfg)
    findings = assess_report(report)
    frames = (summary_frame(report, findings), accounts_frame(report, findings), detail_frame(report))
    # same dtype as frames read back from disk
    return tuple(df.astype(str) for df in frames)


# ── SIDEBAR ──────────────────────────────────────────────────────────────────
with st.sidebar:
    st.markdown("**Data Source**")
    mode = st.radio(
        "Choose input",
        ["🧪 Bundled synthetic cases", "📁 Output directory", "📤 Upload CSVs"],
        label_visibility="collapsed",
    )

    lenient = False
    directory = None
    uploads = {}
    if mode == "🧪 Bundled synthetic cases":
        lenient = st.checkbox("Lenient mode (skip unrecognized instructions)", value=False)
    elif mode == "📁 Output directory":
        directory = st.text_input("Directory", value=CONFIG["output_dir"])
    else:
        for name in ("summary.csv", "accounts.csv", "detail.csv"):
            uploads[name] = st.file_uploader(name, type=["csv"], key=name)

    st.divider()
    st.caption("Slots order transactions, but not within a slot: same-slot findings can be false positives.")


# ── MAIN ─────────────────────────────────────────────────────────────────────
st.markdown("## 🔍 Stale Token Delegation Audit")

summary = accounts = detail = None
if mode == "🧪 Bundled synthetic cases":
    try:
        summary, accounts, detail = audit_bundled_cases(lenient)
        label = "bundled synthetic cases (replay)"
    except AuditError as e:
        st.error(f"Audit aborted: {e}")
        st.stop()
elif mode == "📁 Output directory":
    try:
        summary, accounts, detail = load_directory(directory)
        label = f"directory: {directory}"
    except FileNotFoundError as e:
        st.info(f"No audit output found ({e.filename}). Run `delegation_audit.py audit` first.")
        st.stop()
else:
    if not all(uploads.values()):
        st.info("👈 Upload summary.csv, accounts.csv and detail.csv from one audit run.")
        st.stop()
    summary  = read_csv(uploads["summary.csv"])
    accounts = read_csv(uploads["accounts.csv"])
    detail   = read_csv(uploads["detail.csv"])
    label = "uploaded files"

st.caption(f"Loaded · {label}")

# ── Status metrics ──────────────────────────────────────────────────────────
counts = accounts["status"].value_counts()
col1, col2, col3, col4 = st.columns(4)
with col1: st.metric("Token Accounts", len(accounts))
with col2: st.metric(f"🔴 {STATUS_FRAUD}", int(counts.get(STATUS_FRAUD, 0)))
with col3: st.metric(f"🟠 {STATUS_REVOKE}", int(counts.get(STATUS_REVOKE, 0)))
with col4: st.metric(f"🟢 {STATUS_SAFE}", int(counts.get(STATUS_SAFE, 0)))

st.divider()

# ── Accounts ────────────────────────────────────────────────────────────────
st.markdown("#### Accounts")
acct_view = accounts[[
    "account", "status", "current_delegate", "total_tx_count", "scanned_tx_count",
    "failed_tx_count", "skipped_tx_count", "unrecognized_instruction_count",
]].copy()
acct_view["status"] = acct_view["status"].map(lambda s: f"{STATUS_EMOJI.get(s, '')} {s}")
st.dataframe(acct_view, use_container_width=True, hide_index=True)

# ── Reassignments ───────────────────────────────────────────────────────────
st.markdown("#### Owner Reassignments")
if summary.empty:
    st.success("✅ No token account was reassigned by anyone but its recognized owner.")
else:
    for _, row in summary.iterrows():
        level = row["risk_level"]
        title = (f"{LEVEL_EMOJI.get(level, '')} **{level}** · {short(row['account'])} · "
                 f"slot {row['owner_change_slot']}")
        with st.expander(title, expanded=(level == DANGER)):
            c1, c2 = st.columns(2)
            with c1:
                st.markdown(f"**Account** `{row['account']}`")
                st.markdown(f"**Mint** `{row['mint']}`")
                st.markdown(f"**Reassigned by** `{row['owner_change_signer']}` → `{row['new_owner']}`")
                st.markdown(f"**Tx** `{row['owner_change_signature']}`")
            with c2:
                delegates = split_cell(row["stale_delegates"])
                sigs = split_cell(row["implicated_signatures"])
                st.markdown("**Stale delegates**")
                for d in delegates or ["none"]:
                    st.markdown(f"- `{d}`")
                st.markdown("**Implicated transactions**")
                for s in sigs or ["none"]:
                    st.markdown(f"- `{s}`")
                if row["duplicate_implicated_count"] not in ("", "0"):
                    st.caption(f"{row['duplicate_implicated_count']} more already listed under an earlier reassignment")

            events = detail[detail["account"] == row["account"]]
            st.dataframe(
                events[["section", "slot", "signature", "signer", "new_authority", "amount"]],
                use_container_width=True,
                hide_index=True,
            )

# ── Raw events ──────────────────────────────────────────────────────────────
with st.expander("🔬 All recorded events"):
    st.dataframe(detail, use_container_width=True, hide_index=True)
    st.download_button(
        label="⬇ Download detail CSV",
        data=detail.to_csv(index=False).encode("utf-8"),
        file_name="detail.csv",
        mime="text/csv",
    )
