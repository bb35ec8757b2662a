"""
Account history scanner
=======================
Walks one token account's confirmed-signature history from newest to
oldest, `before`-cursor pagination, and feeds every token-program
instruction of every successful transaction to the classifier.

Page handling:
  - every returned signature counts toward total_tx_count
  - signatures the node already marks as failed only count as failed
  - a page shorter than the page limit ends the history

Per transaction (successful ones):
  - the body reports an error            → failed_tx_count
  - no token-program instruction in it   → skipped_tx_count
  - otherwise                            → scanned_tx_count, and one
                                           scanned_instruction_count per
                                           token-program instruction

Nothing is retried here; the RPC client owns the retry policy. Any error
aborts the whole audit so that a report is never silently incomplete.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from audit_engine.classifier import CONSUMED, UNRECOGNIZED, classify
from audit_engine.config import CONFIG
from audit_engine.errors import DecodeFailure, UnrecognizedInstruction
from audit_engine.events import AuditReport, TokenAccountEntry
from audit_engine.instructions import decode_instruction, is_token_instruction
from solana_fetcher import iter_token_accounts

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# PAGINATION
# ─────────────────────────────────────────────
def iter_signature_pages(client, address: str, limit: int):
    """Yield newest-first pages of SignatureInfo until the history is exhausted."""
    before = None
    while True:
        page = client.get_signatures_for_address(address, before=before, limit=limit)
        yield page
        if len(page) < limit:
            return
        before = page[-1].signature


def _fetch_transactions(client, signatures: list, workers: int):
    if workers <= 1 or len(signatures) <= 1:
        for sig in signatures:
            yield client.get_transaction(sig)
        return
    # map() keeps input order, so classification order is unaffected
    with ThreadPoolExecutor(max_workers=workers) as pool:
        yield from pool.map(client.get_transaction, signatures)


# ─────────────────────────────────────────────
# SCAN
# ─────────────────────────────────────────────
def scan_transaction(entry: TokenAccountEntry, tx, cfg: dict) -> None:
    """Classify the token-program instructions of one fetched transaction into `entry`."""
    if not tx.success:
        entry.failed_tx_count += 1
        return

    token_ixs = [ix for ix in tx.instructions if is_token_instruction(ix)]
    if not token_ixs:
        entry.skipped_tx_count += 1
        return

    entry.scanned_tx_count += 1
    for ix in token_ixs:
        entry.scanned_instruction_count += 1
        outcome = classify(
            entry.recognized_owner,
            entry.address,
            entry.mint,
            tx.slot,
            tx.signature,
            decode_instruction(ix),
            record_owner_burns=cfg["record_owner_burns"],
            extra_ignored_kinds=cfg["extra_ignored_kinds"],
        )
        if outcome.status == CONSUMED:
            entry.record(outcome.event)
            log.debug("[SCAN] %s slot %d %s → %s", entry.address, tx.slot, tx.signature, outcome.event.kind)
        elif outcome.status == UNRECOGNIZED:
            if cfg["strict"]:
                raise UnrecognizedInstruction(outcome.kind, tx.signature, tx.slot)
            entry.unrecognized_instruction_count += 1
            log.warning("[SCAN] skipping unrecognized '%s' in %s (slot %d)",
                        outcome.kind, tx.signature, tx.slot)


def scan_account(client, address: str, owner: str, mint: str,
                 cfg: dict = None, current_delegate: str = None) -> TokenAccountEntry:
    """Reconstruct the full event history of one token account."""
    cfg     = cfg or CONFIG
    limit   = cfg["signatures_page_limit"]
    entry   = TokenAccountEntry(
        address=address,
        recognized_owner=owner,
        mint=mint,
        current_delegate=current_delegate,
    )

    for page_no, page in enumerate(iter_signature_pages(client, address, limit), 1):
        entry.total_tx_count += len(page)
        live = [s.signature for s in page if not s.failed]
        entry.failed_tx_count += len(page) - len(live)
        log.debug("[SCAN] %s page %d: %d signatures, %d failed",
                  address, page_no, len(page), len(page) - len(live))

        for tx in _fetch_transactions(client, live, cfg["tx_fetch_workers"]):
            scan_transaction(entry, tx, cfg)

    if not entry.is_reconciled():
        raise DecodeFailure(
            f"{address}: counters do not reconcile "
            f"(failed {entry.failed_tx_count} + skipped {entry.skipped_tx_count} "
            f"+ scanned {entry.scanned_tx_count} != total {entry.total_tx_count})"
        )

    log.info("[SCAN] %s: %d tx (%d scanned, %d failed) | owner changes %d | delegate changes %d "
             "| transfers %d | burns %d",
             address, entry.total_tx_count, entry.scanned_tx_count, entry.failed_tx_count,
             len(entry.owner_changes), len(entry.delegate_changes),
             len(entry.possible_delegate_transfers), len(entry.possible_delegate_burns))
    return entry


# ─────────────────────────────────────────────
# AUDIT RUN
# ─────────────────────────────────────────────
def run_audit(client, owners: list, mints: list, cfg: dict = None) -> AuditReport:
    """Discover every matching token account of `owners` and scan each one."""
    cfg    = cfg or CONFIG
    report = AuditReport()

    jobs, seen = [], set()
    for owner, state in iter_token_accounts(client, owners, mints):
        if state.address in seen:
            log.warning("[DISCOVER] %s listed twice, scanning once", state.address)
            continue
        seen.add(state.address)
        jobs.append((owner, state))
    log.info("[SCAN] %d token accounts to audit", len(jobs))

    def _scan(job):
        owner, state = job
        return scan_account(client, state.address, owner, state.mint, cfg,
                            current_delegate=state.delegate)

    workers = cfg["account_workers"]
    if workers <= 1:
        for job in jobs:
            report.add(_scan(job))
        return report

    pool = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = [pool.submit(_scan, job) for job in jobs]
        for future in futures:
            report.add(future.result())
    except BaseException:
        pool.shutdown(wait=True, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return report
