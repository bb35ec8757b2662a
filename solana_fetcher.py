"""
solana_fetcher.py — Solana JSON-RPC feed for the delegation audit
=================================================================
Everything the audit needs from a Solana node, over plain JSON-RPC:

  DISCOVERY    getProgramAccounts  → token accounts of an owner, by mint
  HISTORY      getSignaturesForAddress (backward, `before` cursor)
               getTransaction (jsonParsed, inner instructions flattened)
  REMEDIATION  getLatestBlockhash / getBalance / getFeeForMessage /
               getMinimumBalanceForRentExemption / sendTransaction /
               getSignatureStatuses

RETRIES
───────
Off by default (max_retries=0): the first transport failure aborts the run.
When enabled, only transport errors, HTTP 429 and HTTP 5xx are retried, with
exponential backoff (Retry-After honoured). A JSON-RPC error object is an
answer, not a glitch, and is never retried.

REPLAY
──────
ReplayRpcClient answers the same methods from a JSON fixture so an audit
can run offline (see scripts/generate_cases.py for the fixture format).
"""

import base64
import json
import logging
import threading
import time
from dataclasses import dataclass

import requests
from solders.hash import Hash
from solders.transaction import Transaction

from audit_engine.config import CONFIG
from audit_engine.errors import DecodeFailure, NetworkFailure
from audit_engine.instructions import TOKEN_PROGRAM_ID, flatten_instructions

log = logging.getLogger(__name__)

TOKEN_ACCOUNT_LEN   = 165
TOKEN_OWNER_OFFSET  = 32


# ─────────────────────────────────────────────────────────────────────────────
# RECORDS
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SignatureInfo:
    signature: str
    slot: int
    failed: bool


@dataclass(frozen=True)
class TransactionRecord:
    signature: str
    slot: int
    instructions: list       # top-level + inner, execution order
    success: bool


@dataclass(frozen=True)
class TokenAccountState:
    address: str
    mint: str
    owner: str
    delegate: str = None
    delegated_amount: str = "0"
    amount: str = "0"


def parse_signature_info(raw: dict) -> SignatureInfo:
    try:
        return SignatureInfo(
            signature=raw["signature"],
            slot=int(raw["slot"]),
            failed=raw.get("err") is not None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeFailure(f"malformed signature entry {raw!r}") from e


def parse_transaction(signature: str, raw: dict) -> TransactionRecord:
    if "slot" not in raw:
        raise DecodeFailure(f"transaction {signature} without a slot")
    meta = raw.get("meta") or {}
    return TransactionRecord(
        signature=signature,
        slot=int(raw["slot"]),
        instructions=flatten_instructions(raw),
        success=meta.get("err") is None,
    )


def parse_token_account(raw: dict):
    """getProgramAccounts jsonParsed entry → TokenAccountState, or None if not a token account."""
    data = (raw.get("account") or {}).get("data")
    if not isinstance(data, dict):
        return None
    parsed = data.get("parsed") or {}
    if parsed.get("type") != "account":
        return None
    info = parsed.get("info") or {}
    try:
        return TokenAccountState(
            address=raw["pubkey"],
            mint=info["mint"],
            owner=info["owner"],
            delegate=info.get("delegate"),
            delegated_amount=str((info.get("delegatedAmount") or {}).get("amount", "0")),
            amount=str((info.get("tokenAmount") or {}).get("amount", "0")),
        )
    except KeyError:
        return None


# ─────────────────────────────────────────────────────────────────────────────
# JSON-RPC CLIENT
# ─────────────────────────────────────────────────────────────────────────────

class _Retryable(Exception):
    def __init__(self, message, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class SolanaRpcClient:
    def __init__(self, url: str, timeout: float = 30, max_retries: int = 0,
                 backoff: float = 0.5, backoff_max: float = 8.0, session=None):
        self.url         = url
        self.timeout     = timeout
        self.max_retries = max_retries
        self.backoff     = backoff
        self.backoff_max = backoff_max
        self.session     = session or requests.Session()
        self._next_id    = 0
        self._id_lock    = threading.Lock()

    @classmethod
    def from_config(cls, cfg: dict = None) -> "SolanaRpcClient":
        cfg = cfg or CONFIG
        return cls(
            cfg["rpc_url"],
            timeout=cfg["request_timeout"],
            max_retries=cfg["max_retries"],
            backoff=cfg["retry_backoff"],
            backoff_max=cfg["retry_backoff_max"],
        )

    def _post(self, payload: dict) -> dict:
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise _Retryable(str(e)) from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _Retryable(f"HTTP {resp.status_code}", resp.headers.get("Retry-After"))
        try:
            resp.raise_for_status()
            return resp.json()
        except requests.HTTPError as e:
            raise NetworkFailure(payload["method"], str(e)) from e
        except ValueError as e:
            raise NetworkFailure(payload["method"], f"invalid JSON response: {e}") from e

    def _call(self, method: str, params: list):
        with self._id_lock:
            self._next_id += 1
            request_id = self._next_id
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        attempt = 0
        delay   = self.backoff
        while True:
            try:
                body = self._post(payload)
                break
            except _Retryable as e:
                if attempt >= self.max_retries:
                    raise NetworkFailure(method, str(e)) from e
                attempt += 1
                wait = float(e.retry_after) if e.retry_after and str(e.retry_after).isdigit() else delay
                log.warning("[RPC] %s failed (%s), retry %d/%d in %.1fs",
                            method, e, attempt, self.max_retries, wait)
                time.sleep(wait)
                delay = min(delay * 2, self.backoff_max)

        if "error" in body:
            raise NetworkFailure(method, json.dumps(body["error"]))
        if "result" not in body:
            raise NetworkFailure(method, "response without result")
        return body["result"]

    # ── history ──────────────────────────────────────────────────────────────

    def get_signatures_for_address(self, address: str, before: str = None,
                                   limit: int = 1000) -> list:
        """Newest-first signatures touching `address`, older than `before`."""
        opts = {"limit": limit}
        if before:
            opts["before"] = before
        result = self._call("getSignaturesForAddress", [address, opts])
        if not isinstance(result, list):
            raise DecodeFailure(f"getSignaturesForAddress returned {type(result).__name__}")
        return [parse_signature_info(s) for s in result]

    def get_transaction(self, signature: str) -> TransactionRecord:
        result = self._call("getTransaction", [
            signature,
            {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0},
        ])
        if result is None:
            raise NetworkFailure("getTransaction", f"transaction {signature} not available from node")
        return parse_transaction(signature, result)

    # ── discovery ────────────────────────────────────────────────────────────

    def get_token_accounts(self, owner: str) -> list:
        """All token-program accounts whose owner field equals `owner`."""
        result = self._call("getProgramAccounts", [
            TOKEN_PROGRAM_ID,
            {
                "encoding": "jsonParsed",
                "filters": [
                    {"dataSize": TOKEN_ACCOUNT_LEN},
                    {"memcmp": {"offset": TOKEN_OWNER_OFFSET, "bytes": owner}},
                ],
            },
        ])
        accounts = []
        for raw in result or ():
            state = parse_token_account(raw)
            if state is None:
                log.warning("[DISCOVER] unexpected account data at %s", raw.get("pubkey"))
                continue
            accounts.append(state)
        return accounts

    # ── remediation ──────────────────────────────────────────────────────────

    def get_latest_blockhash(self) -> Hash:
        result = self._call("getLatestBlockhash", [{"commitment": "confirmed"}])
        return Hash.from_string(result["value"]["blockhash"])

    def get_balance(self, pubkey: str) -> int:
        return int(self._call("getBalance", [pubkey])["value"])

    def get_fee_for_message(self, message_b64: str) -> int:
        fee = self._call("getFeeForMessage", [message_b64, {"commitment": "confirmed"}])["value"]
        if fee is None:
            raise NetworkFailure("getFeeForMessage", "blockhash expired before the fee was quoted")
        return int(fee)

    def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        return int(self._call("getMinimumBalanceForRentExemption", [size]))

    def send_transaction(self, tx_b64: str) -> str:
        return self._call("sendTransaction", [tx_b64, {"encoding": "base64"}])

    def get_signature_status(self, signature: str):
        return self._call("getSignatureStatuses", [[signature]])["value"][0]

    def wait_for_confirmation(self, signature: str, timeout: float = 60, poll: float = 2.0) -> dict:
        deadline = time.monotonic() + timeout
        while True:
            status = self.get_signature_status(signature)
            if status and status.get("err") is not None:
                raise NetworkFailure("sendTransaction", f"{signature} failed: {status['err']}")
            if status and status.get("confirmationStatus") in ("confirmed", "finalized"):
                return status
            if time.monotonic() >= deadline:
                raise NetworkFailure("getSignatureStatuses", f"{signature} not confirmed after {timeout}s")
            time.sleep(poll)


# ─────────────────────────────────────────────────────────────────────────────
# REPLAY CLIENT
# ─────────────────────────────────────────────────────────────────────────────

class ReplayRpcClient(SolanaRpcClient):
    """
    Serves JSON-RPC answers from a fixture dict:

      token_accounts  owner   → [getProgramAccounts entries]
      signatures      address → [getSignaturesForAddress entries, newest first]
      transactions    sig     → getTransaction result
      balances        pubkey  → lamports          (optional)
      fee, rent, blockhash                        (optional)
    """

    def __init__(self, fixture: dict):
        super().__init__("replay://fixture")
        self.fixture = fixture
        self.calls   = []
        self.sent    = []

    @classmethod
    def from_file(cls, path: str) -> "ReplayRpcClient":
        with open(path, encoding="utf-8") as f:
            return cls(json.load(f))

    def _call(self, method: str, params: list):
        self.calls.append((method, params))
        fx = self.fixture

        if method == "getSignaturesForAddress":
            address, opts = params
            history = fx.get("signatures", {}).get(address, [])
            start = 0
            if opts.get("before"):
                sigs  = [s["signature"] for s in history]
                start = sigs.index(opts["before"]) + 1
            return history[start:start + opts["limit"]]

        if method == "getTransaction":
            return fx.get("transactions", {}).get(params[0])

        if method == "getProgramAccounts":
            owner = next(f["memcmp"]["bytes"] for f in params[1]["filters"] if "memcmp" in f)
            return fx.get("token_accounts", {}).get(owner, [])

        if method == "getLatestBlockhash":
            return {"context": {"slot": 0},
                    "value": {"blockhash": fx.get("blockhash", str(Hash.default())),
                              "lastValidBlockHeight": 0}}
        if method == "getBalance":
            return {"context": {"slot": 0}, "value": fx.get("balances", {}).get(params[0], 0)}
        if method == "getFeeForMessage":
            return {"context": {"slot": 0}, "value": fx.get("fee", 5000)}
        if method == "getMinimumBalanceForRentExemption":
            return fx.get("rent", 2039280)
        if method == "sendTransaction":
            tx = Transaction.from_bytes(base64.b64decode(params[0]))
            self.sent.append(tx)
            return str(tx.signatures[0])
        if method == "getSignatureStatuses":
            return {"context": {"slot": 0},
                    "value": [{"err": None, "confirmationStatus": "confirmed"} for _ in params[0]]}

        raise NetworkFailure(method, "not available from replay fixture")


# ─────────────────────────────────────────────────────────────────────────────
# DISCOVERY
# ─────────────────────────────────────────────────────────────────────────────

def iter_token_accounts(client: SolanaRpcClient, owners: list, mints: list):
    """Yield (owner, TokenAccountState) for every token account of `owners` holding one of `mints`."""
    wanted = set(mints)
    for owner in owners:
        accounts = client.get_token_accounts(owner)
        matching = [a for a in accounts if a.mint in wanted]
        log.info("[DISCOVER] owner %s: %d token accounts, %d matching mints",
                 owner, len(accounts), len(matching))
        for state in matching:
            yield owner, state
