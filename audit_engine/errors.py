"""Error taxonomy for audit and remediation runs."""


class AuditError(Exception):
    """Base class. Anything raised from here aborts the current run."""


class NetworkFailure(AuditError):
    def __init__(self, method: str, message: str):
        super().__init__(f"{method}: {message}")
        self.method = method


class DecodeFailure(AuditError):
    """A payload did not match what the decoder expects for its kind."""


class UnrecognizedInstruction(AuditError):
    def __init__(self, kind: str, signature: str, slot: int):
        super().__init__(f"unrecognized token instruction '{kind}' in {signature} (slot {slot})")
        self.kind = kind
        self.signature = signature
        self.slot = slot


class InsufficientFunds(AuditError):
    def __init__(self, payer: str, balance: int, fee: int):
        super().__init__(f"fee payer ({payer}) insufficient funds: balance {balance} < fee {fee} lamports")
        self.payer = payer
        self.balance = balance
        self.fee = fee
