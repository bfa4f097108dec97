from p2p_settlement.models.audit import AuditLog, Base, CycleRun
from p2p_settlement.models.enums import CycleStatus, PaymentOutcome, PaymentStatus
from p2p_settlement.models.payment import AccountBalance, BankTransactionRecord, PaymentRequest

__all__ = [
    "Base",
    "CycleRun",
    "AuditLog",
    "PaymentStatus",
    "CycleStatus",
    "PaymentOutcome",
    "PaymentRequest",
    "BankTransactionRecord",
    "AccountBalance",
]
