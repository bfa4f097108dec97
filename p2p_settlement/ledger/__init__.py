from p2p_settlement.ledger.base import PaymentLedger, active_payment_key, payment_key
from p2p_settlement.ledger.redis_ledger import RedisPaymentLedger

__all__ = ["PaymentLedger", "RedisPaymentLedger", "payment_key", "active_payment_key"]
