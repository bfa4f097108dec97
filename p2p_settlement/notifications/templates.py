"""Message templates for user and operator notifications."""

from decimal import Decimal

from p2p_settlement.models.payment import PaymentRequest


def format_vnd(amount: int | Decimal) -> str:
    """Thousands separated the Vietnamese way: 260100 -> 260.100."""
    return f"{int(amount):,}".replace(",", ".")


def payment_confirmed(payment: PaymentRequest, transaction_ref: str) -> str:
    lines = [
        "✅ *Payment Confirmed*",
        "",
        f"Your payment of *{payment.amount_usdt} USDT* has been received and confirmed!",
        "",
        "*Transaction Details:*",
        f"• Reference: {transaction_ref}",
        f"• Amount: {format_vnd(payment.amount_vnd)} VND",
        "• Status: Completed",
    ]
    if payment.settlement_id:
        lines.append(f"• USDT Transfer ID: {payment.settlement_id}")
    lines += ["", "Your USDT has been sent to your Basal Pay wallet.", "", "Thank you for using our service."]
    return "\n".join(lines)


def payment_expired(payment: PaymentRequest) -> str:
    return (
        "⚠️ *Payment Expired*\n\n"
        f"Your payment #{payment.id[:8]} for {payment.amount_usdt} USDT has expired.\n\n"
        "If you still want to make this payment, please start a new payment transaction."
    )


def admin_payment_completed(payment: PaymentRequest, transaction_ref: str) -> str:
    return (
        "💰 Payment confirmed!\n\n"
        f"ID: {payment.id}\n"
        f"Amount: {payment.amount_usdt} USDT ({payment.amount_vnd} VND)\n"
        f"User: {payment.user_id}\n"
        f"Email: {payment.email}\n"
        f"Transaction: {transaction_ref}"
    )


def admin_settlement_failed(payment: PaymentRequest, error: str) -> str:
    return (
        f"❌ Error: Failed to process USDT transfer for payment {payment.id}.\n"
        "VND payment received, but USDT transfer failed. Payment moved to manual review.\n"
        f"Amount: {payment.amount_usdt} USDT\n"
        f"User: {payment.user_id}\n"
        f"Email: {payment.email}\n"
        f"Error: {error}"
    )


def admin_monitor_paused(failures: int, last_error: str) -> str:
    return (
        f"❌ ALERT: Transaction monitoring paused after {failures} consecutive errors. "
        "System needs attention.\n"
        f"Last error: {last_error}"
    )
