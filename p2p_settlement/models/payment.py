"""
Domain records: payment requests, bank transactions and account balances.

PaymentRequest is persisted as a flat string hash in the shared ledger. The
hash field names are the ones the intake (chat) flow writes, so they stay in
camelCase here; ``to_hash``/``from_hash`` translate to and from the Python
attributes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from p2p_settlement.exceptions import ValidationError
from p2p_settlement.models.enums import PaymentStatus

BANK_DATETIME_FORMAT = "%d/%m/%Y %H:%M:%S"

# attribute -> ledger hash field
HASH_FIELDS = {
    "user_id": "userId",
    "email": "email",
    "amount_usdt": "amountUSDT",
    "amount_vnd": "amountVND",
    "rate": "rate",
    "memo": "memo",
    "status": "status",
    "created_at": "createdAt",
    "expires_at": "expiresAt",
    "transaction_ref": "transactionRef",
    "transaction_date": "transactionDate",
    "recipient_id": "recipientUserId",
    "settlement_id": "usdtTransactionId",
    "settlement_status": "usdtTransactionStatus",
    "error": "error",
}

REQUIRED_HASH_FIELDS = ("amountUSDT", "amountVND", "memo", "status", "expiresAt")


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: str | int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentRequest:
    """A request to collect VND by bank transfer and settle it as USDT."""

    id: str
    user_id: str
    email: str
    amount_usdt: Decimal
    amount_vnd: int
    rate: Decimal
    memo: str
    status: PaymentStatus
    created_at: datetime
    expires_at: datetime
    transaction_ref: Optional[str] = None
    transaction_date: Optional[str] = None
    recipient_id: Optional[str] = None
    settlement_id: Optional[str] = None
    settlement_status: Optional[str] = None
    error: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_hash(self) -> dict[str, str]:
        """Serialize to ledger hash fields; unset optional fields are omitted."""
        data = {
            "userId": self.user_id,
            "email": self.email,
            "amountUSDT": str(self.amount_usdt),
            "amountVND": str(self.amount_vnd),
            "rate": str(self.rate),
            "memo": self.memo,
            "status": self.status.value,
            "createdAt": str(to_epoch_ms(self.created_at)),
            "expiresAt": str(to_epoch_ms(self.expires_at)),
        }
        for attr in ("transaction_ref", "transaction_date", "recipient_id",
                     "settlement_id", "settlement_status", "error"):
            value = getattr(self, attr)
            if value is not None:
                data[HASH_FIELDS[attr]] = value
        return data

    @classmethod
    def from_hash(cls, payment_id: str, data: dict[str, str]) -> "PaymentRequest":
        """
        Build a PaymentRequest from a ledger hash.

        Raises:
            ValidationError: If a required field is missing or unparseable.
        """
        missing = [f for f in REQUIRED_HASH_FIELDS if not data.get(f)]
        if missing:
            raise ValidationError(
                f"Payment {payment_id} is missing required fields: {', '.join(missing)}"
            )

        try:
            amount_vnd = int(data["amountVND"])
            amount_usdt = Decimal(data["amountUSDT"])
            rate = Decimal(data.get("rate") or "0")
            status = PaymentStatus(data["status"])
            expires_at = from_epoch_ms(data["expiresAt"])
            created_at = from_epoch_ms(data.get("createdAt") or 0)
        except (ValueError, InvalidOperation) as e:
            raise ValidationError(f"Payment {payment_id} has malformed fields: {e}") from e

        if amount_vnd < 0:
            raise ValidationError(f"Invalid VND amount for payment {payment_id}: {amount_vnd}")

        return cls(
            id=payment_id,
            user_id=data.get("userId", ""),
            email=data.get("email", ""),
            amount_usdt=amount_usdt,
            amount_vnd=amount_vnd,
            rate=rate,
            memo=data["memo"],
            status=status,
            created_at=created_at,
            expires_at=expires_at,
            transaction_ref=data.get("transactionRef"),
            transaction_date=data.get("transactionDate"),
            # The intake flow caches the wallet user id as basalPayUserId
            recipient_id=data.get("recipientUserId") or data.get("basalPayUserId"),
            settlement_id=data.get("usdtTransactionId"),
            settlement_status=data.get("usdtTransactionStatus"),
            error=data.get("error"),
        )


def parse_amount(value) -> Decimal:
    if value in (None, ""):
        return Decimal(0)
    try:
        return Decimal(str(value).replace(",", ""))
    except InvalidOperation:
        return Decimal(0)


@dataclass
class BankTransactionRecord:
    """One entry of the bank's transaction history, in canonical shape."""

    post_date: Optional[str]
    transaction_date: Optional[str]
    account_number: Optional[str]
    credit_amount: Decimal
    debit_amount: Decimal
    currency: Optional[str]
    description: str
    available_balance: Optional[Decimal]
    ref_no: Optional[str]
    counterparty_name: Optional[str] = None
    counterparty_bank: Optional[str] = None
    counterparty_account: Optional[str] = None
    transaction_type: Optional[str] = None

    @classmethod
    def from_api(cls, raw: dict) -> "BankTransactionRecord":
        return cls(
            post_date=raw.get("postingDate"),
            transaction_date=raw.get("transactionDate"),
            account_number=raw.get("accountNo"),
            credit_amount=parse_amount(raw.get("creditAmount")),
            debit_amount=parse_amount(raw.get("debitAmount")),
            currency=raw.get("currency"),
            description=raw.get("description") or "",
            available_balance=parse_amount(raw.get("availableBalance")) if raw.get("availableBalance") else None,
            ref_no=raw.get("refNo"),
            counterparty_name=raw.get("benAccountName"),
            counterparty_bank=raw.get("bankName"),
            counterparty_account=raw.get("benAccountNo"),
            transaction_type=raw.get("transactionType"),
        )

    @property
    def is_credit(self) -> bool:
        return self.credit_amount > 0

    @property
    def transaction_datetime(self) -> Optional[datetime]:
        """Parsed transaction date (bank local time), or None if unparseable."""
        if not self.transaction_date:
            return None
        try:
            return datetime.strptime(self.transaction_date, BANK_DATETIME_FORMAT)
        except ValueError:
            return None


@dataclass
class AccountBalance:
    """A bank account as listed by the balance endpoint."""

    number: str
    name: str
    currency: str
    balance: Decimal = field(default_factory=Decimal)
