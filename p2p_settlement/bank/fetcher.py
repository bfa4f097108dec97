"""Balance and transaction history retrieval on top of BankSessionClient."""

import logging
from datetime import datetime
from typing import Optional

from p2p_settlement.bank.client import BankSessionClient
from p2p_settlement.exceptions import ValidationError
from p2p_settlement.models.payment import AccountBalance, BankTransactionRecord, parse_amount

logger = logging.getLogger("p2p_settlement.fetcher")

BALANCE_PATH = "/api/retail-web-accountms/getBalance"
HISTORY_PATH = "/api/retail-transactionms/transactionms/get-account-transaction-history"

MAX_HISTORY_DAYS = 90
REQUEST_DATE_FORMAT = "%d/%m/%Y"


def _whole_days(a: datetime, b: datetime) -> int:
    """Whole days from b to a, truncated toward zero (sign preserved)."""
    seconds = (a - b).total_seconds()
    days = int(abs(seconds) // 86400)
    return days if seconds >= 0 else -days


def validate_history_range(from_date: datetime, to_date: datetime, now: Optional[datetime] = None) -> None:
    """
    Reject ranges the bank will not serve.

    Neither boundary may be more than 90 days away from now, and the
    boundaries may not be more than 90 days apart, in either direction.

    Raises:
        ValidationError: On any of the four violations.
    """
    now = now or datetime.now(from_date.tzinfo)
    checks = (
        _whole_days(now, from_date),
        _whole_days(now, to_date),
        _whole_days(from_date, to_date),
        _whole_days(to_date, from_date),
    )
    if any(abs(days) > MAX_HISTORY_DAYS for days in checks):
        raise ValidationError(
            f"Date range error: transaction history is limited to {MAX_HISTORY_DAYS} days "
            f"(from={from_date:%d/%m/%Y}, to={to_date:%d/%m/%Y})"
        )


class TransactionFetcher:
    """Reads balances and transaction history for the logged-in customer."""

    def __init__(self, client: BankSessionClient):
        self.client = client

    async def get_balance(self) -> Optional[list[AccountBalance]]:
        """
        Domestic accounts followed by international accounts.

        Returns:
            The unified account list, or None if the call produced no data.
        """
        data = await self.client.authenticated_request(BALANCE_PATH)
        if not data:
            return None

        balances = []
        for acct in (data.get("acct_list") or []) + (data.get("internationalAcctList") or []):
            balances.append(
                AccountBalance(
                    number=acct.get("acctNo", ""),
                    name=acct.get("acctNm", ""),
                    currency=acct.get("ccyCd", ""),
                    balance=parse_amount(acct.get("currentBalance")),
                )
            )
        return balances

    async def get_history(
        self,
        account_number: str,
        from_date: datetime,
        to_date: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[list[BankTransactionRecord]]:
        """
        Transaction history for one account.

        Raises:
            ValidationError: If the date range is out of bounds.
        """
        validate_history_range(from_date, to_date, now)

        data = await self.client.authenticated_request(
            HISTORY_PATH,
            {
                "accountNo": account_number,
                "fromDate": from_date.strftime(REQUEST_DATE_FORMAT),
                "toDate": to_date.strftime(REQUEST_DATE_FORMAT),
            },
        )
        if not data or data.get("transactionHistoryList") is None:
            return None

        return [BankTransactionRecord.from_api(raw) for raw in data["transactionHistoryList"]]

