"""Basal Pay wallet API client."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from p2p_settlement.exceptions import SettlementError, TransientNetworkError
from p2p_settlement.settlement.base import FeeBreakdown, SettlementGateway, TransferRecord, TransferRequest

logger = logging.getLogger("p2p_settlement.settlement")

DEFAULT_API_URL = "https://sandbox-api.basalpay.com/api/v1"


class BasalPayGateway(SettlementGateway):
    """
    Client for the Basal Pay wallet API.

    Every response is wrapped as ``{"success": bool, "data": ...}``; a false
    success flag is treated as a failure of the call.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
        )

    @property
    def name(self) -> str:
        return "basal_pay"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Basal Pay timeout on {path}") from e
        except httpx.HTTPStatusError as e:
            raise SettlementError(f"Basal Pay error {e.response.status_code} on {path}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Basal Pay connection error on {path}: {e}") from e
        except ValueError as e:
            raise SettlementError(f"Invalid response from Basal Pay on {path}") from e

        if not isinstance(body, dict) or not body.get("success"):
            raise SettlementError(f"Basal Pay call {method} {path} was not successful")
        return body.get("data")

    async def lookup_user_by_email(self, email: str) -> Optional[str]:
        try:
            data = await self._request("GET", f"/user/email/{email}")
        except SettlementError as e:
            logger.warning("Wallet user lookup for %s failed: %s", email, e)
            return None
        if not data or not isinstance(data, dict):
            return None
        return data.get("id")

    async def get_balance(self) -> Decimal:
        data = await self._request("GET", "/wallet/balance/usdt")
        try:
            return Decimal(str(data["balance"]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise SettlementError(f"Invalid balance payload: {data!r}") from e

    async def calculate_fee(self, amount: Decimal, transaction_type: str = "disbursement") -> FeeBreakdown:
        data = await self._request(
            "POST", "/wallet/fee", {"amount": str(amount), "transactionType": transaction_type}
        )
        try:
            return FeeBreakdown(
                system_fee=Decimal(str(data["disbursement_system"]["amount"])),
                platform_fee=Decimal(str(data["platform_fee"]["amount"])),
            )
        except (KeyError, TypeError, InvalidOperation) as e:
            raise SettlementError(f"Invalid fee payload: {data!r}") from e

    async def transfer(self, request: TransferRequest) -> TransferRecord:
        data = await self._request(
            "POST",
            "/wallet/transfer",
            {
                "toUserId": request.to_user_id,
                "amount": str(request.amount),
                "currencyId": request.currency_id,
                "memo": request.memo,
                "fundPassword": request.fund_password,
            },
        )
        if not isinstance(data, dict) or not data.get("id"):
            raise SettlementError(f"Transfer response carries no id: {data!r}")
        return TransferRecord(
            id=data["id"],
            status=data.get("status", "unknown"),
            amount=data.get("amount"),
            currency_id=data.get("currencyId"),
        )

    async def get_transaction_status(self, transaction_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/wallet/transaction/{transaction_id}/status")
        return data if isinstance(data, dict) else {"status": data}
