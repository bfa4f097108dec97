from p2p_settlement.settlement.base import FeeBreakdown, SettlementGateway, TransferRecord, TransferRequest
from p2p_settlement.settlement.basal_pay import BasalPayGateway
from p2p_settlement.settlement.mock_provider import MockSettlementGateway

__all__ = [
    "SettlementGateway",
    "TransferRequest",
    "TransferRecord",
    "FeeBreakdown",
    "BasalPayGateway",
    "MockSettlementGateway",
]
