"""Pydantic models for purchase history and hosted-link sessions."""

from src.models.hosted_link import HostedLink, LinkState
from src.models.purchase_history import (
    LinkPollResult,
    OrderDetails,
    PurchaseHistoryRecord,
    PurchaseHistoryResult,
)

__all__ = [
    "HostedLink",
    "LinkState",
    "LinkPollResult",
    "OrderDetails",
    "PurchaseHistoryRecord",
    "PurchaseHistoryResult",
]
