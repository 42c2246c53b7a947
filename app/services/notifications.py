from __future__ import annotations

import logging
from typing import Protocol

from app.models.transaction import Transaction, TransactionStatus

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def transaction_status_changed(self, txn: Transaction, previous: TransactionStatus | None) -> None: ...


class LogNotifier:
    """Outbound delivery lives elsewhere; this records what would be sent."""

    async def transaction_status_changed(self, txn: Transaction, previous: TransactionStatus | None) -> None:
        logger.info(
            "Notify user %s: transaction %s %s -> %s",
            txn.user_id,
            txn.id,
            previous.value if previous else "-",
            txn.status.value,
        )
