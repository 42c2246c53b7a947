from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.errors import TicketingError, TransitionConflict
from app.models.transaction import Transaction, TransactionStatus
from app.services.points import PointsLedger
from app.services.transactions import TransactionService

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    cancelled: int = 0
    skipped: int = 0
    failed: int = 0
    points_expired: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.cancelled

    def to_dict(self) -> dict:
        return {**asdict(self), "total": self.total}


class ReconciliationSweeper:
    """
    Drives transactions that outlived their deadlines through the failure
    transitions. Each transaction gets its own session and atomic unit, so
    one failure is logged and left for the next run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
        *,
        confirmation_timeout: timedelta | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.confirmation_timeout = confirmation_timeout or timedelta(days=settings.CONFIRMATION_TIMEOUT_DAYS)

    async def _candidates(self) -> tuple[list[str], list[str]]:
        now = self.clock()
        async with self.session_factory() as db:
            res = await db.execute(
                select(Transaction.id)
                .where(
                    Transaction.status == TransactionStatus.WAITING_PAYMENT,
                    Transaction.payment_deadline < now,
                )
                .order_by(Transaction.payment_deadline)
            )
            overdue_payment = list(res.scalars().all())

            res = await db.execute(
                select(Transaction.id)
                .where(
                    Transaction.status == TransactionStatus.WAITING_CONFIRMATION,
                    Transaction.updated_at < now - self.confirmation_timeout,
                )
                .order_by(Transaction.updated_at)
            )
            overdue_confirmation = list(res.scalars().all())

        return overdue_payment, overdue_confirmation

    async def _process(self, transaction_id: str, target: TransactionStatus, report: SweepReport) -> None:
        async with self.session_factory() as db:
            svc = TransactionService(db, self.clock, confirmation_timeout=self.confirmation_timeout)
            try:
                txn = await svc.load(transaction_id)
                if target == TransactionStatus.EXPIRED:
                    if not svc.is_payment_overdue(txn):
                        report.skipped += 1
                        return
                    await svc.expire(txn, source="sweeper")
                    report.expired += 1
                else:
                    if not svc.is_confirmation_overdue(txn):
                        report.skipped += 1
                        return
                    await svc.cancel_unconfirmed(txn, source="sweeper")
                    report.cancelled += 1
            except TransitionConflict:
                logger.info("Transaction %s already moved on; skipping", transaction_id)
                report.skipped += 1
            except (TicketingError, SQLAlchemyError):
                logger.exception("Failed to move transaction %s to %s", transaction_id, target.value)
                report.failed += 1

    async def run(self, *, include_points: bool = True) -> SweepReport:
        report = SweepReport()
        overdue_payment, overdue_confirmation = await self._candidates()

        for txn_id in overdue_payment:
            await self._process(txn_id, TransactionStatus.EXPIRED, report)
        for txn_id in overdue_confirmation:
            await self._process(txn_id, TransactionStatus.CANCELLED, report)

        if include_points:
            async with self.session_factory() as db:
                report.points_expired = await PointsLedger(db, self.clock).expire_sweep()

        logger.info(
            "Reconciliation done: expired=%d cancelled=%d skipped=%d failed=%d points_expired=%d",
            report.expired, report.cancelled, report.skipped, report.failed, report.points_expired,
        )
        return report
