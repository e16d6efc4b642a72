"""
Reconciliation sweeps for payments and payouts that never got a callback.

Payment sweep (every ``payment_sweep_interval_seconds``): pending payments
older than ``pending_threshold_minutes`` and younger than ``lookback_hours``
are checked against the Payd status API, or failed by policy once older than
``max_pending_minutes``.

Payout sweep (every ``payout_sweep_interval_seconds``): processing
withdrawals older than ``payout_stuck_hours`` are failed and reversed when
Payd never acknowledged them, otherwise flagged for manual review.

Every candidate runs through the same locked transition routine as the
webhooks, in its own session and its own exception boundary.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select

from shared.config import Settings
from shared.database import utcnow

from .adapters import Outcome, ProviderResult
from .errors import ProviderError, StatusQueryUnsupported
from .models import (
    Payment,
    PaymentStatus,
    ReasonCode,
    ResolutionSource,
    WebhookChannel,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .provider import PaydClient
from .settlement import Settlement, SettlementStatus
from .withdrawals import WithdrawalService

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    resolved: int = 0
    timed_out: int = 0
    flagged: int = 0
    waiting: int = 0
    errors: int = 0


class ReconciliationScheduler:
    """Runs both sweeps on timers inside the service process."""

    def __init__(
        self,
        session_factory,
        settlement: Settlement,
        withdrawals: WithdrawalService,
        provider: PaydClient,
        settings: Settings,
        now: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.settlement = settlement
        self.withdrawals = withdrawals
        self.provider = provider
        self.settings = settings
        self.now = now
        self._running = False
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        """Start both sweep loops."""
        if self._running:
            logger.warning("Reconciliation scheduler already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._run_every(self.settings.payment_sweep_interval_seconds, self.sweep_payments, "payment")
            ),
            asyncio.create_task(
                self._run_every(self.settings.payout_sweep_interval_seconds, self.sweep_payouts, "payout")
            ),
        ]
        logger.info(
            f"Reconciliation scheduler started (payments every {self.settings.payment_sweep_interval_seconds}s, "
            f"payouts every {self.settings.payout_sweep_interval_seconds}s)"
        )

    async def stop(self):
        """Stop both sweep loops."""
        if not self._running:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        logger.info("Reconciliation scheduler stopped")

    async def _run_every(self, interval: float, sweep, name: str):
        while self._running:
            await asyncio.sleep(interval)
            try:
                report = await sweep()
                if report.examined:
                    logger.info(f"{name.capitalize()} sweep finished: {asdict(report)}")
            except Exception as e:
                logger.error(f"Error in {name} sweep: {str(e)}", exc_info=True)

    async def sweep_payments(self, now: Optional[datetime] = None) -> SweepReport:
        """Resolve pending payments past the threshold."""
        now = now or self.now()
        report = SweepReport()

        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.created_at <= now - timedelta(minutes=self.settings.pending_threshold_minutes),
                    Payment.created_at >= now - timedelta(hours=self.settings.lookback_hours),
                )
                .order_by(Payment.created_at)
                .limit(self.settings.sweep_batch_size)
            )
            candidates = result.scalars().all()

        if candidates:
            logger.info(f"Reconciling {len(candidates)} pending payment(s)")

        for payment in candidates:
            report.examined += 1
            try:
                action = await self.reconcile_payment(payment, now)
            except Exception as e:
                report.errors += 1
                logger.error(f"Failed to reconcile payment {payment.invoice_id}: {str(e)}", exc_info=True)
                continue

            if action == "resolved":
                report.resolved += 1
            elif action == "timed_out":
                report.timed_out += 1
            elif action == "error":
                report.errors += 1
            else:
                report.waiting += 1

        return report

    async def reconcile_payment(self, payment: Payment, now: Optional[datetime] = None) -> str:
        """
        Reconcile one pending payment.

        Returns:
            ``resolved``, ``timed_out``, ``waiting``, ``error`` or
            ``already_processed`` when a webhook won the race
        """
        now = now or self.now()
        age = now - payment.created_at

        if payment.provider_reference:
            try:
                result = await self.provider.query_payment_status(payment.provider_reference)
            except StatusQueryUnsupported:
                result = None
            except ProviderError as e:
                logger.warning(f"Status query failed for {payment.invoice_id}: {e.message}")
                return "error"

            if result is not None and result.is_terminal:
                outcome = await self.settlement.apply(
                    payment.invoice_id,
                    result,
                    source=ResolutionSource.RECONCILIATION,
                    reason=ReasonCode.PROVIDER_CONFIRMED,
                    by="invoice",
                )
                return "resolved" if outcome.status is SettlementStatus.APPLIED else outcome.status.value

        if age < timedelta(minutes=self.settings.max_pending_minutes):
            return "waiting"

        minutes = int(age.total_seconds() // 60)
        outcome = await self.settlement.apply(
            payment.invoice_id,
            ProviderResult(
                channel=WebhookChannel.PAYMENT,
                reference=payment.invoice_id,
                outcome=Outcome.FAILED,
                failure_reason=f"Payment not confirmed after {minutes} minutes",
            ),
            source=ResolutionSource.RECONCILIATION,
            reason=ReasonCode.POLICY_TIMEOUT,
            by="invoice",
        )
        return "timed_out" if outcome.status is SettlementStatus.APPLIED else outcome.status.value

    async def refresh_payment(self, invoice_id: str) -> Optional[Payment]:
        """Reconcile one payment on demand, regardless of its age."""
        async with self.session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.invoice_id == invoice_id))
            payment = result.scalar_one_or_none()

        if payment is None or payment.is_terminal or not payment.provider_reference:
            return payment

        try:
            result = await self.provider.query_payment_status(payment.provider_reference)
        except ProviderError as e:
            logger.warning(f"Status refresh failed for {invoice_id}: {e.message}")
            return payment

        if not result.is_terminal:
            return payment

        outcome = await self.settlement.apply(
            invoice_id,
            result,
            source=ResolutionSource.RECONCILIATION,
            reason=ReasonCode.PROVIDER_CONFIRMED,
            by="invoice",
        )
        return outcome.payment or payment

    async def sweep_payouts(self, now: Optional[datetime] = None) -> SweepReport:
        """Fail or flag withdrawals stuck in ``processing``."""
        now = now or self.now()
        report = SweepReport()

        async with self.session_factory() as session:
            result = await session.execute(
                select(WithdrawalRequest)
                .where(
                    WithdrawalRequest.status == WithdrawalStatus.PROCESSING.value,
                    WithdrawalRequest.created_at <= now - timedelta(hours=self.settings.payout_stuck_hours),
                    WithdrawalRequest.created_at >= now - timedelta(hours=self.settings.payout_lookback_hours),
                )
                .order_by(WithdrawalRequest.created_at)
                .limit(self.settings.sweep_batch_size)
            )
            candidates = result.scalars().all()

        if candidates:
            logger.info(f"Found {len(candidates)} stuck withdrawal(s)")

        for request in candidates:
            report.examined += 1
            try:
                action = await self.reconcile_payout(request)
            except Exception as e:
                report.errors += 1
                logger.error(f"Failed to reconcile withdrawal {request.id}: {str(e)}", exc_info=True)
                continue

            if action == "resolved":
                report.resolved += 1
            elif action == "timed_out":
                report.timed_out += 1
            elif action == "flagged":
                report.flagged += 1
            elif action == "error":
                report.errors += 1
            else:
                report.waiting += 1

        return report

    async def reconcile_payout(self, request: WithdrawalRequest) -> str:
        if not request.provider_reference:
            logger.warning(f"Withdrawal {request.id} was never acknowledged by Payd; failing and refunding")
            outcome = await self.withdrawals.resolve(
                request.id,
                Outcome.FAILED,
                ReasonCode.POLICY_TIMEOUT,
                failure_reason="Payout was never acknowledged by the provider",
            )
            return "timed_out" if outcome.status is SettlementStatus.APPLIED else outcome.status.value

        try:
            result = await self.provider.query_payout_status(request.provider_reference)
        except StatusQueryUnsupported:
            flagged = await self.withdrawals.flag_for_review(
                request.id,
                f"No callback for payout {request.provider_reference}; confirm with Payd before refunding",
            )
            return "flagged" if flagged else "waiting"
        except ProviderError as e:
            logger.warning(f"Payout status query failed for {request.id}: {e.message}")
            return "error"

        if not result.is_terminal:
            return "waiting"

        outcome = await self.withdrawals.resolve(
            request.id,
            Outcome.SUCCEEDED if result.outcome is Outcome.SUCCEEDED else Outcome.FAILED,
            ReasonCode.PROVIDER_CONFIRMED,
            failure_reason=result.failure_reason,
            provider_payload=result.raw,
        )
        return "resolved" if outcome.status is SettlementStatus.APPLIED else outcome.status.value
