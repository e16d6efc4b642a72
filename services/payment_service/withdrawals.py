"""Seller withdrawals: balance deduction, Payd payout and result handling."""
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update

from shared.config import Settings
from shared.database import utcnow
from shared.events import WithdrawalCompletedEvent, WithdrawalFailedEvent, WithdrawalRequestedEvent
from shared.locking import LockManager
from shared.outbox import save_event_to_outbox

from .adapters import Outcome, ProviderResult
from .errors import NotFoundError, ProviderError, ProviderTransportError, ValidationError
from .ledger import SellerLedger, to_money
from .models import LedgerEntryKind, ReasonCode, WithdrawalRequest, WithdrawalStatus
from .provider import PaydClient, normalize_payout_number
from .settlement import SettlementStatus

logger = logging.getLogger(__name__)


@dataclass
class PayoutOutcome:
    status: SettlementStatus
    request: Optional[WithdrawalRequest] = None


class WithdrawalService:
    """Moves seller balance out to M-Pesa."""

    def __init__(
        self,
        session_factory,
        locks: LockManager,
        ledger: SellerLedger,
        provider: PaydClient,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.ledger = ledger
        self.provider = provider
        self.settings = settings

    def validate_amount(self, amount) -> Decimal:
        amount = to_money(amount)
        if amount < self.settings.min_withdrawal_amount:
            raise ValidationError(f"Minimum withdrawal is KES {self.settings.min_withdrawal_amount}")
        if amount > self.settings.max_withdrawal_amount:
            raise ValidationError(f"Maximum withdrawal is KES {self.settings.max_withdrawal_amount}")
        return amount

    async def request_withdrawal(
        self,
        seller_id: UUID,
        amount: Decimal,
        mpesa_number: str,
        mpesa_name: str,
    ) -> WithdrawalRequest:
        """
        Deduct the balance and record a ``processing`` request atomically.

        The payout itself is sent by ``dispatch_payout`` after this commits.

        Raises:
            ValidationError: Bad amount, number or name
            NotFoundError: Unknown seller
            InsufficientBalanceError: Balance lower than the amount
        """
        amount = self.validate_amount(amount)
        mpesa_number = normalize_payout_number(mpesa_number)
        if not mpesa_name or not mpesa_name.strip():
            raise ValidationError("M-Pesa registered name is required")

        async with self.session_factory() as session:
            async with AsyncExitStack() as stack:
                await stack.enter_async_context(self.ledger.hold(session, seller_id))
                seller = await self.ledger.lock_seller(session, seller_id)

                request = WithdrawalRequest(
                    seller_id=seller.id,
                    amount=amount,
                    mpesa_number=mpesa_number,
                    mpesa_name=mpesa_name.strip(),
                    status=WithdrawalStatus.PROCESSING.value,
                )
                session.add(request)
                await session.flush()

                await self.ledger.debit(
                    session, seller, amount, LedgerEntryKind.WITHDRAWAL_DEBIT, reference=f"WDR-{request.id}"
                )
                await save_event_to_outbox(
                    session,
                    WithdrawalRequestedEvent(
                        aggregate_id=request.id,
                        correlation_id=f"WDR-{request.id}",
                        withdrawal_id=request.id,
                        seller_id=seller.id,
                        amount=amount,
                        mpesa_number=mpesa_number,
                    ),
                )
                await session.commit()

        logger.info(f"Withdrawal {request.id} created: deducted KES {amount} from seller {seller_id}")
        return request

    async def dispatch_payout(self, request_id: UUID) -> Optional[WithdrawalRequest]:
        """
        Send a committed request to Payd.

        On acceptance the ``correlator_id`` is stored; on any provider error
        the request fails and the deduction is reversed.
        """
        async with self.session_factory() as session:
            request = await session.get(WithdrawalRequest, request_id)
        if request is None:
            raise NotFoundError(f"Withdrawal {request_id} not found")
        if request.status != WithdrawalStatus.PROCESSING.value or request.provider_reference:
            logger.info(f"Withdrawal {request_id} already dispatched ({request.status})")
            return request

        try:
            reference = await self.provider.initiate_payout(
                amount=to_money(request.amount),
                mpesa_number=request.mpesa_number,
                narration=f"Withdrawal for {request.mpesa_name}",
            )
        except ProviderError as e:
            reason = (
                ReasonCode.PROVIDER_UNREACHABLE
                if isinstance(e, ProviderTransportError)
                else ReasonCode.PROVIDER_REJECTED
            )
            logger.error(f"Payd payout failed for withdrawal {request_id}: {e.message}")
            outcome = await self.resolve(request_id, Outcome.FAILED, reason, failure_reason=e.message)
            return outcome.request

        if reference:
            async with self.session_factory() as session:
                await session.execute(
                    update(WithdrawalRequest)
                    .where(WithdrawalRequest.id == request_id, WithdrawalRequest.provider_reference.is_(None))
                    .values(provider_reference=reference)
                )
                await session.commit()
            request.provider_reference = reference
            logger.info(f"Withdrawal {request_id} -> Payd correlator_id {reference}")
        return request

    async def apply_payout_result(self, result: ProviderResult) -> PayoutOutcome:
        """Apply a payout callback, correlated by provider reference only."""
        if not result.is_terminal:
            logger.info(f"Ignoring non-terminal payout status {result.status} for {result.reference}")
            return PayoutOutcome(SettlementStatus.IGNORED)

        async with self.session_factory() as session:
            found = await session.execute(
                select(WithdrawalRequest.id).where(WithdrawalRequest.provider_reference == result.reference)
            )
            request_id = found.scalar_one_or_none()

        if request_id is None:
            logger.warning(f"No withdrawal matches payout reference {result.reference}")
            return PayoutOutcome(SettlementStatus.NOT_FOUND)

        outcome = Outcome.SUCCEEDED if result.outcome is Outcome.SUCCEEDED else Outcome.FAILED
        return await self.resolve(
            request_id,
            outcome,
            ReasonCode.PROVIDER_CALLBACK,
            failure_reason=result.failure_reason,
            provider_payload=result.raw,
        )

    async def resolve(
        self,
        request_id: UUID,
        outcome: Outcome,
        reason: ReasonCode,
        failure_reason: Optional[str] = None,
        provider_payload: Optional[dict] = None,
    ) -> PayoutOutcome:
        """
        Move a ``processing`` request to completed or failed, once.

        A failure credits the amount back under the seller lock, taken after
        the withdrawal lock.
        """
        async with self.session_factory() as session:
            async with AsyncExitStack() as stack:
                await stack.enter_async_context(self.locks.hold(session, "withdrawal", request_id))
                result = await session.execute(
                    select(WithdrawalRequest)
                    .where(WithdrawalRequest.id == request_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                request = result.scalar_one_or_none()
                if request is None:
                    return PayoutOutcome(SettlementStatus.NOT_FOUND)

                if request.status != WithdrawalStatus.PROCESSING.value:
                    logger.info(f"Withdrawal {request_id} already {request.status}; ignoring {outcome.value}")
                    return PayoutOutcome(SettlementStatus.ALREADY_TERMINAL, request)

                metadata = dict(request.request_metadata or {})
                metadata["resolution"] = {"reason": reason.value, "provider_payload": provider_payload}
                request.request_metadata = metadata
                request.resolution_reason = reason.value
                request.processed_at = utcnow()

                if outcome is Outcome.SUCCEEDED:
                    request.status = WithdrawalStatus.COMPLETED.value
                    event = WithdrawalCompletedEvent(
                        aggregate_id=request.id,
                        correlation_id=f"WDR-{request.id}",
                        withdrawal_id=request.id,
                        seller_id=request.seller_id,
                        amount=to_money(request.amount),
                        mpesa_number=request.mpesa_number,
                    )
                else:
                    request.status = WithdrawalStatus.FAILED.value
                    request.failure_reason = failure_reason or "Unknown provider error"

                    await stack.enter_async_context(self.ledger.hold(session, request.seller_id))
                    seller = await self.ledger.lock_seller(session, request.seller_id)
                    await self.ledger.credit(
                        session,
                        seller,
                        request.amount,
                        LedgerEntryKind.WITHDRAWAL_REVERSAL,
                        reference=f"WDR-{request.id}",
                    )
                    event = WithdrawalFailedEvent(
                        aggregate_id=request.id,
                        correlation_id=f"WDR-{request.id}",
                        withdrawal_id=request.id,
                        seller_id=request.seller_id,
                        amount=to_money(request.amount),
                        mpesa_number=request.mpesa_number,
                        reason=request.failure_reason,
                        new_balance=to_money(seller.balance),
                    )

                await save_event_to_outbox(session, event)
                await session.commit()

        logger.info(f"Withdrawal {request_id} -> {request.status} ({reason.value})")
        return PayoutOutcome(SettlementStatus.APPLIED, request)

    async def flag_for_review(self, request_id: UUID, note: str) -> bool:
        """Mark a stuck request for manual review once; no money moves."""
        async with self.session_factory() as session:
            async with self.locks.hold(session, "withdrawal", request_id):
                request = await session.get(WithdrawalRequest, request_id, with_for_update=True, populate_existing=True)
                if request is None or request.status != WithdrawalStatus.PROCESSING.value:
                    return False

                metadata = dict(request.request_metadata or {})
                if metadata.get("needs_manual_review"):
                    return False

                metadata["needs_manual_review"] = True
                metadata["flagged_at"] = utcnow().isoformat()
                metadata["review_note"] = note
                request.request_metadata = metadata
                request.resolution_reason = ReasonCode.NEEDS_MANUAL_REVIEW.value
                await session.commit()

        logger.warning(f"Withdrawal {request_id} flagged for manual review: {note}")
        return True

    async def list_withdrawals(self, seller_id: UUID, limit: int = 50) -> List[WithdrawalRequest]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WithdrawalRequest)
                .where(WithdrawalRequest.seller_id == seller_id)
                .order_by(WithdrawalRequest.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
