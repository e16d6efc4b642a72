"""Seller balance mutations."""
import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.locking import LockManager

from .errors import InsufficientBalanceError, NotFoundError
from .models import LedgerEntry, LedgerEntryKind, Seller

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


class SellerLedger:
    """
    Every balance change goes through here.

    Callers must already hold any payment, withdrawal or order lock they need;
    the seller lock is always taken last.
    """

    def __init__(self, locks: LockManager):
        self.locks = locks

    def hold(self, session: AsyncSession, seller_id: UUID):
        return self.locks.hold(session, "seller", seller_id)

    async def lock_seller(self, session: AsyncSession, seller_id: UUID) -> Seller:
        """Read the seller row with ``SELECT ... FOR UPDATE``."""
        result = await session.execute(
            select(Seller)
            .where(Seller.id == seller_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        seller = result.scalar_one_or_none()
        if not seller:
            raise NotFoundError(f"Seller {seller_id} not found")
        return seller

    async def credit(
        self,
        session: AsyncSession,
        seller: Seller,
        amount: Decimal,
        kind: LedgerEntryKind,
        reference: str,
    ) -> LedgerEntry:
        return self._apply(session, seller, to_money(amount), kind, reference)

    async def debit(
        self,
        session: AsyncSession,
        seller: Seller,
        amount: Decimal,
        kind: LedgerEntryKind,
        reference: str,
    ) -> LedgerEntry:
        amount = to_money(amount)
        if to_money(seller.balance) < amount:
            raise InsufficientBalanceError(
                f"Insufficient balance: available {to_money(seller.balance)}, requested {amount}"
            )
        return self._apply(session, seller, -amount, kind, reference)

    def _apply(
        self,
        session: AsyncSession,
        seller: Seller,
        delta: Decimal,
        kind: LedgerEntryKind,
        reference: str,
    ) -> LedgerEntry:
        seller.balance = to_money(seller.balance) + delta
        entry = LedgerEntry(
            seller_id=seller.id,
            kind=kind.value,
            amount=delta,
            balance_after=seller.balance,
            reference=reference,
        )
        session.add(entry)

        logger.info(
            f"Seller {seller.id} {kind.value} {delta:+} -> balance {seller.balance} (ref={reference})"
        )
        return entry
