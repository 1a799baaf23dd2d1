"""Credit ledger and usage accounting helpers."""

from __future__ import annotations

from typing import Any, Dict, Optional
import uuid

from fastapi import HTTPException
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.user import UserProfile


TRANSACTION_PURCHASE = "purchase"
TRANSACTION_ANALYSIS = "analysis_consumption"
TRANSACTION_ADMIN_ADJUSTMENT = "admin_adjustment"
TRANSACTION_REFUND = "refund"
TRANSACTION_TYPES = (
    TRANSACTION_PURCHASE,
    TRANSACTION_ANALYSIS,
    TRANSACTION_ADMIN_ADJUSTMENT,
    TRANSACTION_REFUND,
)


class InsufficientCreditsError(HTTPException):
    def __init__(self, required: int, available: int):
        super().__init__(
            status_code=402,
            detail={
                "reason": "insufficient_credits",
                "message": (
                    f"Insufficient credits. Required: {required}, available: {available}. "
                    "Buy a credit bundle to continue."
                ),
                "required": required,
                "available": available,
            },
        )
        self.required = required
        self.available = available


def analysis_cost() -> int:
    return max(int(settings.CREDIT_COST_ANALYSIS), 1)


async def ensure_user_profile(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
) -> UserProfile:
    result = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
    profile = result.scalar_one_or_none()
    if profile:
        if email and not profile.email:
            profile.email = email
        return profile

    profile = UserProfile(id=user_id, email=email, credits=0, total_credits_purchased=0, role="user")
    db.add(profile)
    await db.flush()
    return profile


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(UserProfile.credits).where(UserProfile.id == user_id))
    balance = result.scalar_one_or_none()
    return int(balance or 0)


async def ledger_sum(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def apply_credit_delta(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    transaction_type: str,
    payment_id: Optional[str] = None,
    analysis_id: Optional[str] = None,
    description: Optional[str] = None,
) -> CreditTransaction:
    """Move the cached balance and append the matching ledger row.

    The balance changes through one conditional UPDATE so concurrent grants
    and debits serialize in the database. Nothing is committed here; the
    caller owns the transaction so the ledger row and the balance land
    together or not at all.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown credit transaction type: {transaction_type}")
    delta = int(delta)
    if delta == 0:
        raise HTTPException(status_code=422, detail="Credit amount must be non-zero.")

    values: Dict[str, Any] = {"credits": UserProfile.credits + delta}
    if transaction_type == TRANSACTION_PURCHASE and delta > 0:
        values["total_credits_purchased"] = UserProfile.total_credits_purchased + delta

    result = await db.execute(
        update(UserProfile)
        .where(UserProfile.id == user_id, UserProfile.credits + delta >= 0)
        .values(**values)
        .returning(UserProfile.credits)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        current = await db.execute(select(UserProfile.credits).where(UserProfile.id == user_id))
        available = current.scalar_one_or_none()
        if available is None:
            raise HTTPException(status_code=404, detail="User profile not found.")
        raise InsufficientCreditsError(required=-delta, available=int(available))

    entry = CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        amount=delta,
        transaction_type=transaction_type,
        payment_id=payment_id,
        analysis_id=analysis_id,
        description=description,
        balance_after=int(row[0]),
    )
    db.add(entry)
    await db.flush()
    return entry


async def add_credits(
    user_id: str,
    db: AsyncSession,
    amount: int,
    *,
    transaction_type: str = TRANSACTION_PURCHASE,
    payment_id: Optional[str] = None,
    description: Optional[str] = None,
    commit: bool = True,
) -> int:
    grant = int(amount)
    if grant <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    entry = await apply_credit_delta(
        user_id,
        db,
        delta=grant,
        transaction_type=transaction_type,
        payment_id=payment_id,
        description=description or "Credit purchase",
    )
    if commit:
        await db.commit()
    return entry.balance_after


async def _existing_analysis_charge(user_id: str, analysis_id: str, db: AsyncSession) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.analysis_id == analysis_id,
            CreditTransaction.transaction_type == TRANSACTION_ANALYSIS,
        )
    )
    return result.scalar_one_or_none()


async def consume_credit(
    user_id: str,
    db: AsyncSession,
    amount: Optional[int] = None,
    *,
    analysis_id: Optional[str] = None,
    description: Optional[str] = None,
) -> int:
    debit = analysis_cost() if amount is None else int(amount)
    if debit <= 0:
        raise HTTPException(status_code=422, detail="amount must be greater than 0")

    if analysis_id and await _existing_analysis_charge(user_id, analysis_id, db):
        return await get_credit_balance(user_id, db)

    try:
        entry = await apply_credit_delta(
            user_id,
            db,
            delta=-debit,
            transaction_type=TRANSACTION_ANALYSIS,
            analysis_id=analysis_id,
            description=description or "CV analysis",
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        # Same analysis charged concurrently for this user; the other request won.
        if analysis_id and await _existing_analysis_charge(user_id, analysis_id, db):
            return await get_credit_balance(user_id, db)
        raise
    except HTTPException:
        await db.rollback()
        raise
    return entry.balance_after


async def has_credits(user_id: str, db: AsyncSession, required: Optional[int] = None) -> bool:
    needed = analysis_cost() if required is None else max(int(required), 0)
    return await get_credit_balance(user_id, db) >= needed


async def adjust_credits(
    user_id: str,
    db: AsyncSession,
    delta: int,
    *,
    transaction_type: str = TRANSACTION_ADMIN_ADJUSTMENT,
    payment_id: Optional[str] = None,
    description: Optional[str] = None,
) -> int:
    if transaction_type not in (TRANSACTION_ADMIN_ADJUSTMENT, TRANSACTION_REFUND):
        raise HTTPException(status_code=422, detail="Only admin_adjustment and refund can be applied manually.")
    try:
        entry = await apply_credit_delta(
            user_id,
            db,
            delta=delta,
            transaction_type=transaction_type,
            payment_id=payment_id,
            description=description,
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(status_code=409, detail="This payment already has a matching ledger entry.") from exc
    except HTTPException:
        await db.rollback()
        raise
    return entry.balance_after


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    profile = await ensure_user_profile(user_id, db)
    await db.commit()
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": int(profile.credits or 0),
        "total_credits_purchased": int(profile.total_credits_purchased or 0),
        "costs": {"analysis": analysis_cost()},
        "recent_entries": [
            {
                "id": entry.id,
                "transaction_type": entry.transaction_type,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "payment_id": entry.payment_id,
                "analysis_id": entry.analysis_id,
                "description": entry.description,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
