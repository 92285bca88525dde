"""
Token ledger for AI feature credits.

Manages per-shop token accounting with:
- Atomic debit (conditional UPDATE, never drives balance negative)
- Credits from purchases and included plan budgets
- Compensating refunds for debits whose job never ran
- Append-only history with balance_after snapshots

Every mutation accepts an outer session so callers can commit it together
with other writes (the job enqueue commits claim + debit as one unit).
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from backend.core.database import session_scope, shops, token_balances, token_ledger
from backend.core.errors import InsufficientFundsError, NotFoundError, ValidationError
from backend.core.timeutils import iso
from backend.models.token_balance import TokenBalance

logger = logging.getLogger("aiseo")

CREDIT = "credit"
DEBIT = "debit"
REFUND = "refund"


def _require_positive(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Token amount must be a positive integer", code="invalid_amount")
    return amount


def _read_balance(session: Session, shop: str) -> TokenBalance:
    row = session.execute(
        select(
            token_balances.c.balance,
            token_balances.c.total_purchased,
            token_balances.c.total_used,
        ).where(token_balances.c.shop == shop)
    ).fetchone()
    if not row:
        return TokenBalance(shop=shop)
    return TokenBalance(
        shop=shop,
        balance=row.balance,
        total_purchased=row.total_purchased,
        total_used=row.total_used,
    )


def _append_entry(
    session: Session,
    shop: str,
    event_type: str,
    reason: str,
    amount: int,
    balance_after: int,
    reference: Optional[str],
    metadata: Optional[Dict],
) -> None:
    session.execute(
        insert(token_ledger).values(
            shop=shop,
            event_type=event_type,
            reason=reason,
            amount=amount,
            balance_after=balance_after,
            reference=reference,
            metadata=metadata or {},
        )
    )


def ensure_balance_row(session: Session, shop: str) -> None:
    """Create the zero balance row for an installed shop if missing."""
    exists = session.execute(
        select(token_balances.c.shop).where(token_balances.c.shop == shop)
    ).fetchone()
    if not exists:
        session.execute(insert(token_balances).values(shop=shop, balance=0, total_purchased=0, total_used=0))


def get_balance(shop: str, *, session: Optional[Session] = None) -> TokenBalance:
    """Read-only; unseeded shops report zeros."""
    with session_scope(session) as db:
        return _read_balance(db, shop)


def balance(shop: str) -> Dict[str, int]:
    return get_balance(shop).to_public()


def credit(
    shop: str,
    amount: int,
    *,
    reason: str = "purchase",
    reference: Optional[str] = None,
    metadata: Optional[Dict] = None,
    session: Optional[Session] = None,
) -> TokenBalance:
    """Add purchased (or plan-included) tokens.

    Idempotent per reference: a second credit with the same reference is a
    no-op that returns the current balance.

    Raises:
        ValidationError: amount is not a positive integer
        NotFoundError: shop is not installed
    """
    amount = _require_positive(amount)
    with session_scope(session) as db:
        if not db.execute(select(shops.c.shop).where(shops.c.shop == shop)).fetchone():
            raise NotFoundError(f"Shop not installed: {shop}", code="shop_not_found")

        if reference is not None:
            duplicate = db.execute(
                select(token_ledger.c.id).where(
                    token_ledger.c.shop == shop,
                    token_ledger.c.event_type == CREDIT,
                    token_ledger.c.reference == reference,
                )
            ).fetchone()
            if duplicate:
                logger.info("[ledger] duplicate credit ignored", extra={"shop": shop, "reference": reference})
                return _read_balance(db, shop)

        ensure_balance_row(db, shop)
        db.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop)
            .values(
                balance=token_balances.c.balance + amount,
                total_purchased=token_balances.c.total_purchased + amount,
            )
        )
        current = _read_balance(db, shop)
        _append_entry(db, shop, CREDIT, reason, amount, current.balance, reference, metadata)

    logger.info(
        "[ledger] credit",
        extra={"shop": shop, "amount": amount, "reason": reason, "balance_after": current.balance},
    )
    return current


def debit(
    shop: str,
    amount: int,
    *,
    reason: str = "generation",
    reference: Optional[str] = None,
    metadata: Optional[Dict] = None,
    session: Optional[Session] = None,
) -> TokenBalance:
    """Consume tokens with a single compare-and-set UPDATE.

    Raises:
        ValidationError: amount is not a positive integer
        InsufficientFundsError: balance < amount (nothing is changed)
    """
    amount = _require_positive(amount)
    with session_scope(session) as db:
        result = db.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop, token_balances.c.balance >= amount)
            .values(
                balance=token_balances.c.balance - amount,
                total_used=token_balances.c.total_used + amount,
            )
        )
        if result.rowcount != 1:
            available = _read_balance(db, shop).balance
            logger.info(
                "[ledger] debit rejected",
                extra={"shop": shop, "amount": amount, "available": available},
            )
            raise InsufficientFundsError(shop, required=amount, available=available)

        current = _read_balance(db, shop)
        _append_entry(db, shop, DEBIT, reason, amount, current.balance, reference, metadata)

    logger.info(
        "[ledger] debit",
        extra={"shop": shop, "amount": amount, "reason": reason, "balance_after": current.balance},
    )
    return current


def refund(
    shop: str,
    amount: int,
    *,
    reference: str,
    reason: str = "job_not_dispatched",
    session: Optional[Session] = None,
) -> TokenBalance:
    """Reverse a debit whose job never reached a worker.

    Restores the balance and reduces total_used; total_purchased is untouched.
    """
    amount = _require_positive(amount)
    with session_scope(session) as db:
        already = db.execute(
            select(token_ledger.c.id).where(
                token_ledger.c.shop == shop,
                token_ledger.c.event_type == REFUND,
                token_ledger.c.reference == reference,
            )
        ).fetchone()
        if already:
            return _read_balance(db, shop)

        db.execute(
            update(token_balances)
            .where(token_balances.c.shop == shop)
            .values(
                balance=token_balances.c.balance + amount,
                total_used=token_balances.c.total_used - amount,
            )
        )
        current = _read_balance(db, shop)
        _append_entry(db, shop, REFUND, reason, amount, current.balance, reference, None)

    logger.warning(
        "[ledger] refund",
        extra={"shop": shop, "amount": amount, "reference": reference, "balance_after": current.balance},
    )
    return current


def history(shop: str, limit: int = 50) -> List[Dict]:
    """Newest-first ledger entries."""
    limit = max(1, min(int(limit), 500))
    with session_scope() as db:
        rows = db.execute(
            select(token_ledger)
            .where(token_ledger.c.shop == shop)
            .order_by(token_ledger.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "id": row.id,
            "eventType": row.event_type,
            "reason": row.reason,
            "amount": row.amount,
            "balanceAfter": row.balance_after,
            "reference": row.reference,
            "metadata": row._mapping["metadata"] or {},
            "createdAt": iso(row.created_at),
        }
        for row in rows
    ]
