import math
import calendar
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, NamedTuple, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from config import PlanAllowances
from errors import NotFound, PersistenceError
from models import Analysis, CreditReason, CreditTransaction, Plan, User, utcnow

logger = logging.getLogger(__name__)

PAID_PLANS = (Plan.PRO, Plan.ENTERPRISE)
LOW_CREDIT_RATIO = 0.2


class Reservation(NamedTuple):
    granted: bool
    remaining: int
    # credits_reset_at when the debit was taken; a refund is void once it moves
    reset_at: Optional[datetime] = None


def add_months(anchor: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month's end."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def billing_period_start(anchor: datetime, as_of: datetime) -> datetime:
    """Latest monthly anniversary of ``anchor`` that is not after ``as_of``.

    The anchor may lie in the future (a subscription's period end), in which
    case the result is found by stepping backwards.
    """
    months = (as_of.year - anchor.year) * 12 + (as_of.month - anchor.month)
    start = add_months(anchor, months)
    if start > as_of:
        start = add_months(anchor, months - 1)
    return start


def billing_anchor(plan, created_at: Optional[datetime], current_period_end: Optional[datetime]) -> Optional[datetime]:
    if plan in PAID_PLANS and current_period_end is not None:
        return current_period_end
    return created_at


class CreditLedger:
    """Per-user credit balances.

    Every balance change is a single conditional UPDATE issued together with
    its CreditTransaction row, so callers never read-then-write a balance.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        allowances: PlanAllowances = None,
        clock: Callable[[], datetime] = utcnow,
        max_reset_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.allowances = allowances or PlanAllowances()
        self.clock = clock
        self.max_reset_attempts = max_reset_attempts

    def open_account(self, db: Session, user: User) -> User:
        """Seed a new user with the FREE allowance; the caller commits."""
        now = self.clock()
        amount = self.allowances.for_plan(user.plan or Plan.FREE)
        user.credits = amount
        user.created_at = now
        user.credits_reset_at = now
        user.credit_transactions.append(
            CreditTransaction(delta=amount, reason=CreditReason.GRANT, note="signup", created_at=now)
        )
        return user

    def balance(self, user_id: int) -> int:
        with self.session_factory() as db:
            credits = db.scalar(select(User.credits).where(User.id == user_id))
        if credits is None:
            raise NotFound("User not found")
        return credits

    def reserve(self, user_id: int, cost: int = 1) -> Reservation:
        if cost <= 0:
            raise ValueError("cost must be a positive integer")

        with self.session_factory() as db:
            result = db.execute(
                update(User)
                .where(User.id == user_id, User.credits >= cost)
                .values(credits=User.credits - cost)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                current = db.scalar(select(User.credits).where(User.id == user_id))
                if current is None:
                    raise NotFound("User not found")
                logger.info(f"Reservation denied for user {user_id}: balance {current}, cost {cost}")
                return Reservation(granted=False, remaining=current)

            db.add(CreditTransaction(user_id=user_id, delta=-cost, reason=CreditReason.CONSUME, created_at=self.clock()))
            # Read under the write lock so nothing runs after the debit commits
            row = db.execute(
                select(User.credits, User.plan, User.credits_reset_at).where(User.id == user_id)
            ).one()
            db.commit()

        self._warn_if_low(user_id, row.credits, row.plan)
        return Reservation(granted=True, remaining=row.credits, reset_at=row.credits_reset_at)

    def refund(self, user_id: int, amount: int = 1, note: str = "refund",
               reservation: Optional[Reservation] = None) -> int:
        """Give ``amount`` credits back.

        With a ``reservation``, the refund only applies while no reset has
        happened since that debit: a reset already restored the full allowance.
        """
        if amount <= 0:
            raise ValueError("amount must be a positive integer")

        with self.session_factory() as db:
            stmt = update(User).where(User.id == user_id)
            if reservation is not None:
                if reservation.reset_at is None:
                    stmt = stmt.where(User.credits_reset_at.is_(None))
                else:
                    stmt = stmt.where(User.credits_reset_at == reservation.reset_at)
            result = db.execute(
                stmt.values(credits=User.credits + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                current = db.scalar(select(User.credits).where(User.id == user_id))
                if current is None:
                    raise NotFound("User not found")
                logger.info(f"Refund to user {user_id} skipped ({note}): credits were reset after the reservation")
                return current
            db.add(CreditTransaction(user_id=user_id, delta=amount, reason=CreditReason.GRANT, note=note, created_at=self.clock()))
            remaining = db.scalar(select(User.credits).where(User.id == user_id))
            db.commit()

        logger.warning(f"Refunded {amount} credit(s) to user {user_id} ({note}); balance {remaining}")
        return remaining

    def list_users_due_for_reset(self, as_of: datetime = None) -> List[int]:
        as_of = as_of or self.clock()
        with self.session_factory() as db:
            rows = db.execute(
                select(
                    User.id,
                    User.plan,
                    User.created_at,
                    User.credits_reset_at,
                    User.stripe_current_period_end,
                )
                .where(User.is_active.is_(True))
                .where(or_(User.credits_reset_at.is_(None), User.credits_reset_at <= as_of))
                .order_by(User.id)
            ).all()

        due = []
        for row in rows:
            anchor = billing_anchor(row.plan, row.created_at, row.stripe_current_period_end)
            if row.credits_reset_at is None or anchor is None:
                due.append(row.id)
            elif row.credits_reset_at < billing_period_start(anchor, as_of):
                due.append(row.id)
        return due

    def reset_credits(self, user_id: int, as_of: datetime = None, force: bool = False) -> int:
        """Restore the plan allowance once per billing period.

        Returns the allowance granted, or 0 when the user was already reset in
        the current period. The staleness check is repeated inside the UPDATE,
        so overlapping job runs grant at most once.
        """
        as_of = as_of or self.clock()

        for _ in range(self.max_reset_attempts):
            with self.session_factory() as db:
                user = db.execute(
                    select(
                        User.credits,
                        User.plan,
                        User.created_at,
                        User.credits_reset_at,
                        User.stripe_current_period_end,
                    ).where(User.id == user_id)
                ).one_or_none()
                if user is None:
                    raise NotFound("User not found")

                allowance = self.allowances.for_plan(user.plan)
                anchor = billing_anchor(user.plan, user.created_at, user.stripe_current_period_end)
                period_start = billing_period_start(anchor, as_of) if anchor else as_of

                stmt = update(User).where(User.id == user_id, User.credits == user.credits)
                if not force:
                    if user.credits_reset_at is not None and user.credits_reset_at >= period_start:
                        return 0
                    stmt = stmt.where(
                        or_(User.credits_reset_at.is_(None), User.credits_reset_at < period_start)
                    )

                result = db.execute(
                    stmt.values(credits=allowance, credits_reset_at=as_of)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Balance or reset stamp moved underneath us; re-read and retry.
                    db.rollback()
                    continue

                delta = allowance - user.credits
                if delta:
                    db.add(CreditTransaction(user_id=user_id, delta=delta, reason=CreditReason.RESET, created_at=as_of))
                db.commit()

            logger.info(f"Credits reset for user {user_id}: {allowance} credits")
            return allowance

        raise PersistenceError(f"Credit reset for user {user_id} kept conflicting with concurrent updates")

    def batch_reset(self, user_ids: List[int], as_of: datetime = None) -> Dict:
        success = 0
        failed = 0
        errors: List[str] = []

        for user_id in user_ids:
            try:
                self.reset_credits(user_id, as_of=as_of)
                success += 1
            except Exception as e:
                failed += 1
                message = getattr(e, "message", None) or str(e) or type(e).__name__
                errors.append(f"User {user_id}: {message}")
                logger.error(f"Credit reset failed for user {user_id}: {message}")

        return {"success": success, "failed": failed, "errors": errors}

    def usage(self, user_id: int, as_of: datetime = None) -> Dict:
        as_of = as_of or self.clock()
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise NotFound("User not found")

            limit = self.allowances.for_plan(user.plan)
            anchor = billing_anchor(user.plan, user.created_at, user.stripe_current_period_end) or as_of
            period_start = billing_period_start(anchor, as_of)
            next_reset = add_months(anchor, self._months_between(anchor, period_start) + 1)
            analyses_this_period = db.scalar(
                select(func.count(Analysis.id)).where(
                    Analysis.user_id == user_id, Analysis.created_at >= period_start
                )
            )
            current = user.credits

        used = max(limit - current, 0)
        return {
            "current": current,
            "limit": limit,
            "resetDate": next_reset.isoformat(),
            "percentageUsed": round(used / limit * 100) if limit > 0 else 0,
            "daysUntilReset": max(0, math.ceil((next_reset - as_of) / timedelta(days=1))),
            "analysesThisMonth": analyses_this_period or 0,
        }

    @staticmethod
    def _months_between(anchor: datetime, later: datetime) -> int:
        return (later.year - anchor.year) * 12 + (later.month - anchor.month)

    def _warn_if_low(self, user_id: int, remaining: int, plan):
        limit = self.allowances.for_plan(plan)
        if 0 < remaining <= math.ceil(limit * LOW_CREDIT_RATIO):
            logger.info(f"User {user_id} is running low on credits: {remaining}/{limit}")
