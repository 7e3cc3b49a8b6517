import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from models import (
    Account,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from periods import Period
from recurrence import ReplayResult


logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreCommitFailure(RuntimeError):
    pass


class LedgerStore:
    """Set-based reads and atomic writes against the ledger tables."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        if session_factory is None:
            from database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def run_atomic(self, fn: Callable[[Session], T]) -> T:
        session: Session = self.session_factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreCommitFailure(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def find_due_recurring(self, today: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                or_(
                    Transaction.last_processed.is_(None),
                    Transaction.next_recurring_date <= today,
                ),
            )
            .order_by(Transaction.id)
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def get_transaction(
        self,
        session: Session,
        transaction_id: int,
        *,
        user_id: Optional[int] = None,
        lock: bool = False,
    ) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.id == transaction_id)
        if user_id is not None:
            stmt = stmt.where(Transaction.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).one_or_none()

    def aggregate_expenses(self, user_id: int, account_id: int, period: Period) -> Decimal:
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == user_id,
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.expense,
            Transaction.is_recurring.is_(False),
            Transaction.date.between(period.start, period.end),
        )
        with self.session_factory() as session:
            total = session.execute(stmt).scalar_one()
        return Decimal(str(total or 0))

    def find_budgets(self) -> list[Budget]:
        stmt = select(Budget).options(joinedload(Budget.user)).order_by(Budget.id)
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())

    def default_account(self, user_id: int) -> Optional[Account]:
        stmt = select(Account).where(
            Account.user_id == user_id, Account.is_default.is_(True)
        )
        with self.session_factory() as session:
            return session.scalars(stmt).first()

    def update_budget_alert_timestamp(self, budget_id: int, sent_at: datetime) -> None:
        def _apply(session: Session) -> None:
            session.execute(
                update(Budget)
                .where(Budget.id == budget_id)
                .values(last_alert_sent=sent_at)
            )

        self.run_atomic(_apply)

    def find_users(self) -> list[User]:
        with self.session_factory() as session:
            return list(session.scalars(select(User).order_by(User.id)).all())

    def transactions_between(self, user_id: int, period: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.is_recurring.is_(False),
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt).all())


def _unchanged(column, value):
    return column.is_(None) if value is None else column == value


class LedgerCommitCoordinator:
    """Writes one replay result inside the caller's atomic unit.

    The template is claimed first with a guarded ``UPDATE`` that only matches
    while its bookkeeping still holds the values the replay was computed from.
    A concurrent unit that already advanced the template makes the claim match
    no row, and nothing else is written. Draft inserts, the balance increment
    and the claim share one transaction; the balance moves through a single
    ``UPDATE`` so concurrent commits to the same account cannot lose an
    increment.
    """

    def apply(
        self,
        session: Session,
        template: Transaction,
        result: ReplayResult,
        now: datetime,
    ) -> bool:
        claim = session.execute(
            update(Transaction)
            .where(
                Transaction.id == template.id,
                _unchanged(Transaction.last_processed, template.last_processed),
                _unchanged(Transaction.next_recurring_date, template.next_recurring_date),
            )
            .values(last_processed=now, next_recurring_date=result.next_date)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            logger.info(f"ledger_commit_skip: template_id={template.id} reason=already_advanced")
            return False

        if result.drafts:
            session.add_all(
                Transaction(
                    user_id=draft.user_id,
                    account_id=draft.account_id,
                    type=draft.type,
                    amount=draft.amount,
                    description=draft.description,
                    date=draft.date,
                    category=draft.category,
                    is_recurring=False,
                    status=TransactionStatus.completed,
                )
                for draft in result.drafts
            )
            session.flush()
            session.execute(
                update(Account)
                .where(Account.id == template.account_id)
                .values(balance=Account.balance + result.net_delta)
                .execution_options(synchronize_session=False)
            )

        set_committed_value(template, "last_processed", now)
        set_committed_value(template, "next_recurring_date", result.next_date)
        logger.info(
            f"ledger_commit: template_id={template.id} drafts={len(result.drafts)} "
            f"net_delta={result.net_delta} next_recurring_date={result.next_date}"
        )
        return True
