from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, build_engine
from ledger import LedgerStore
from models import (
    Account,
    Budget,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)


class Ledger:
    """Test ledger; in-memory and shared by every session unless a URL is given."""

    def __init__(self, database_url: Optional[str] = None) -> None:
        if database_url is None:
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = build_engine(database_url, timeout_secs=15)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        self.store = LedgerStore(self.session_factory)

    def _add(self, obj):
        with self.session_factory() as session:
            session.add(obj)
            session.commit()
            session.refresh(obj)
        return obj

    def user(self, email: str = "ada@example.com", name: Optional[str] = "Ada") -> User:
        return self._add(User(email=email, name=name))

    def account(
        self,
        user: User,
        *,
        name: str = "Checking",
        balance: str = "1000.00",
        is_default: bool = True,
    ) -> Account:
        return self._add(
            Account(
                user_id=user.id,
                name=name,
                balance=Decimal(balance),
                is_default=is_default,
            )
        )

    def transaction(
        self,
        account: Account,
        *,
        amount: str,
        on: date,
        kind: TransactionType = TransactionType.expense,
        category: str = "groceries",
        description: Optional[str] = "Groceries",
    ) -> Transaction:
        return self._add(
            Transaction(
                user_id=account.user_id,
                account_id=account.id,
                type=kind,
                amount=Decimal(amount),
                description=description,
                date=on,
                category=category,
            )
        )

    def template(
        self,
        account: Account,
        *,
        interval: RecurringInterval,
        on: date,
        amount: str = "50.00",
        kind: TransactionType = TransactionType.expense,
        description: str = "Rent",
        last_processed: Optional[datetime] = None,
        next_recurring_date: Optional[date] = None,
        status: TransactionStatus = TransactionStatus.completed,
    ) -> Transaction:
        return self._add(
            Transaction(
                user_id=account.user_id,
                account_id=account.id,
                type=kind,
                amount=Decimal(amount),
                description=description,
                date=on,
                category="housing",
                is_recurring=True,
                recurring_interval=interval,
                last_processed=last_processed,
                next_recurring_date=next_recurring_date,
                status=status,
            )
        )

    def budget(
        self, user: User, *, amount: str, last_alert_sent: Optional[datetime] = None
    ) -> Budget:
        return self._add(
            Budget(
                user_id=user.id,
                amount=Decimal(amount),
                last_alert_sent=last_alert_sent,
            )
        )

    def get(self, model, ident):
        with self.session_factory() as session:
            return session.get(model, ident)


@pytest.fixture
def ledger() -> Ledger:
    ledger = Ledger()
    yield ledger
    ledger.engine.dispose()


@pytest.fixture
def file_ledger(tmp_path) -> Ledger:
    """Ledger on a SQLite file so concurrent sessions use their own connections."""
    ledger = Ledger(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield ledger
    ledger.engine.dispose()
