from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from config import get_settings
from dispatcher import ThrottledDispatcher
from insights import InsightGenerator, generate_insights, get_insight_generator
from ledger import LedgerCommitCoordinator, LedgerStore
from models import Budget, Transaction, TransactionStatus, TransactionType, User
from notifier import Notifier, get_notifier, render_email
from periods import Period, is_new_month, month_to_date, previous_month
from recurrence import is_due, local_now, replay_missed
from schemas import (
    BudgetAlertRunOut,
    MonthlyReportRunOut,
    MonthlyStats,
    RecurringDueEvent,
    RecurringRunOut,
)


logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


class MissingDefaultAccount(LookupError):
    pass


class RecurringTransactionService:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        dispatcher: Optional[ThrottledDispatcher[RecurringDueEvent]] = None,
        coordinator: Optional[LedgerCommitCoordinator] = None,
        *,
        max_occurrences: Optional[int] = None,
    ) -> None:
        self.store = store or LedgerStore()
        self.dispatcher = dispatcher or ThrottledDispatcher()
        self.coordinator = coordinator or LedgerCommitCoordinator()
        if max_occurrences is None:
            max_occurrences = get_settings().max_catch_up_occurrences
        if max_occurrences < 1:
            raise ValueError("max_occurrences must be at least 1")
        self.max_occurrences = max_occurrences

    def select_due(self, today: date) -> list[RecurringDueEvent]:
        return [
            RecurringDueEvent(transaction_id=txn.id, user_id=txn.user_id)
            for txn in self.store.find_due_recurring(today)
        ]

    def process(self, event: RecurringDueEvent, now: Optional[datetime] = None) -> int:
        """Replay and commit one due template; returns occurrences created."""
        now = now or local_now()
        today = now.date()

        def _apply(session) -> int:
            template = self.store.get_transaction(
                session, event.transaction_id, user_id=event.user_id, lock=True
            )
            if template is None or not self._eligible(template, today):
                logger.info(
                    f"recurring_skip: transaction_id={event.transaction_id} "
                    f"user_id={event.user_id} reason=not_due"
                )
                return 0
            result = replay_missed(
                template, today, max_occurrences=self.max_occurrences
            )
            if not self.coordinator.apply(session, template, result, now):
                return 0
            return len(result.drafts)

        return self.store.run_atomic(_apply)

    def run(self, now: Optional[datetime] = None) -> RecurringRunOut:
        now = now or local_now()
        events = self.select_due(now.date())
        logger.info(f"recurring_run: triggered={len(events)}")
        summary = self.dispatcher.dispatch(
            events,
            lambda event: self.process(event, now),
            key=lambda event: event.user_id,
        )
        return RecurringRunOut(triggered=len(events), dispatch=summary)

    @staticmethod
    def _eligible(template: Transaction, today: date) -> bool:
        return (
            template.is_recurring
            and template.status == TransactionStatus.completed
            and is_due(template, today)
        )


class AlertOutcome(str, Enum):
    sent = "sent"
    below_threshold = "below_threshold"
    already_alerted = "already_alerted"
    no_default_account = "no_default_account"
    zero_target = "zero_target"
    notify_failed = "notify_failed"
    error = "error"


def percentage_used(spent: Decimal, target: Decimal) -> Decimal:
    return spent / target * Decimal("100")


def should_send_alert(
    used_pct: Decimal,
    last_alert_sent: Optional[datetime],
    now: datetime,
    *,
    threshold_pct: int = 80,
) -> bool:
    return used_pct >= threshold_pct and is_new_month(last_alert_sent, now)


class BudgetAlertService:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        notifier: Optional[Notifier] = None,
        *,
        threshold_pct: Optional[int] = None,
    ) -> None:
        self.store = store or LedgerStore()
        self.notifier = notifier or get_notifier()
        self.threshold_pct = (
            threshold_pct if threshold_pct is not None else get_settings().alert_threshold_pct
        )

    def run(self, now: Optional[datetime] = None) -> BudgetAlertRunOut:
        now = now or local_now()
        budgets = self.store.find_budgets()
        outcomes: Counter[str] = Counter()
        for budget in budgets:
            try:
                outcome = self.evaluate(budget, now)
            except MissingDefaultAccount:
                logger.info(f"budget_alert_skip: budget_id={budget.id} reason=no_default_account")
                outcome = AlertOutcome.no_default_account
            except Exception:
                logger.exception(f"budget_alert_failed: budget_id={budget.id}")
                outcome = AlertOutcome.error
            outcomes[outcome.value] += 1
        logger.info(f"budget_alert_run: evaluated={len(budgets)} outcomes={dict(outcomes)}")
        return BudgetAlertRunOut(evaluated=len(budgets), outcomes=dict(outcomes))

    def evaluate(self, budget: Budget, now: datetime) -> AlertOutcome:
        account = self.store.default_account(budget.user_id)
        if account is None:
            raise MissingDefaultAccount(f"User {budget.user_id} has no default account")
        if budget.amount == 0:
            return AlertOutcome.zero_target

        period = month_to_date(now.date())
        spent = self.store.aggregate_expenses(budget.user_id, account.id, period)
        used_pct = percentage_used(spent, budget.amount)
        if used_pct < self.threshold_pct:
            return AlertOutcome.below_threshold
        if not should_send_alert(
            used_pct, budget.last_alert_sent, now, threshold_pct=self.threshold_pct
        ):
            return AlertOutcome.already_alerted

        body = render_email(
            "budget_alert.txt",
            user_name=budget.user.name or "User",
            account_name=account.name,
            percentage_used=used_pct,
            budget_amount=budget.amount,
            total_expenses=spent,
            remaining=budget.amount - spent,
            month_label=period.label,
        )
        result = self.notifier.send(
            budget.user.email, f"Budget Alert for {account.name}", body
        )
        if not result.success:
            logger.warning(
                f"budget_alert_not_sent: budget_id={budget.id} error={result.error}"
            )
            return AlertOutcome.notify_failed

        self.store.update_budget_alert_timestamp(budget.id, now)
        logger.info(
            f"budget_alert_sent: budget_id={budget.id} user_id={budget.user_id} "
            f"percentage_used={used_pct:.2f}"
        )
        return AlertOutcome.sent


def aggregate_transactions(transactions: Iterable[Transaction]) -> MonthlyStats:
    stats = MonthlyStats()
    for txn in transactions:
        stats.transaction_count += 1
        if txn.type == TransactionType.expense:
            stats.total_expenses += txn.amount
            category = txn.category or UNCATEGORIZED
            stats.by_category[category] = (
                stats.by_category.get(category, Decimal("0")) + txn.amount
            )
        else:
            stats.total_income += txn.amount
    return stats


class MonthlyAggregator:
    def __init__(self, store: Optional[LedgerStore] = None) -> None:
        self.store = store or LedgerStore()

    def monthly_stats(self, user_id: int, period: Period) -> MonthlyStats:
        return aggregate_transactions(self.store.transactions_between(user_id, period))


class MonthlyReportService:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        notifier: Optional[Notifier] = None,
        generator: Optional[InsightGenerator] = None,
    ) -> None:
        self.store = store or LedgerStore()
        self.notifier = notifier or get_notifier()
        self.generator = generator or get_insight_generator()
        self.aggregator = MonthlyAggregator(self.store)

    def run(self, now: Optional[datetime] = None) -> MonthlyReportRunOut:
        now = now or local_now()
        period = previous_month(now.date())
        summary = MonthlyReportRunOut(period=period.label)
        for user in self.store.find_users():
            try:
                sent = self.report_for_user(user, period)
            except Exception:
                logger.exception(f"monthly_report_failed: user_id={user.id}")
                sent = False
            if sent:
                summary.processed += 1
            else:
                summary.failed += 1
        logger.info(
            f"monthly_report_run: period={period.label} processed={summary.processed} "
            f"failed={summary.failed}"
        )
        return summary

    def report_for_user(self, user: User, period: Period) -> bool:
        stats = self.aggregator.monthly_stats(user.id, period)
        insights = generate_insights(self.generator, stats, period.label)
        body = render_email(
            "monthly_report.txt",
            user_name=user.name or "User",
            month_label=period.label,
            stats=stats,
            insights=insights,
        )
        result = self.notifier.send(
            user.email, f"Your Monthly Financial Report - {period.label}", body
        )
        if not result.success:
            logger.warning(f"monthly_report_not_sent: user_id={user.id} error={result.error}")
        return result.success
