from datetime import date, datetime
from decimal import Decimal

from models import Budget, RecurringInterval
from notifier import NotifierResult
from services import AlertOutcome, BudgetAlertService, should_send_alert


class FakeNotifier:
    def __init__(self, failing: frozenset[str] = frozenset()) -> None:
        self.failing = failing
        self.sent: list[tuple[str, str, str]] = []

    def send(self, recipient: str, subject: str, body: str) -> NotifierResult:
        if recipient in self.failing:
            return NotifierResult(success=False, error="mailbox unavailable")
        self.sent.append((recipient, subject, body))
        return NotifierResult(success=True, message_id=f"msg-{len(self.sent)}")


def _over_budget_user(ledger, *, email="ada@example.com", spent_on=date(2025, 3, 10),
                      last_alert_sent=None):
    user = ledger.user(email=email)
    account = ledger.account(user)
    ledger.transaction(account, amount="850.00", on=spent_on)
    budget = ledger.budget(user, amount="1000.00", last_alert_sent=last_alert_sent)
    return user, account, budget


def test_no_second_alert_in_same_month(ledger):
    _, _, budget = _over_budget_user(
        ledger, last_alert_sent=datetime(2025, 3, 15, 9, 0)
    )
    notifier = FakeNotifier()

    out = BudgetAlertService(ledger.store, notifier).run(datetime(2025, 3, 20, 12, 0))

    assert out.outcomes == {AlertOutcome.already_alerted.value: 1}
    assert notifier.sent == []
    assert ledger.get(Budget, budget.id).last_alert_sent == datetime(2025, 3, 15, 9, 0)


def test_alert_sent_once_in_new_month(ledger):
    _, _, budget = _over_budget_user(
        ledger,
        spent_on=date(2025, 4, 5),
        last_alert_sent=datetime(2025, 3, 15, 9, 0),
    )
    notifier = FakeNotifier()
    service = BudgetAlertService(ledger.store, notifier)
    now = datetime(2025, 4, 20, 12, 0)

    first = service.run(now)
    second = service.run(datetime(2025, 4, 20, 18, 0))

    assert first.outcomes == {"sent": 1}
    assert second.outcomes == {"already_alerted": 1}
    assert len(notifier.sent) == 1
    recipient, subject, body = notifier.sent[0]
    assert recipient == "ada@example.com"
    assert subject == "Budget Alert for Checking"
    assert "85.0%" in body
    assert "$850.00" in body
    assert ledger.get(Budget, budget.id).last_alert_sent == now


def test_zero_target_never_alerts(ledger):
    user = ledger.user()
    account = ledger.account(user)
    ledger.transaction(account, amount="5000.00", on=date(2025, 3, 2))
    ledger.budget(user, amount="0")
    notifier = FakeNotifier()

    out = BudgetAlertService(ledger.store, notifier).run(datetime(2025, 3, 20))

    assert out.outcomes == {"zero_target": 1}
    assert notifier.sent == []


def test_user_without_default_account_is_skipped(ledger):
    user = ledger.user()
    account = ledger.account(user, is_default=False)
    ledger.transaction(account, amount="950.00", on=date(2025, 3, 2))
    ledger.budget(user, amount="1000.00")
    notifier = FakeNotifier()

    out = BudgetAlertService(ledger.store, notifier).run(datetime(2025, 3, 20))

    assert out.evaluated == 1
    assert out.outcomes == {"no_default_account": 1}
    assert notifier.sent == []


def test_below_threshold_does_not_alert(ledger):
    user = ledger.user()
    account = ledger.account(user)
    ledger.transaction(account, amount="799.99", on=date(2025, 3, 2))
    ledger.template(
        account,
        interval=RecurringInterval.monthly,
        on=date(2025, 3, 1),
        amount="500.00",
    )
    ledger.budget(user, amount="1000.00")
    notifier = FakeNotifier()

    out = BudgetAlertService(ledger.store, notifier).run(datetime(2025, 3, 20))

    assert out.outcomes == {"below_threshold": 1}
    assert notifier.sent == []


def test_notifier_failure_does_not_block_other_budgets(ledger):
    _, _, failing_budget = _over_budget_user(ledger, email="ada@example.com")
    _, _, ok_budget = _over_budget_user(ledger, email="bob@example.com")
    notifier = FakeNotifier(failing=frozenset({"ada@example.com"}))
    now = datetime(2025, 3, 20, 12, 0)

    out = BudgetAlertService(ledger.store, notifier).run(now)

    assert out.outcomes == {"notify_failed": 1, "sent": 1}
    assert [sent[0] for sent in notifier.sent] == ["bob@example.com"]
    assert ledger.get(Budget, failing_budget.id).last_alert_sent is None
    assert ledger.get(Budget, ok_budget.id).last_alert_sent == now


def test_unexpected_error_is_isolated(ledger):
    _over_budget_user(ledger, email="ada@example.com")
    _over_budget_user(ledger, email="bob@example.com")

    class FlakyNotifier(FakeNotifier):
        def send(self, recipient, subject, body):
            if recipient == "ada@example.com":
                raise ConnectionError("smtp down")
            return super().send(recipient, subject, body)

    notifier = FlakyNotifier()
    out = BudgetAlertService(ledger.store, notifier).run(datetime(2025, 3, 20))

    assert out.outcomes == {"error": 1, "sent": 1}


def test_should_send_alert_rule():
    now = datetime(2025, 4, 1, 0, 0)
    assert should_send_alert(Decimal("80"), None, now)
    assert not should_send_alert(Decimal("79.99"), None, now)
    assert should_send_alert(Decimal("85"), datetime(2025, 3, 31, 23, 59), now)
    assert should_send_alert(Decimal("85"), datetime(2024, 4, 10), now)
    assert not should_send_alert(Decimal("150"), datetime(2025, 4, 1, 0, 0), now)


def test_zero_threshold_is_honored(ledger):
    user = ledger.user()
    account = ledger.account(user)
    ledger.transaction(account, amount="1.00", on=date(2025, 3, 2))
    ledger.budget(user, amount="1000.00")
    notifier = FakeNotifier()

    out = BudgetAlertService(ledger.store, notifier, threshold_pct=0).run(
        datetime(2025, 3, 20)
    )

    assert out.outcomes == {"sent": 1}
    assert len(notifier.sent) == 1
