from datetime import date, datetime
from decimal import Decimal

import pytest

from insights import (
    FALLBACK_INSIGHTS,
    GeminiInsightGenerator,
    InsightGeneratorFailure,
    generate_insights,
    parse_insights,
)
from models import RecurringInterval, TransactionType
from notifier import NotifierResult
from periods import calendar_month, previous_month
from schemas import MonthlyStats
from services import MonthlyAggregator, MonthlyReportService


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, recipient: str, subject: str, body: str) -> NotifierResult:
        self.sent.append((recipient, subject, body))
        return NotifierResult(success=True)


class StaticGenerator:
    def __init__(self, insights: list[str]) -> None:
        self.insights = insights
        self.calls: list[tuple[MonthlyStats, str]] = []

    def generate(self, stats: MonthlyStats, period_label: str) -> list[str]:
        self.calls.append((stats, period_label))
        return self.insights


class BrokenGenerator:
    def generate(self, stats: MonthlyStats, period_label: str) -> list[str]:
        raise InsightGeneratorFailure("quota exceeded")


def _january_ledger(ledger):
    user = ledger.user()
    account = ledger.account(user)
    ledger.transaction(account, amount="100.00", on=date(2025, 1, 1), category="groceries")
    ledger.transaction(account, amount="40.50", on=date(2025, 1, 31), category="groceries")
    ledger.transaction(account, amount="900.00", on=date(2025, 1, 5), category="rent")
    ledger.transaction(
        account,
        amount="3000.00",
        on=date(2025, 1, 2),
        kind=TransactionType.income,
        category="salary",
    )
    ledger.transaction(account, amount="75.00", on=date(2025, 2, 1), category="rent")
    ledger.template(account, interval=RecurringInterval.monthly, on=date(2025, 1, 3))
    other = ledger.user(email="bob@example.com", name=None)
    other_account = ledger.account(other)
    ledger.transaction(other_account, amount="12.00", on=date(2025, 1, 9))
    return user, other


def test_monthly_stats_sum_by_category(ledger):
    user, _ = _january_ledger(ledger)

    stats = MonthlyAggregator(ledger.store).monthly_stats(
        user.id, calendar_month(date(2025, 1, 15))
    )

    assert stats.total_expenses == Decimal("1040.50")
    assert stats.total_income == Decimal("3000.00")
    assert stats.net == Decimal("1959.50")
    assert stats.by_category == {
        "groceries": Decimal("140.50"),
        "rent": Decimal("900.00"),
    }
    assert stats.transaction_count == 4


def test_report_uses_generated_insights(ledger):
    _january_ledger(ledger)
    notifier = RecordingNotifier()
    generator = StaticGenerator(["Rent dominates your spending."])

    out = MonthlyReportService(ledger.store, notifier, generator).run(
        datetime(2025, 2, 1, 0, 0)
    )

    assert out.period == "January 2025"
    assert out.processed == 2
    assert out.failed == 0
    assert [label for _, label in generator.calls] == ["January 2025", "January 2025"]
    recipient, subject, body = notifier.sent[0]
    assert recipient == "ada@example.com"
    assert subject == "Your Monthly Financial Report - January 2025"
    assert "Rent dominates your spending." in body
    assert "$1,040.50" in body
    assert "Hello User," in notifier.sent[1][2]


def test_report_falls_back_when_generator_fails(ledger):
    _january_ledger(ledger)
    notifier = RecordingNotifier()

    out = MonthlyReportService(ledger.store, notifier, BrokenGenerator()).run(
        datetime(2025, 2, 1, 0, 0)
    )

    assert out.processed == 2
    for insight in FALLBACK_INSIGHTS:
        assert insight in notifier.sent[0][2]


def test_generate_insights_returns_copy_of_fallback():
    insights = generate_insights(BrokenGenerator(), MonthlyStats(), "March 2025")

    assert insights == FALLBACK_INSIGHTS
    insights.append("mutated")
    assert len(FALLBACK_INSIGHTS) == 3


def test_parse_insights_strips_code_fences():
    text = '```json\n["Spend less on takeout.", "Automate savings."]\n```'

    assert parse_insights(text) == ["Spend less on takeout.", "Automate savings."]


@pytest.mark.parametrize("text", ["not json", '{"a": 1}', "[]", '["ok", 3]'])
def test_parse_insights_rejects_bad_payloads(text):
    with pytest.raises(InsightGeneratorFailure):
        parse_insights(text)


def test_gemini_generator_without_key_fails():
    generator = GeminiInsightGenerator(None)

    with pytest.raises(InsightGeneratorFailure):
        generator.generate(MonthlyStats(), "March 2025")


def test_previous_month_period():
    period = previous_month(date(2025, 1, 1))

    assert (period.start, period.end) == (date(2024, 12, 1), date(2024, 12, 31))
    assert period.label == "December 2024"
