from datetime import datetime, timedelta, timezone

from services.ledger.rollover import convert_trial, next_month_start, rollover_if_due


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_monthly_rollover_carries_forward_unused_credits(make_account):
    account = make_account(
        plan_credits=30,
        credits_used_this_period=70,
        current_period_end=NOW - timedelta(hours=1),
        overage_mode="usage_record",
        overage_balance_used_cents=400,
        overage_units_this_period=20,
    )

    result = rollover_if_due(account, NOW)

    assert result.periods_advanced == 1
    assert result.credits_granted == 100
    assert account.plan_credits == 130
    assert account.credits_used_this_period == 0
    assert account.overage_balance_used_cents == 0
    assert account.overage_units_this_period == 0
    assert account.overage_unbilled_cents == 0
    assert account.current_period_end == NOW - timedelta(hours=1) + timedelta(days=30)


def test_rollover_is_idempotent_for_the_same_instant(make_account):
    account = make_account(plan_credits=30, current_period_end=NOW)

    first = rollover_if_due(account, NOW)
    second = rollover_if_due(account, NOW)

    assert first.changed
    assert not second.changed
    assert account.plan_credits == 130


def test_rollover_not_due_changes_nothing(make_account):
    account = make_account(plan_credits=5, current_period_end=NOW + timedelta(seconds=1))

    result = rollover_if_due(account, NOW)

    assert not result.changed
    assert account.plan_credits == 5


def test_missed_periods_compound_by_default(make_account):
    account = make_account(plan_credits=0, current_period_end=NOW - timedelta(days=65))

    result = rollover_if_due(account, NOW, policy="compound")

    assert result.periods_advanced == 3
    assert result.anomaly is True
    assert account.plan_credits == 300
    assert account.current_period_end > NOW


def test_missed_periods_cap_policy_grants_one_top_up(make_account):
    account = make_account(plan_credits=0, current_period_end=NOW - timedelta(days=65))

    result = rollover_if_due(account, NOW, policy="cap")

    assert result.periods_advanced == 3
    assert result.credits_granted == 100
    assert account.plan_credits == 100
    assert account.current_period_end > NOW


def test_annual_account_resets_on_calendar_month_and_moves_overage_to_unbilled(make_account):
    account = make_account(
        billing_interval="ANNUAL",
        plan_handle="pro-annual",
        plan_credits=12,
        current_period_end=None,
        monthly_period_end=datetime(2026, 3, 1, tzinfo=timezone.utc),
        overage_mode="tracked",
        overage_balance_used_cents=450,
        overage_units_this_period=30,
        overage_unbilled_cents=50,
    )

    result = rollover_if_due(account, NOW)

    assert result.periods_advanced == 1
    assert account.plan_credits == 112
    assert account.monthly_period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)
    assert account.overage_unbilled_cents == 500
    assert account.overage_unbilled_units == 30
    assert account.overage_balance_used_cents == 0


def test_inactive_accounts_do_not_roll_over(make_account):
    account = make_account(subscription_status="CANCELLED", plan_credits=10, current_period_end=NOW - timedelta(days=1))

    assert not rollover_if_due(account, NOW).changed
    assert account.plan_credits == 10


def test_trial_expiry_converts_to_paid_and_keeps_leftover_trial(make_account):
    account = make_account(
        trial_active=True,
        trial_credits=40,
        trial_started_at=NOW - timedelta(days=15),
        trial_ends_at=NOW - timedelta(minutes=1),
        current_period_end=None,
    )

    result = rollover_if_due(account, NOW)

    assert result.trial_converted is True
    assert result.credits_granted == 100
    assert account.trial_active is False
    assert account.trial_ended_at == NOW
    assert account.trial_credits == 40
    assert account.plan_credits == 100
    assert account.current_period_end == NOW + timedelta(days=30)


def test_running_trial_does_not_roll_over(make_account):
    account = make_account(trial_active=True, trial_credits=40, trial_ends_at=NOW + timedelta(days=3))

    assert not rollover_if_due(account, NOW).changed
    assert account.plan_credits == 0


def test_convert_trial_on_annual_plan_starts_calendar_month_clock(make_account):
    account = make_account(billing_interval="ANNUAL", trial_active=True, current_period_end=None)

    granted = convert_trial(account, NOW)

    assert granted == 100
    assert account.monthly_period_end == datetime(2026, 4, 1, tzinfo=timezone.utc)


def test_naive_stored_datetimes_are_treated_as_utc(make_account):
    account = make_account(plan_credits=0, current_period_end=datetime(2026, 3, 1, 0, 0))

    result = rollover_if_due(account, NOW)

    assert result.periods_advanced == 1
    assert account.current_period_end == datetime(2026, 3, 31, tzinfo=timezone.utc)


def test_next_month_start_wraps_year():
    assert next_month_start(datetime(2026, 12, 15, 8, 30, tzinfo=timezone.utc)) == datetime(
        2027, 1, 1, tzinfo=timezone.utc
    )
    assert next_month_start(datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc)) == datetime(
        2026, 2, 1, tzinfo=timezone.utc
    )
