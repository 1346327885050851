"""
Tests for the subscription state machine services.

The clock is pinned with ``now=`` throughout.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from apps.billing.models import BillingSettings, Subscription
from apps.billing.services import (
    cancel,
    change_plan,
    compute_proration,
    extend,
    issue_subscription,
    list_subscriptions,
    reactivate,
    reapply_plan_limits,
    renew,
    resolve_current,
    retry_on_conflict,
    subscription_stats,
    suspend,
    sync_organization_status,
    transition,
)
from apps.core.exceptions import (
    Busy,
    ConcurrentModification,
    InvalidArgument,
    InvalidTransition,
    NotFound,
    PlanUnavailable,
)
from apps.events.models import AuditEvent
from apps.organizations.models import Organization
from apps.plans.models import Plan
from apps.usage.models import UsageCounter
from apps.usage.services import ensure_counters, try_increment
from tests.organizations.factories import OrganizationFactory
from tests.plans.factories import PlanFactory, limits

from .factories import PaymentFactory, SubscriptionFactory

Status = Subscription.Status

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def make_subscription(**kwargs) -> Subscription:
    """Subscription ten days into a thirty-day period at NOW."""
    kwargs.setdefault("start_date", NOW - timedelta(days=10))
    kwargs.setdefault("end_date", NOW + timedelta(days=20))
    return SubscriptionFactory.create(**kwargs)


class TestComputeProration:
    """Tests for compute_proration."""

    start = datetime(2024, 1, 1, tzinfo=UTC)
    end = datetime(2024, 1, 31, tzinfo=UTC)

    def test_half_period_remaining(self) -> None:
        proration = compute_proration(Decimal("30.00"), self.start, self.end, self.start + timedelta(days=15))

        assert proration.credit == Decimal("15.00")
        assert proration.remaining_fraction == Decimal("0.500000")

    def test_upgrade_charges_difference(self) -> None:
        proration = compute_proration(
            Decimal("30.00"), self.start, self.end, self.start + timedelta(days=15), new_amount=Decimal("90.00")
        )

        assert proration.charge == Decimal("30.00")
        assert proration.credit_note == Decimal("0.00")

    def test_downgrade_issues_credit_note(self) -> None:
        proration = compute_proration(
            Decimal("90.00"), self.start, self.end, self.start + timedelta(days=15), new_amount=Decimal("30.00")
        )

        assert proration.charge == Decimal("0.00")
        assert proration.credit_note == Decimal("30.00")

    def test_after_period_end_is_zero(self) -> None:
        proration = compute_proration(Decimal("30.00"), self.start, self.end, self.end + timedelta(days=3))

        assert proration.credit == Decimal("0.00")

    def test_zero_length_period_is_zero(self) -> None:
        proration = compute_proration(Decimal("30.00"), self.start, self.start, self.start)

        assert proration.credit == Decimal("0.00")
        assert proration.remaining_fraction == Decimal("0")

    def test_rounds_to_cents(self) -> None:
        proration = compute_proration(Decimal("10.00"), self.start, self.end, self.start + timedelta(days=20))

        assert proration.credit == Decimal("3.33")


@pytest.mark.django_db
class TestIssueSubscription:
    """Tests for issue_subscription."""

    def test_starts_trial_with_plan_trial_days(self) -> None:
        org = OrganizationFactory.create(status=Organization.Status.PENDING)
        plan = PlanFactory.create(trial_days=10)

        subscription = issue_subscription(org, plan, now=NOW)

        assert subscription.status == Status.TRIAL
        assert subscription.end_date == NOW + timedelta(days=10)
        assert subscription.limits_snapshot == plan.limits
        org.refresh_from_db()
        assert org.current_subscription_id == subscription.pk
        assert org.status == Organization.Status.TRIAL

    def test_plan_without_trial_days_starts_active(self) -> None:
        plan = PlanFactory.create(trial_days=0)

        subscription = issue_subscription(OrganizationFactory.create(), plan, now=NOW)

        assert subscription.status == Status.ACTIVE
        assert subscription.end_date == NOW + timedelta(days=30)

    def test_trial_days_override_replaces_plan_trial(self) -> None:
        plan = PlanFactory.create(trial_days=14)

        subscription = issue_subscription(OrganizationFactory.create(), plan, trial_days=3, now=NOW)

        assert subscription.status == Status.TRIAL
        assert subscription.end_date == NOW + timedelta(days=3)

    def test_zero_trial_days_override_starts_active(self) -> None:
        plan = PlanFactory.create(trial_days=14)

        subscription = issue_subscription(OrganizationFactory.create(), plan, trial_days=0, now=NOW)

        assert subscription.status == Status.ACTIVE

    def test_without_trial_starts_active_for_one_cycle(self) -> None:
        plan = PlanFactory.create(yearly_price=Decimal("250.00"))

        subscription = issue_subscription(OrganizationFactory.create(), plan, "yearly", trial=False, now=NOW)

        assert subscription.status == Status.ACTIVE
        assert subscription.end_date == NOW + timedelta(days=365)
        assert subscription.amount == Decimal("250.00")

    def test_inactive_plan_is_unavailable(self) -> None:
        plan = PlanFactory.create(is_active=False)

        with pytest.raises(PlanUnavailable):
            issue_subscription(OrganizationFactory.create(), plan, now=NOW)


@pytest.mark.django_db
class TestExtend:
    """Tests for extend."""

    def test_extends_from_future_end_date(self) -> None:
        subscription = make_subscription()

        extended = extend(subscription.pk, 10, expected_version=1, now=NOW)

        assert extended.end_date == NOW + timedelta(days=30)
        assert extended.version == 2

    def test_extends_from_now_when_already_ended(self) -> None:
        subscription = make_subscription(end_date=NOW - timedelta(days=5), status=Status.PAST_DUE)

        extended = extend(subscription.pk, 7, expected_version=1, now=NOW)

        assert extended.end_date == NOW + timedelta(days=7)
        assert extended.status == Status.PAST_DUE

    def test_consecutive_extensions_compose(self) -> None:
        subscription = make_subscription()

        extend(subscription.pk, 3, expected_version=1, now=NOW)
        extended = extend(subscription.pk, 4, expected_version=2, now=NOW)

        assert extended.end_date == NOW + timedelta(days=27)

    def test_expired_extended_past_now_becomes_active(self) -> None:
        subscription = make_subscription(status=Status.EXPIRED, end_date=NOW - timedelta(days=1))

        extended = extend(subscription.pk, 5, expected_version=1, now=NOW)

        assert extended.status == Status.ACTIVE
        event = AuditEvent.objects.get(action="subscription.extend")
        assert event.metadata["transition"] == {"from": "expired", "to": "active"}

    def test_cancelled_cannot_be_extended(self) -> None:
        subscription = make_subscription(status=Status.CANCELLED)

        with pytest.raises(InvalidTransition):
            extend(subscription.pk, 5, expected_version=1, now=NOW)

    def test_non_positive_days_rejected_and_audited(self, operator) -> None:
        subscription = make_subscription()

        with pytest.raises(InvalidArgument):
            extend(subscription.pk, 0, expected_version=1, actor=operator, now=NOW)

        event = AuditEvent.objects.get(action="subscription.extend")
        assert event.outcome == AuditEvent.Outcome.REJECTED
        assert event.error_code == "invalid_argument"
        assert event.metadata["days"] == 0
        subscription.refresh_from_db()
        assert subscription.version == 1

    def test_trial_extension_allowed_by_default(self) -> None:
        subscription = make_subscription(status=Status.TRIAL)

        extended = extend(subscription.pk, 7, expected_version=1, now=NOW)

        assert extended.status == Status.TRIAL
        assert extended.end_date == NOW + timedelta(days=27)

    def test_trial_extension_disabled_rejects_trials(self) -> None:
        BillingSettings.objects.create(pk=1, allow_trial_extension=False)
        trial = make_subscription(status=Status.TRIAL)
        active = make_subscription()

        with pytest.raises(InvalidTransition):
            extend(trial.pk, 7, expected_version=1, now=NOW)

        assert extend(active.pk, 7, expected_version=1, now=NOW).version == 2
        trial.refresh_from_db()
        assert trial.end_date == NOW + timedelta(days=20)
        rejected = AuditEvent.objects.get(aggregate_type="subscription", aggregate_id=str(trial.pk))
        assert rejected.outcome == AuditEvent.Outcome.REJECTED

    def test_stale_version_is_rejected_and_audited(self, operator) -> None:
        subscription = make_subscription()
        extend(subscription.pk, 1, expected_version=1, now=NOW)

        with pytest.raises(ConcurrentModification) as exc_info:
            extend(subscription.pk, 1, expected_version=1, actor=operator, now=NOW)

        assert exc_info.value.current_version == 2
        subscription.refresh_from_db()
        assert subscription.end_date == NOW + timedelta(days=21)
        rejected = AuditEvent.objects.get(action="subscription.extend", outcome=AuditEvent.Outcome.REJECTED)
        assert rejected.error_code == "concurrent_modification"
        assert rejected.actor_id == "usr_operator"
        assert rejected.before_state == rejected.after_state

    def test_unknown_subscription(self) -> None:
        with pytest.raises(NotFound):
            extend(424242, 5, expected_version=1, now=NOW)


@pytest.mark.django_db
class TestCancel:
    """Tests for cancel."""

    def test_service_runs_until_end_date(self) -> None:
        subscription = make_subscription()

        cancelled = cancel(subscription.pk, "too expensive", expected_version=1, now=NOW)

        assert cancelled.status == Status.CANCELLED
        assert cancelled.end_date == NOW + timedelta(days=20)
        assert cancelled.cancel_reason == "too expensive"
        assert cancelled.cancelled_at == NOW
        assert Organization.objects.get(pk=subscription.organization_id).status == Organization.Status.ACTIVE

    def test_immediate_cancel_ends_now(self) -> None:
        subscription = make_subscription()

        cancelled = cancel(subscription.pk, "fraud", expected_version=1, immediate=True, now=NOW)

        assert cancelled.end_date == NOW
        assert Organization.objects.get(pk=subscription.organization_id).status == Organization.Status.SUSPENDED

    def test_trial_cannot_be_cancelled(self) -> None:
        subscription = make_subscription(status=Status.TRIAL)

        with pytest.raises(InvalidTransition):
            cancel(subscription.pk, "nope", expected_version=1, now=NOW)

        subscription.refresh_from_db()
        assert subscription.status == Status.TRIAL
        assert subscription.version == 1
        rejected = AuditEvent.objects.get(action="subscription.cancel")
        assert rejected.outcome == AuditEvent.Outcome.REJECTED
        assert rejected.error_code == "invalid_transition"


@pytest.mark.django_db
class TestSuspend:
    """Tests for manual suspension."""

    def test_suspends_past_due(self) -> None:
        subscription = make_subscription(status=Status.PAST_DUE)

        suspended = suspend(subscription.pk, "grace elapsed", expected_version=1, now=NOW)

        assert suspended.status == Status.SUSPENDED
        assert Organization.objects.get(pk=subscription.organization_id).status == Organization.Status.SUSPENDED

    def test_active_cannot_be_suspended(self) -> None:
        subscription = make_subscription()

        with pytest.raises(InvalidTransition):
            suspend(subscription.pk, "because", expected_version=1, now=NOW)


@pytest.mark.django_db
class TestReactivate:
    """Tests for reactivate."""

    def test_suspended_starts_fresh_cycle(self) -> None:
        subscription = make_subscription(status=Status.SUSPENDED, grace_deadline=NOW - timedelta(days=1))

        reactivated = reactivate(subscription.pk, expected_version=1, now=NOW)

        assert reactivated.status == Status.ACTIVE
        assert reactivated.start_date == NOW
        assert reactivated.end_date == NOW + timedelta(days=30)
        assert reactivated.grace_deadline is None
        assert Organization.objects.get(pk=subscription.organization_id).status == Organization.Status.ACTIVE

    def test_reactivating_active_is_a_noop(self) -> None:
        subscription = make_subscription()

        first = reactivate(subscription.pk, expected_version=1, now=NOW)
        second = reactivate(subscription.pk, expected_version=first.version, now=NOW)

        assert second.status == Status.ACTIVE
        assert second.version == 1
        assert second.end_date == subscription.end_date

    def test_cancelled_clears_cancellation(self) -> None:
        subscription = make_subscription(status=Status.CANCELLED, cancel_reason="left", cancelled_at=NOW)

        reactivated = reactivate(subscription.pk, expected_version=1, now=NOW)

        assert reactivated.cancel_reason == ""
        assert reactivated.cancelled_at is None

    def test_snapshots_selected_plan(self) -> None:
        subscription = make_subscription(status=Status.EXPIRED)
        plan = PlanFactory.create(limits=limits(students=999), monthly_price=Decimal("75.00"))

        reactivated = reactivate(subscription.pk, expected_version=1, plan_id=plan.pk, now=NOW)

        assert reactivated.plan_id == plan.pk
        assert reactivated.limits_snapshot["maxStudents"] == 999
        assert reactivated.amount == Decimal("75.00")

    def test_deactivated_plan_is_unavailable(self) -> None:
        subscription = make_subscription(status=Status.EXPIRED)
        plan = PlanFactory.create(is_active=False)

        with pytest.raises(PlanUnavailable):
            reactivate(subscription.pk, expected_version=1, plan_id=plan.pk, now=NOW)

    def test_requires_plan_when_original_was_deleted(self) -> None:
        subscription = make_subscription(status=Status.EXPIRED)
        Plan.objects.filter(pk=subscription.plan_id).delete()

        with pytest.raises(InvalidTransition):
            reactivate(subscription.pk, expected_version=1, now=NOW)

    def test_trial_cannot_be_reactivated(self) -> None:
        subscription = make_subscription(status=Status.TRIAL)

        with pytest.raises(InvalidTransition):
            reactivate(subscription.pk, expected_version=1, now=NOW)


@pytest.mark.django_db
class TestRenew:
    """Tests for renew."""

    def test_trial_becomes_active_for_next_cycle(self) -> None:
        subscription = make_subscription(status=Status.TRIAL)

        renewed = renew(subscription.pk, now=NOW)

        assert renewed.status == Status.ACTIVE
        assert renewed.start_date == NOW + timedelta(days=20)
        assert renewed.end_date == NOW + timedelta(days=50)
        assert renewed.payment_method_on_file is True

    def test_late_renewal_starts_now(self) -> None:
        subscription = make_subscription(
            status=Status.PAST_DUE, end_date=NOW - timedelta(days=3), grace_deadline=NOW + timedelta(days=4)
        )

        renewed = renew(subscription.pk, now=NOW)

        assert renewed.start_date == NOW
        assert renewed.grace_deadline is None

    def test_picks_up_current_plan_limits(self) -> None:
        subscription = make_subscription()
        plan = subscription.plan
        plan.limits = limits(students=3)
        plan.version = 2
        plan.save()

        renewed = renew(subscription.pk, now=NOW)

        assert renewed.limits_snapshot["maxStudents"] == 3
        assert renewed.plan_version == 2

    def test_suspended_cannot_be_renewed(self) -> None:
        subscription = make_subscription(status=Status.SUSPENDED)

        with pytest.raises(InvalidTransition):
            renew(subscription.pk, now=NOW)


@pytest.mark.django_db
class TestTransition:
    """Tests for the generic transition used by the sweep and payments."""

    def test_same_status_is_a_noop(self) -> None:
        subscription = make_subscription(status=Status.PAST_DUE)

        result = transition(subscription.pk, Status.PAST_DUE, now=NOW)

        assert result.version == 1

    def test_writes_changes_with_status(self) -> None:
        subscription = make_subscription()
        deadline = NOW + timedelta(days=7)

        result = transition(subscription.pk, Status.PAST_DUE, changes={"grace_deadline": deadline}, now=NOW)

        result.refresh_from_db()
        assert result.status == Status.PAST_DUE
        assert result.grace_deadline == deadline
        assert AuditEvent.objects.filter(action="subscription.past_due").exists()

    def test_invalid_edge(self) -> None:
        subscription = make_subscription(status=Status.EXPIRED)

        with pytest.raises(InvalidTransition):
            transition(subscription.pk, Status.SUSPENDED, now=NOW)


@pytest.mark.django_db
class TestChangePlan:
    """Tests for change_plan."""

    def test_supersedes_and_moves_organization_pointer(self) -> None:
        subscription = make_subscription()
        new_plan = PlanFactory.create(limits=limits(students=500), monthly_price=Decimal("60.00"))

        result = change_plan(subscription.pk, new_plan.pk, expected_version=1, now=NOW)

        previous = Subscription.objects.get(pk=subscription.pk)
        successor = result.subscription
        assert previous.superseded_by_id == successor.pk
        assert previous.version == 2
        assert successor.plan_id == new_plan.pk
        assert successor.status == Status.ACTIVE
        assert successor.start_date == NOW
        assert successor.end_date == subscription.end_date
        assert successor.limits_snapshot["maxStudents"] == 500
        assert Organization.objects.get(pk=subscription.organization_id).current_subscription_id == successor.pk

    def test_records_proration(self) -> None:
        subscription = make_subscription(amount=Decimal("30.00"))
        new_plan = PlanFactory.create(monthly_price=Decimal("90.00"))

        result = change_plan(subscription.pk, new_plan.pk, expected_version=1, now=NOW)

        assert result.proration.credit == Decimal("20.00")
        assert result.proration.charge == Decimal("40.00")
        assert result.subscription.proration_credit == Decimal("20.00")
        event = AuditEvent.objects.get(action="subscription.change_plan")
        assert event.metadata["proration"]["credit"] == "20.00"
        assert event.after_state["id"] == result.subscription.pk

    def test_superseded_subscription_is_read_only(self) -> None:
        subscription = make_subscription()
        change_plan(subscription.pk, PlanFactory.create().pk, expected_version=1, now=NOW)

        with pytest.raises(InvalidTransition):
            extend(subscription.pk, 5, expected_version=2, now=NOW)

    def test_resolve_current_follows_chain(self) -> None:
        subscription = make_subscription()
        first = change_plan(subscription.pk, PlanFactory.create().pk, expected_version=1, now=NOW)
        second = change_plan(first.subscription.pk, PlanFactory.create().pk, expected_version=1, now=NOW)

        assert resolve_current(subscription.pk).pk == second.subscription.pk

    def test_downgrade_below_usage_flags_over_limit(self) -> None:
        """The change succeeds, data is kept and further growth is blocked."""
        subscription = make_subscription()
        ensure_counters(subscription.organization)
        UsageCounter.objects.filter(organization_id=subscription.organization_id, resource_type="students").update(
            value=3
        )
        small_plan = PlanFactory.create(limits=limits(students=2))

        result = change_plan(subscription.pk, small_plan.pk, expected_version=1, now=NOW)

        assert result.subscription.over_limit is True
        assert result.subscription.over_limit_resources == ["students"]
        assert not try_increment(subscription.organization_id, "students").ok
        counter = UsageCounter.objects.get(organization_id=subscription.organization_id, resource_type="students")
        assert counter.value == 3

    def test_deactivated_plan_is_unavailable(self) -> None:
        subscription = make_subscription()
        plan = PlanFactory.create(is_active=False)

        with pytest.raises(PlanUnavailable):
            change_plan(subscription.pk, plan.pk, expected_version=1, now=NOW)

        assert Organization.objects.get(pk=subscription.organization_id).current_subscription_id == subscription.pk

    def test_cancelled_subscription_cannot_change_plan(self) -> None:
        subscription = make_subscription(status=Status.CANCELLED)

        with pytest.raises(InvalidTransition):
            change_plan(subscription.pk, PlanFactory.create().pk, expected_version=1, now=NOW)

    def test_stale_version_leaves_no_successor(self) -> None:
        subscription = make_subscription()

        with pytest.raises(ConcurrentModification):
            change_plan(subscription.pk, PlanFactory.create().pk, expected_version=7, now=NOW)

        assert Subscription.objects.filter(organization_id=subscription.organization_id).count() == 1


@pytest.mark.django_db
class TestReapplyPlanLimits:
    """Tests for reapply_plan_limits."""

    def test_updates_live_subscriptions_only(self) -> None:
        plan = PlanFactory.create()
        live = make_subscription(plan=plan)
        ended = make_subscription(plan=plan, status=Status.EXPIRED)
        plan.limits = limits(students=1)
        plan.version = 3
        plan.save()

        assert reapply_plan_limits(plan.pk) == 1

        live.refresh_from_db()
        ended.refresh_from_db()
        assert live.limits_snapshot["maxStudents"] == 1
        assert live.plan_version == 3
        assert ended.limits_snapshot["maxStudents"] == 100


class TestRetryOnConflict:
    """Tests for retry_on_conflict."""

    def test_returns_first_success(self) -> None:
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConcurrentModification(1, 2)
            return "ok"

        assert retry_on_conflict(flaky, attempts=3) == "ok"
        assert len(calls) == 2

    def test_raises_busy_when_exhausted(self) -> None:
        def always_conflicts():
            raise ConcurrentModification(1, 2)

        with pytest.raises(Busy) as exc_info:
            retry_on_conflict(always_conflicts, attempts=3)

        assert exc_info.value.status_code == 503


@pytest.mark.django_db
class TestSyncOrganizationStatus:
    """Organization status mirrors the current subscription."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (Status.TRIAL, Organization.Status.TRIAL),
            (Status.ACTIVE, Organization.Status.ACTIVE),
            (Status.PAST_DUE, Organization.Status.ACTIVE),
            (Status.SUSPENDED, Organization.Status.SUSPENDED),
            (Status.EXPIRED, Organization.Status.SUSPENDED),
        ],
    )
    def test_mirrors_subscription_status(self, status, expected) -> None:
        subscription = make_subscription(status=status)

        sync_organization_status(subscription, NOW)

        assert Organization.objects.get(pk=subscription.organization_id).status == expected

    def test_operator_hold_is_not_overridden(self) -> None:
        org = OrganizationFactory.create(status=Organization.Status.SUSPENDED, suspension_reason="abuse")
        subscription = make_subscription(organization=org)

        sync_organization_status(subscription, NOW)

        assert Organization.objects.get(pk=org.pk).status == Organization.Status.SUSPENDED


@pytest.mark.django_db
class TestListSubscriptions:
    """Tests for list_subscriptions and subscription_stats."""

    def test_filters_by_status(self) -> None:
        make_subscription(status=Status.TRIAL)
        active = make_subscription()

        result = list_subscriptions(status=Status.ACTIVE)

        assert [item.pk for item in result.items] == [active.pk]
        assert result.total == 1

    def test_history_hidden_by_default(self) -> None:
        subscription = make_subscription()
        change_plan(subscription.pk, PlanFactory.create().pk, expected_version=1, now=NOW)

        assert list_subscriptions().total == 1
        assert list_subscriptions(include_history=True).total == 2

    def test_expiring_within_days(self) -> None:
        soon = make_subscription(end_date=NOW + timedelta(days=2))
        make_subscription(end_date=NOW + timedelta(days=25))

        result = list_subscriptions(expiring_within_days=3, now=NOW)

        assert [item.pk for item in result.items] == [soon.pk]

    def test_search_matches_organization_name(self) -> None:
        make_subscription(organization=OrganizationFactory.create(name="Sunrise Academy"))
        make_subscription(organization=OrganizationFactory.create(name="Other School"))

        assert list_subscriptions(search="sunrise").total == 1

    def test_stats_count_statuses_and_net_revenue(self) -> None:
        subscription = make_subscription()
        make_subscription(status=Status.SUSPENDED)
        PaymentFactory.create(subscription=subscription, amount=Decimal("50.00"))
        PaymentFactory.create(subscription=subscription, amount=Decimal("20.00"), status="refunded")
        PaymentFactory.create(subscription=subscription, amount=Decimal("99.00"), status="failed")

        stats = subscription_stats()

        assert stats["by_status"]["active"] == 1
        assert stats["by_status"]["suspended"] == 1
        assert stats["by_status"]["trial"] == 0
        assert stats["total_revenue"] == Decimal("30.00")
