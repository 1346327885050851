"""
Tests for billing models.
"""

from datetime import timedelta

import pytest
from django.db import IntegrityError

from apps.billing.models import BillingSettings, Subscription
from apps.plans.limits import Limit

from .factories import SubscriptionFactory


@pytest.mark.django_db
class TestSubscriptionModel:
    """Tests for Subscription model."""

    def test_str_representation(self) -> None:
        sub = SubscriptionFactory.create(status=Subscription.Status.ACTIVE)
        assert sub.plan_name in str(sub)
        assert "active" in str(sub)

    def test_is_current_until_superseded(self) -> None:
        sub = SubscriptionFactory.create()
        assert sub.is_current is True

        successor = SubscriptionFactory.create(organization=sub.organization)
        sub.superseded_by = successor
        assert sub.is_current is False

    def test_terminal_statuses(self) -> None:
        assert SubscriptionFactory.create(status=Subscription.Status.CANCELLED).is_terminal
        assert SubscriptionFactory.create(status=Subscription.Status.EXPIRED).is_terminal
        assert not SubscriptionFactory.create(status=Subscription.Status.SUSPENDED).is_terminal

    def test_cycle_length(self) -> None:
        assert SubscriptionFactory.create().cycle_length() == timedelta(days=30)
        yearly = SubscriptionFactory.create(billing_cycle=Subscription.BillingCycle.YEARLY)
        assert yearly.cycle_length() == timedelta(days=365)

    def test_get_limits_reads_snapshot(self) -> None:
        sub = SubscriptionFactory.create(limits_snapshot={"maxStudents": -1, "maxBatches": 3})

        limits = sub.get_limits()

        assert limits.students.is_unlimited
        assert limits.batches == Limit.finite(3)

    def test_end_before_start_is_rejected(self) -> None:
        sub = SubscriptionFactory.create()

        with pytest.raises(IntegrityError):
            Subscription.objects.filter(pk=sub.pk).update(end_date=sub.start_date - timedelta(days=1))


@pytest.mark.django_db
class TestBillingSettings:
    """Tests for the platform settings row."""

    def test_load_seeds_from_environment_defaults(self, settings) -> None:
        settings.DEFAULT_GRACE_PERIOD_DAYS = 5

        billing_settings = BillingSettings.load()

        assert billing_settings.pk == 1
        assert billing_settings.grace_period_days == 5
        assert billing_settings.auto_suspend_on_expiry is True

    def test_load_returns_existing_row(self) -> None:
        BillingSettings.objects.create(pk=1, grace_period_days=2)

        assert BillingSettings.load().grace_period_days == 2
        assert BillingSettings.objects.count() == 1
