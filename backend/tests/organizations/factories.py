"""
Factories for organization models.

Used in tests to create test data.
"""

import factory
from factory.django import DjangoModelFactory

from apps.organizations.models import Organization


class OrganizationFactory(DjangoModelFactory):
    """Factory for Organization model."""

    class Meta:
        model = Organization

    name = factory.Faker("company")
    status = Organization.Status.ACTIVE
