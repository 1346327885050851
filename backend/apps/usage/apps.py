"""Usage app configuration."""

from django.apps import AppConfig


class UsageConfig(AppConfig):
    """Configuration for the usage ledger app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.usage"
