"""Plans app configuration."""

from django.apps import AppConfig


class PlansConfig(AppConfig):
    """Configuration for the plan catalog app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.plans"
