"""Events app configuration."""

from django.apps import AppConfig


class EventsConfig(AppConfig):
    """Configuration for the audit/event emitter app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.events"
