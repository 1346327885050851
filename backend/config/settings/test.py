"""
Test settings.

File-backed SQLite, fixed webhook secret and quiet console logging.

The test database is a file rather than :memory: so threaded tests get one
connection per thread with ordinary lock waiting.
"""

import tempfile
from pathlib import Path

from apps.core.logging import configure_logging

from .base import *  # noqa: F403

DEBUG = False
ALLOWED_HOSTS = ["testserver", "localhost"]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
        "OPTIONS": {"timeout": 20, "transaction_mode": "IMMEDIATE"},
        "TEST": {"NAME": str(Path(tempfile.gettempdir()) / "quotaflow-test.sqlite3")},
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

PAYMENT_WEBHOOK_SECRET = "test-webhook-secret"
NOTIFICATION_SINK_URL = ""

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_AUTO_SUSPEND_ON_EXPIRY = True
DEFAULT_TRIAL_DAYS = 14
DEFAULT_ALLOW_TRIAL_EXTENSION = True
LEDGER_MAX_RETRIES = 5
SUBSCRIPTION_MAX_RETRIES = 3

configure_logging(json_format=False, log_level="WARNING")
