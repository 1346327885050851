import uuid

import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                (
                    "organization_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Tenant organization ID, blank for platform-level actions",
                        max_length=100,
                    ),
                ),
                (
                    "actor_id",
                    models.CharField(
                        db_index=True, help_text="User ID that performed the action, or 'system'", max_length=100
                    ),
                ),
                ("actor_email", models.CharField(blank=True, max_length=254)),
                (
                    "action",
                    models.CharField(
                        db_index=True, help_text="Action type, e.g. 'subscription.extend'", max_length=100
                    ),
                ),
                ("aggregate_type", models.CharField(blank=True, max_length=50)),
                ("aggregate_id", models.CharField(blank=True, max_length=100)),
                (
                    "outcome",
                    models.CharField(
                        choices=[("success", "Success"), ("rejected", "Rejected")],
                        db_index=True,
                        default="success",
                        max_length=20,
                    ),
                ),
                ("error_code", models.CharField(blank=True, max_length=50)),
                ("before_state", models.JSONField(blank=True, default=dict)),
                ("after_state", models.JSONField(blank=True, default=dict)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("correlation_id", models.UUIDField(blank=True, db_index=True, null=True)),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                ("user_agent", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["organization_id", "created_at"], name="audit_org_created_idx"),
                    models.Index(fields=["aggregate_type", "aggregate_id"], name="audit_aggregate_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OutboxEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "event_id",
                    models.UUIDField(
                        db_index=True,
                        default=uuid.uuid4,
                        help_text="Unique event identifier for consumer idempotency",
                        unique=True,
                    ),
                ),
                ("event_type", models.CharField(db_index=True, max_length=100)),
                ("aggregate_type", models.CharField(blank=True, max_length=50)),
                ("aggregate_id", models.CharField(blank=True, max_length=100)),
                ("organization_id", models.CharField(blank=True, db_index=True, max_length=100)),
                ("schema_version", models.PositiveIntegerField(default=1)),
                ("payload", models.JSONField(help_text="Complete event envelope")),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("delivered", "Delivered"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("next_attempt_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("last_error", models.TextField(blank=True)),
            ],
            options={
                "ordering": ["created_at"],
                "indexes": [models.Index(fields=["status", "next_attempt_at"], name="outbox_status_next_idx")],
            },
        ),
    ]
