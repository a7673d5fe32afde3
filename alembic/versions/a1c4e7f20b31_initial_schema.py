"""initial schema

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration creates:
1. users (with login throttling and password reset fields) and students
2. events with capacity CHECK constraints
3. event_registrations with a partial unique index allowing one
   non-cancelled registration per (event, student)
4. payments
5. notification channel logs: notifications, email_logs, sms_logs
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1c4e7f20b31"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUMS: dict[str, tuple[str, ...]] = {
    "user_role": ("admin", "teacher", "guardian"),
    "event_status": ("draft", "active", "cancelled", "completed"),
    "registration_status": ("registered", "cancelled", "attended", "no_show"),
    "registration_payment_status": ("pending", "paid", "cancelled", "refunded"),
    "payment_status": ("pending", "completed", "failed", "cancelled", "refunded"),
    "payment_method": ("card", "waived"),
    "notification_kind": (
        "registration_created",
        "payment_reminder",
        "payment_confirmed",
        "account_approved",
        "event_reminder",
    ),
    "notification_type": ("info", "success", "warning", "error", "reminder"),
    "notification_category": ("general", "event", "payment", "system", "reminder"),
    "delivery_status": ("sent", "failed", "delivered"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _base_columns() -> list[sa.Column]:
    """Primary key and timestamps (from BaseModel)."""
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def _user_fk(name: str, ondelete: str, nullable: bool = True) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete=ondelete),
        nullable=nullable,
    )


def upgrade() -> None:
    """Create all tables, enum types, indexes and constraints."""
    bind = op.get_bind()
    for name in ENUMS:
        _enum(name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("role", _enum("user_role"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("login_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        sa.Column("password_reset_token", sa.String(length=64), nullable=True),
        sa.Column("password_reset_expires", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("password_reset_token", name="uq_users_password_reset_token"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "students",
        *_base_columns(),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("student_number", sa.String(length=50), nullable=False),
        _user_fk("guardian_id", "SET NULL"),
        _user_fk("class_teacher_id", "SET NULL"),
        sa.Column("grade", sa.String(length=20), nullable=False),
        sa.Column("section", sa.String(length=10), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("student_number", name="uq_students_student_number"),
    )
    op.create_index("ix_students_guardian_id", "students", ["guardian_id"])
    op.create_index("ix_students_class_teacher_id", "students", ["class_teacher_id"])
    op.create_index("ix_students_grade_section", "students", ["grade", "section"])

    op.create_table(
        "events",
        *_base_columns(),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registration_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fee", sa.Numeric(10, 2), server_default="0", nullable=False),
        sa.Column("max_participants", sa.Integer(), nullable=True),
        sa.Column("current_participants", sa.Integer(), server_default="0", nullable=False),
        sa.Column("status", _enum("event_status"), nullable=False),
        _user_fk("created_by", "SET NULL"),
        sa.CheckConstraint(
            "current_participants >= 0", name="ck_events_participants_non_negative"
        ),
        sa.CheckConstraint(
            "max_participants IS NULL OR current_participants <= max_participants",
            name="ck_events_participants_within_capacity",
        ),
        sa.CheckConstraint("fee >= 0", name="ck_events_fee_non_negative"),
    )
    op.create_index("ix_events_status_start_date", "events", ["status", "start_date"])

    op.create_table(
        "event_registrations",
        *_base_columns(),
        sa.Column(
            "event_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("events.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "student_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("students.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _user_fk("parent_id", "SET NULL"),
        _user_fk("registered_by", "SET NULL"),
        sa.Column("status", _enum("registration_status"), nullable=False),
        sa.Column("payment_status", _enum("registration_payment_status"), nullable=False),
        sa.Column("payment_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", postgresql.UUID(as_uuid=True), nullable=True),
    )
    op.create_index("ix_event_registrations_parent_id", "event_registrations", ["parent_id"])
    op.create_index(
        "ix_event_registrations_payment_status", "event_registrations", ["payment_status"]
    )
    op.create_index(
        "uq_event_registrations_active_event_student",
        "event_registrations",
        ["event_id", "student_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
    )

    op.create_table(
        "payments",
        *_base_columns(),
        sa.Column(
            "registration_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("event_registrations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", _enum("payment_status"), nullable=False),
        sa.Column("payment_method", _enum("payment_method"), nullable=True),
        sa.Column("transaction_id", sa.String(length=255), nullable=True),
        sa.Column("gateway_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("transaction_id", name="uq_payments_transaction_id"),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
    )
    op.create_index("ix_payments_registration_id", "payments", ["registration_id"])
    op.create_index(
        "uq_payments_pending_registration",
        "payments",
        ["registration_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "notifications",
        *_base_columns(),
        _user_fk("user_id", "CASCADE", nullable=False),
        sa.Column("dispatch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", _enum("notification_kind"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", _enum("notification_type"), nullable=False),
        sa.Column("category", _enum("notification_category"), nullable=False),
        sa.Column("action_url", sa.String(length=500), nullable=True),
        sa.Column("status", _enum("delivery_status"), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_dispatch_id", "notifications", ["dispatch_id"])
    op.create_index("ix_notifications_user_id_is_read", "notifications", ["user_id", "is_read"])

    op.create_table(
        "email_logs",
        *_base_columns(),
        _user_fk("user_id", "SET NULL"),
        sa.Column("dispatch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", _enum("notification_kind"), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("status", _enum("delivery_status"), nullable=False),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_email_logs_user_id", "email_logs", ["user_id"])
    op.create_index("ix_email_logs_dispatch_id", "email_logs", ["dispatch_id"])

    op.create_table(
        "sms_logs",
        *_base_columns(),
        _user_fk("user_id", "SET NULL"),
        sa.Column("dispatch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", _enum("notification_kind"), nullable=False),
        sa.Column("recipient_phone", sa.String(length=20), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", _enum("delivery_status"), nullable=False),
        sa.Column("cost", sa.Numeric(10, 4), nullable=False),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_sms_logs_user_id", "sms_logs", ["user_id"])
    op.create_index("ix_sms_logs_dispatch_id", "sms_logs", ["dispatch_id"])


def downgrade() -> None:
    """Drop all tables and enum types."""
    for table in (
        "sms_logs",
        "email_logs",
        "notifications",
        "payments",
        "event_registrations",
        "events",
        "students",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        _enum(name).drop(bind, checkfirst=True)
