"""create voice conversion and webhook delivery tables

Revision ID: 3b7e1c9a5d42
Revises:
Create Date: 2026-10-18 10:12:31.418207

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1c9a5d42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "voice_models",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column(
            "model_path", sa.Text, nullable=False, comment="Storage path of the model weights"
        ),
        sa.Column(
            "index_path", sa.Text, nullable=False, comment="Storage path of the feature index"
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "audio_files",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("file_name", sa.Text, nullable=False),
        sa.Column("uploaded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "preprocessing_status",
            sa.Text,
            nullable=True,
            comment="pending|processing|completed|failed, null until preprocessing starts",
        ),
        sa.Column(
            "inference_location", sa.Text, nullable=True, comment="Full-length preprocessed audio"
        ),
        sa.Column("preview_location", sa.Text, nullable=True, comment="Short preview audio"),
        sa.Column("preprocessing_error", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_audio_files_user_id", "audio_files", ["user_id"])

    op.create_table(
        "conversion_jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id", sa.UUID(as_uuid=True), nullable=False, comment="Requesting user"
        ),
        sa.Column(
            "audio_file_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("audio_files.id"),
            nullable=False,
        ),
        sa.Column(
            "voice_model_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("voice_models.id"),
            nullable=False,
        ),
        sa.Column(
            "transposition_semitones",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="Signed semitone shift",
        ),
        sa.Column("use_preview", sa.Boolean, nullable=False, server_default=sa.false()),
        # Job state
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending_preprocessing",
            comment="pending_preprocessing|queued|processing|completed|failed",
        ),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "version",
            sa.Integer,
            nullable=False,
            server_default="1",
            comment="Optimistic concurrency token",
        ),
        # Results
        sa.Column(
            "output_location", sa.Text, nullable=True, comment="Storage URI of the converted audio"
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("queued_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending_preprocessing', 'queued', 'processing', 'completed', 'failed')",
            name="conversion_jobs_status_check",
        ),
    )
    op.create_index("ix_conversion_jobs_user_id", "conversion_jobs", ["user_id"])
    op.create_index(
        "ix_conversion_jobs_poll",
        "conversion_jobs",
        ["status", "retry_count", "last_retry_at"],
    )

    op.create_table(
        "webhook_subscriptions",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column(
            "encrypted_secret",
            sa.Text,
            nullable=False,
            comment="Fernet token of the signing secret",
        ),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("events", sa.JSON, nullable=False, comment="Subscribed event names"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "auto_disable_on_failure", sa.Boolean, nullable=False, server_default=sa.true()
        ),
        sa.Column("max_consecutive_failures", sa.Integer, nullable=False, server_default="10"),
        sa.Column("last_success_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_webhook_subscriptions_user_id", "webhook_subscriptions", ["user_id"])

    op.create_table(
        "webhook_delivery_attempts",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        # Event
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("entity_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "payload",
            sa.Text,
            nullable=False,
            comment="Serialized JSON body sent as-is on every attempt",
        ),
        # Delivery state
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|processing|delivered|failed",
        ),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_attempted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        # Last response
        sa.Column("http_status_code", sa.Integer, nullable=True),
        sa.Column("response_body", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'delivered', 'failed')",
            name="webhook_delivery_attempts_status_check",
        ),
    )
    op.create_index(
        "ix_webhook_delivery_attempts_poll",
        "webhook_delivery_attempts",
        ["status", "next_retry_at"],
    )
    op.create_index(
        "ix_webhook_delivery_attempts_subscription",
        "webhook_delivery_attempts",
        ["subscription_id"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("webhook_delivery_attempts")
    op.drop_table("webhook_subscriptions")
    op.drop_table("conversion_jobs")
    op.drop_table("audio_files")
    op.drop_table("voice_models")
