"""Create device registry, partitioned reading store and hourly rollups.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create registry, reading store, partition catalog and rollup tables."""

    # 1. Device registry
    op.create_table(
        "iot_devices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("device_type", sa.String(50), nullable=False),
        sa.Column("firmware_version", sa.String(50), nullable=True),
        sa.Column("village_id", sa.String(64), nullable=False),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column("elevation", sa.Float, nullable=True),
        sa.Column("location_name", sa.String(200), nullable=True),
        sa.Column("config", sa.JSON, nullable=True),
        sa.Column("telemetry_schema", sa.JSON, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="offline"),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_iot_devices_name", "iot_devices", ["name"])
    op.create_index("ix_iot_devices_device_type", "iot_devices", ["device_type"])
    op.create_index("ix_iot_devices_village_id", "iot_devices", ["village_id"])
    op.create_index("ix_iot_devices_status", "iot_devices", ["status"])

    # 2. Status history
    op.create_table(
        "device_status_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
    )
    op.create_index("ix_device_status_history_device_id", "device_status_history", ["device_id"])
    op.create_index("ix_device_status_history_changed_at", "device_status_history", ["changed_at"])

    # 3. Partition catalog
    op.create_table(
        "reading_partitions",
        sa.Column("range_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("range_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="open"),
        sa.Column("row_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("compressed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_reading_partitions_range_end", "reading_partitions", ["range_end"])
    op.create_index("ix_reading_partitions_state", "reading_partitions", ["state"])

    # 4. Raw readings (no foreign key to iot_devices)
    op.create_table(
        "device_readings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("partition_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metrics", sa.JSON, nullable=False),
        sa.Column("revision", sa.Integer, nullable=False, server_default="0"),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("overrides_chunk", sa.Boolean, nullable=False, server_default="false"),
        sa.UniqueConstraint("device_id", "time", name="uq_device_readings_device_time"),
    )
    op.create_index(
        "ix_device_readings_partition_device",
        "device_readings",
        ["partition_start", "device_id"],
    )
    op.execute("""
        CREATE INDEX ix_device_readings_device_time_desc
        ON device_readings (device_id, time DESC);
    """)

    # 5. Compressed chunks, one per (partition, device)
    op.create_table(
        "reading_chunks",
        sa.Column("partition_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("row_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("min_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_time", sa.DateTime(timezone=True), nullable=False),
    )

    # 6. Hourly rollups
    op.create_table(
        "hourly_rollups",
        sa.Column("device_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("bucket", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("metric_name", sa.String(100), nullable=False),
        sa.Column("count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("avg", sa.Float, nullable=True),
        sa.Column("min", sa.Float, nullable=True),
        sa.Column("max", sa.Float, nullable=True),
        sa.Column("stale", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("refreshed_through", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_hourly_rollups_bucket", "hourly_rollups", ["bucket"])


def downgrade() -> None:
    """Drop all telemetry pipeline tables."""
    op.drop_index("ix_hourly_rollups_bucket", table_name="hourly_rollups")
    op.drop_table("hourly_rollups")
    op.drop_table("reading_chunks")
    op.execute("DROP INDEX IF EXISTS ix_device_readings_device_time_desc")
    op.drop_index("ix_device_readings_partition_device", table_name="device_readings")
    op.drop_table("device_readings")
    op.drop_index("ix_reading_partitions_state", table_name="reading_partitions")
    op.drop_index("ix_reading_partitions_range_end", table_name="reading_partitions")
    op.drop_table("reading_partitions")
    op.drop_index("ix_device_status_history_changed_at", table_name="device_status_history")
    op.drop_index("ix_device_status_history_device_id", table_name="device_status_history")
    op.drop_table("device_status_history")
    op.drop_index("ix_iot_devices_status", table_name="iot_devices")
    op.drop_index("ix_iot_devices_village_id", table_name="iot_devices")
    op.drop_index("ix_iot_devices_device_type", table_name="iot_devices")
    op.drop_index("ix_iot_devices_name", table_name="iot_devices")
    op.drop_table("iot_devices")
