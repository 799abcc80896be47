"""
Table Definitions

SQLAlchemy Core tables for the edge database. The tenant, meter and
device_register definitions also describe the columns read from the
remote master database.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

tenant = Table(
    "tenant",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("name", String(255), nullable=False),
    Column("api_key", String(255)),
    Column("city", String(100)),
    Column("country", String(100)),
    Column("active", Boolean, nullable=False, default=True),
)

meter = Table(
    "meter",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("tenant_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("device_id", Integer),
    Column("ip", String(64)),
    Column("port", Integer),
    Column("protocol", String(32)),
    Column("active", Boolean, nullable=False, default=True),
)

device_register = Table(
    "device_register",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", Integer, nullable=False),
    Column("register_id", Integer, nullable=False),
    Column("register", Integer),
    Column("field_name", String(100), nullable=False),
    Column("unit", String(32)),
    UniqueConstraint("device_id", "register_id", name="uq_device_register"),
)

meter_reading = Table(
    "meter_reading",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("meter_id", Integer, nullable=False),
    Column("element_id", Integer, nullable=False, default=0),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("data_point", String(100), nullable=False),
    Column("value", Float, nullable=False),
    Column("unit", String(32)),
    Column("is_synchronized", Boolean, nullable=False, default=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
    Index("idx_meter_reading_unsynced", "is_synchronized", "timestamp"),
)

sync_log = Table(
    "sync_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("operation_type", String(32), nullable=False),
    Column("batch_size", Integer, nullable=False, default=0),
    Column("success", Boolean, nullable=False),
    Column("error_message", Text),
    Column("synced_at", DateTime(timezone=True), nullable=False),
)

# Columns fetched from the remote master database
REMOTE_COLUMNS = {
    "tenant": [tenant.c.id, tenant.c.name, tenant.c.api_key, tenant.c.city,
               tenant.c.country, tenant.c.active],
    "meter": [meter.c.id, meter.c.tenant_id, meter.c.name, meter.c.device_id,
              meter.c.ip, meter.c.port, meter.c.protocol, meter.c.active],
    "device_register": [device_register.c.device_id, device_register.c.register_id,
                        device_register.c.register, device_register.c.field_name,
                        device_register.c.unit],
}
