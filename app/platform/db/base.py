import sqlalchemy
from sqlalchemy import Column, String
from sqlalchemy.orm import declarative_base
from uuid_extension import uuid7

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, matching the DateTime columns of the scan tables."""
    from datetime import datetime, timezone
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BaseModel(Base):
    __abstract__ = True
    id = Column(String, primary_key=True, default=lambda: str(uuid7()), index=True)
    created_at = Column(
        sqlalchemy.DateTime, default=utcnow, server_default=sqlalchemy.func.now(), nullable=False
    )
    updated_at = Column(
        sqlalchemy.DateTime,
        default=utcnow,
        server_default=sqlalchemy.func.now(),
        onupdate=utcnow,
        nullable=False,
    )

# Note: Models will import this Base. Do not import models here to avoid circular imports.
# Import models in app/features/scan/models/__init__.py before create_all / migrations.
