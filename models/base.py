from datetime import datetime

from sqlalchemy import Integer, DateTime
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

from utils.time_utils import utc_now

# declarative_base() returns a new base class from which all mapped classes should inherit.
# This object is the registry for all our table models.
Base = declarative_base()


class BaseModel(Base):
    """
    An abstract base model that provides common fields for all other models.

    This includes an auto-incrementing primary key 'id' and
    'created_at' / 'updated_at' timestamps. Timestamps are set on the Python
    side (UTC, microsecond precision) with a server default as a fallback for
    rows written outside the ORM.
    """
    __abstract__ = True

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        index=True,
        comment="The time the record was created (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        server_default=func.now(),
        comment="The time the record was last updated (UTC)"
    )


def enum_values(enum_cls) -> list[str]:
    """Store enum members by value ('active') rather than by name ('ACTIVE')."""
    return [member.value for member in enum_cls]
