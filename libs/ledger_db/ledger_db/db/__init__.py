from datetime import datetime

from sqlalchemy.orm import DeclarativeBase as _DeclarativeBase
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from common.db.db_utils import DateTimeUTC, create_metadata


class Base(_DeclarativeBase):
    __abstract__ = True

    metadata = create_metadata()
    type_annotation_map = {datetime: DateTimeUTC}

    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(), server_default=func.current_timestamp())


class UpdatedAtMixin:
    updated_at: Mapped[datetime] = mapped_column(
        DateTimeUTC(),
        server_default=func.current_timestamp(),
        onupdate=func.current_timestamp(),
    )
