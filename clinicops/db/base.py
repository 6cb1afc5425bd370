from datetime import datetime

from sqlalchemy import JSON
from sqlalchemy.orm import DeclarativeBase

from clinicops.db.types import UTCDateTime


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    type_annotation_map = {
        datetime: UTCDateTime(),
        dict: JSON,
        list: JSON,
    }
