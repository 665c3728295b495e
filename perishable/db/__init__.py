# perishable/db/__init__.py
from perishable.db.base import Base, UTCDateTime, init_models

__all__ = ["Base", "UTCDateTime", "init_models"]
