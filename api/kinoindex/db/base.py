"""Import all models here so metadata.create_all sees every table."""

from kinoindex.db.base_class import Base
from kinoindex.models import catalog  # noqa: F401

__all__ = ["Base"]
