"""Persistencia del gateway.

- SqlDeviceRepository: colaborador de persistencia sobre SQLAlchemy Core
- PersistenceWriter: escrituras fire-and-forget en threads de background
"""

from .repository import SqlDeviceRepository
from .tables import metadata
from .writer import PersistenceWriter

__all__ = ["SqlDeviceRepository", "PersistenceWriter", "metadata"]
