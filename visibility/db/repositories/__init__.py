"""Repository package for database access."""

from .restrictions import SqliteRestrictionRepository
from .library import SqliteLibraryRepository
from .exclusions import SqliteExclusionRepository

__all__ = [
    "SqliteRestrictionRepository",
    "SqliteLibraryRepository",
    "SqliteExclusionRepository",
]
