"""User entity module.

This module contains all User-related classes organized by responsibility:
- User: Domain entity
- UserTable: Database persistence model
- UserRepository: Data access layer
"""

from .entity import User, normalize_email
from .repository import UserRepository
from .table import UserTable

__all__ = ["User", "UserTable", "UserRepository", "normalize_email"]
