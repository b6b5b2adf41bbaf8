"""Entities organized by business concept.

Each entity package holds its domain model (entity.py), its persistence model
(table.py) and its data access layer (repository.py).
"""

from .identity import Identity, IdentityRepository, IdentityTable
from .user import User, UserRepository, UserTable

__all__ = [
    "User",
    "UserTable",
    "UserRepository",
    "Identity",
    "IdentityTable",
    "IdentityRepository",
]
