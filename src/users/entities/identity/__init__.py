"""Identity entity module.

- Identity: Domain entity linking an external provider account to a user
- IdentityTable: Database persistence model
- IdentityRepository: Data access layer
"""

from .entity import Identity
from .repository import IdentityRepository
from .table import IdentityTable

__all__ = ["Identity", "IdentityTable", "IdentityRepository"]
