"""
Identity package: the system of record for tags and members.

Modules of interest:
- models: TagId normalization, Tag and Member snapshots, status enums.
- auth: the TagAuthenticator callback for tags carrying auth data.
- store: IdentityStore, the administrative API with per-record locking.
- persistence: In-memory and PostgreSQL backends.
"""

from .models import TagId, Tag, Member, MemberActivity, MembershipStatus, StatusSource
from .auth import TagAuthenticator
from .store import IdentityStore
from .persistence import Persistence, InMemoryPersistence, PostgreSQLPersistence

__all__ = [
    "TagId",
    "Tag",
    "Member",
    "MemberActivity",
    "TagAuthenticator",
    "MembershipStatus",
    "StatusSource",
    "IdentityStore",
    "Persistence",
    "InMemoryPersistence",
    "PostgreSQLPersistence",
]
