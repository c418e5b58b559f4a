"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from grc_idp.models.audit import AuditCategory, AuditEvent
from grc_idp.models.idp_provider import IdpDriverKey, IdpProvider
from grc_idp.models.user import Role, User, user_roles

__all__ = [
    "AuditCategory",
    "AuditEvent",
    "IdpDriverKey",
    "IdpProvider",
    "Role",
    "User",
    "user_roles",
]
