"""Role discovery, matching and session caching."""

from aws_agent_broker.roles.catalog import Role, RoleCatalog, RoleMatch
from aws_agent_broker.roles.sessions import RoleSession, RoleSessionCache

__all__ = ["Role", "RoleCatalog", "RoleMatch", "RoleSession", "RoleSessionCache"]
