from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Mapping

from nexushub.service.errors import ForbiddenError
from nexushub.storage.models import AuthContext


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"
    READONLY = "READONLY"


class Permission(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXECUTE = "execute"
    EXPORT = "export"
    SYNC = "sync"
    REFRESH = "refresh"


class Module(str, Enum):
    SCRIPTS = "scripts"
    REGISTRIES = "registries"
    ZABBIX = "zabbix"
    NOTES = "notes"
    PROCEDURES = "procedures"
    TODOS = "todos"
    FAVORITES = "favorites"
    RSS = "rss"
    USERS = "users"
    CATEGORIES = "categories"
    TAGS = "tags"


_CRUD = frozenset({Permission.CREATE, Permission.READ, Permission.UPDATE, Permission.DELETE})
_READ = frozenset({Permission.READ})

ROLE_PERMISSIONS: Mapping[Role, Mapping[Module, FrozenSet[Permission]]] = {
    Role.ADMIN: {
        Module.SCRIPTS: _CRUD | {Permission.EXECUTE},
        Module.REGISTRIES: _CRUD | {Permission.EXPORT},
        Module.ZABBIX: _CRUD | {Permission.SYNC},
        Module.NOTES: _CRUD,
        Module.PROCEDURES: _CRUD,
        Module.TODOS: _CRUD,
        Module.FAVORITES: _CRUD,
        Module.RSS: _CRUD | {Permission.REFRESH},
        Module.USERS: _CRUD,
        Module.CATEGORIES: _CRUD,
        Module.TAGS: _CRUD,
    },
    Role.USER: {
        Module.SCRIPTS: _CRUD,
        Module.REGISTRIES: _CRUD | {Permission.EXPORT},
        Module.ZABBIX: _CRUD,
        Module.NOTES: _CRUD,
        Module.PROCEDURES: _CRUD,
        Module.TODOS: _CRUD,
        Module.FAVORITES: _CRUD,
        Module.RSS: _CRUD | {Permission.REFRESH},
        Module.CATEGORIES: _CRUD,
        Module.TAGS: _CRUD,
    },
    Role.READONLY: {
        Module.SCRIPTS: _READ,
        Module.REGISTRIES: _READ,
        Module.ZABBIX: _READ,
        Module.NOTES: _READ,
        Module.PROCEDURES: _READ,
        Module.TODOS: _READ,
        Module.FAVORITES: _READ,
        Module.RSS: _READ,
        Module.CATEGORIES: _READ,
        Module.TAGS: _READ,
    },
}


def authorize(role: str, module: str, action: str) -> bool:
    """Table lookup; unknown roles, modules and actions are denied."""
    try:
        modules = ROLE_PERMISSIONS[Role(role)]
        allowed = modules.get(Module(module), frozenset())
        return Permission(action) in allowed
    except ValueError:
        return False


def require_permission(ctx: AuthContext, module: str, action: str) -> None:
    if not authorize(ctx.role, module, action):
        raise ForbiddenError(
            f"You don't have permission to {action} {module}",
            detail={"module": module, "action": action},
        )


def permissions_for(role: str) -> Dict[str, list[str]]:
    """Serializable view of a role's permission map, actions sorted."""
    try:
        modules = ROLE_PERMISSIONS[Role(role)]
    except ValueError:
        return {}
    return {
        module.value: sorted(permission.value for permission in actions)
        for module, actions in modules.items()
    }
