"""Resource handlers by kind.

APPLY_ORDER lists kinds in dependency order: everything else lives on a
cluster, and grants and extensions refer to users and databases.
Deletions run in the reverse order.
"""

from .backup import BackupConfigHandler, BackupConfigResource
from .base import (
    ResourceDiff,
    ResourceError,
    ResourceHandler,
    ResourceModel,
    UnsupportedOperationError,
)
from .cluster import ClusterHandler, ClusterResource
from .database import DatabaseHandler, DatabaseResource
from .extension import ExtensionHandler, ExtensionResource
from .firewall import FirewallHandler, FirewallResource
from .grant import GrantHandler, GrantResource
from .user import UserHandler, UserResource

HANDLERS: dict[str, type[ResourceHandler]] = {
    handler.kind: handler
    for handler in (
        ClusterHandler,
        FirewallHandler,
        BackupConfigHandler,
        UserHandler,
        DatabaseHandler,
        ExtensionHandler,
        GrantHandler,
    )
}

APPLY_ORDER: tuple[str, ...] = tuple(HANDLERS)

__all__ = [
    "APPLY_ORDER",
    "HANDLERS",
    "BackupConfigHandler",
    "BackupConfigResource",
    "ClusterHandler",
    "ClusterResource",
    "DatabaseHandler",
    "DatabaseResource",
    "ExtensionHandler",
    "ExtensionResource",
    "FirewallHandler",
    "FirewallResource",
    "GrantHandler",
    "GrantResource",
    "ResourceDiff",
    "ResourceError",
    "ResourceHandler",
    "ResourceModel",
    "UnsupportedOperationError",
    "UserHandler",
    "UserResource",
]
