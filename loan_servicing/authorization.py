"""
Authorization Policy Module

Decides whether a caller role may perform a privileged loan operation.
Authentication happens upstream; the API receives the caller role as given.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Iterable, Optional, Set


class Permission(Enum):
    """Privileged loan operations"""
    APPROVE_LOAN = "approve_loan"
    REJECT_LOAN = "reject_loan"


class AuthorizationPolicy(ABC):
    """Grants or denies permissions to a caller role"""

    @abstractmethod
    def is_allowed(self, role: Optional[str], permission: Permission) -> bool:
        pass


class AllowAllPolicy(AuthorizationPolicy):
    """Every caller is treated as an administrator"""

    def is_allowed(self, role: Optional[str], permission: Permission) -> bool:
        return True


class RolePolicy(AuthorizationPolicy):
    """Static role to permission mapping"""

    def __init__(self, role_permissions: Dict[str, Set[Permission]]):
        self.role_permissions = {
            role.lower(): set(permissions) for role, permissions in role_permissions.items()
        }

    @classmethod
    def admins_only(cls, admin_roles: Iterable[str]) -> 'RolePolicy':
        """Policy granting every permission to the given roles and nothing to others"""
        return cls({role: set(Permission) for role in admin_roles})

    def is_allowed(self, role: Optional[str], permission: Permission) -> bool:
        if not role:
            return False
        return permission in self.role_permissions.get(role.lower(), set())
