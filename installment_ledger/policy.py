"""
Authorization Policy

The ledger does not authenticate anyone. Callers pass an Actor with each
mutation and the manager asks the injected policy whether the actor may do it.
RolePolicy reproduces the shop's default rules; AllowAllPolicy is for trusted
system callers such as the repair tooling.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set

from .exceptions import PermissionDeniedError


class Role(Enum):
    """Staff roles"""
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class Permission(Enum):
    """Ledger operations that can be restricted"""
    RECORD_PAYMENT = "record_payment"
    EDIT_PAYMENT = "edit_payment"
    DELETE_PAYMENT = "delete_payment"
    SUBMIT_PAYMENT_REQUEST = "submit_payment_request"
    REVIEW_PAYMENT_REQUEST = "review_payment_request"
    TRANSFER_CASH = "transfer_cash"
    MANAGE_EXPENSES = "manage_expenses"
    CREATE_PLAN = "create_plan"
    REPAIR_LEDGER = "repair_ledger"


@dataclass(frozen=True)
class Actor:
    """Identity performing an operation"""
    user_id: str
    role: Role

    @classmethod
    def of(cls, user_id: str, role) -> 'Actor':
        return cls(user_id=user_id, role=role if isinstance(role, Role) else Role(role))


class AuthorizationPolicy(ABC):
    """Capability check injected into the managers"""

    @abstractmethod
    def is_allowed(self, actor: Actor, permission: Permission) -> bool:
        pass

    @abstractmethod
    def can_transfer_to(self, sender: Actor, recipient_role: Role) -> bool:
        pass

    def require(self, actor: Optional[Actor], permission: Permission) -> None:
        """Raise PermissionDeniedError unless allowed; None means a trusted system call"""
        if actor is None:
            return
        if not self.is_allowed(actor, permission):
            raise PermissionDeniedError(
                f"Role {actor.role.value} is not allowed to {permission.value.replace('_', ' ')}"
            )


class AllowAllPolicy(AuthorizationPolicy):
    def is_allowed(self, actor: Actor, permission: Permission) -> bool:
        return True

    def can_transfer_to(self, sender: Actor, recipient_role: Role) -> bool:
        return True


DEFAULT_ROLE_PERMISSIONS: Dict[Role, Set[Permission]] = {
    Role.ADMIN: set(Permission),
    Role.MANAGER: {
        Permission.RECORD_PAYMENT,
        Permission.EDIT_PAYMENT,
        Permission.DELETE_PAYMENT,
        Permission.SUBMIT_PAYMENT_REQUEST,
        Permission.REVIEW_PAYMENT_REQUEST,
        Permission.TRANSFER_CASH,
        Permission.MANAGE_EXPENSES,
        Permission.CREATE_PLAN,
    },
    Role.EMPLOYEE: {
        Permission.RECORD_PAYMENT,
        Permission.SUBMIT_PAYMENT_REQUEST,
        Permission.TRANSFER_CASH,
        Permission.MANAGE_EXPENSES,
        Permission.CREATE_PLAN,
    },
}

# Cash only moves up the hierarchy, except from admins
DEFAULT_TRANSFER_TARGETS: Dict[Role, Set[Role]] = {
    Role.ADMIN: set(Role),
    Role.MANAGER: {Role.ADMIN},
    Role.EMPLOYEE: {Role.MANAGER, Role.ADMIN},
}


class RolePolicy(AuthorizationPolicy):
    """Static role to permission mapping"""

    def __init__(
        self,
        permissions: Optional[Dict[Role, Set[Permission]]] = None,
        transfer_targets: Optional[Dict[Role, Set[Role]]] = None
    ):
        self.permissions = permissions or DEFAULT_ROLE_PERMISSIONS
        self.transfer_targets = transfer_targets or DEFAULT_TRANSFER_TARGETS

    def is_allowed(self, actor: Actor, permission: Permission) -> bool:
        return permission in self.permissions.get(actor.role, set())

    def can_transfer_to(self, sender: Actor, recipient_role: Role) -> bool:
        return recipient_role in self.transfer_targets.get(sender.role, set())
