"""Role-Based Access Control (RBAC).

Permissions are closed (resource, action) pairs checked by set membership.
A role holds direct permissions and may inherit other roles; inheritance is
flattened at evaluation time, on every call, so a revoked grant stops
working on the next check. Inheritance cycles are tolerated.

Resources:
- members: Member/customer records
- accounts: Deposit and savings accounts
- transactions: Postings and transfers
- loans: Loan applications and disbursements
- budgets: Budgets and variance analysis
- reports: Financial and regulatory reports
- users: Back-office user management
- settings: System configuration
- approvals: Maker-checker approvals
- documents: KYC and loan documents

Default roles (see ``DEFAULT_ROLES``):
- admin: Everything
- branch_manager: Everything except users and settings
- loan_officer: Loans, members and documents
- accountant: Budgets, reports and transactions
- teller: Create/read members, accounts and transactions
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from finguard.core.errors import ForbiddenError, UnauthorizedError
from finguard.core.logging import get_logger

if TYPE_CHECKING:
    from finguard.core.credential_store import CredentialStore, Principal

logger = get_logger(__name__)


class ResourceKind(str, Enum):
    """Protected resource kinds."""

    MEMBERS = "members"
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"
    LOANS = "loans"
    BUDGETS = "budgets"
    REPORTS = "reports"
    USERS = "users"
    SETTINGS = "settings"
    APPROVALS = "approvals"
    DOCUMENTS = "documents"


class ActionKind(str, Enum):
    """Actions on a resource."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"


@dataclass(frozen=True)
class Permission:
    """A single grant: ``action`` on ``resource``."""

    resource: ResourceKind
    action: ActionKind

    def __str__(self) -> str:
        return f"{self.resource.value}:{self.action.value}"

    @classmethod
    def parse(cls, value: str) -> "Permission":
        """Parse ``"resource:action"``.

        Raises:
            ValueError: Unknown resource or action
        """
        resource, _, action = value.partition(":")
        return cls(ResourceKind(resource), ActionKind(action))


@dataclass(frozen=True)
class RoleDefinition:
    """A role's own grants and the roles it inherits from."""

    id: str
    name: str
    direct_permissions: frozenset[Permission] = field(default_factory=frozenset)
    inherits: frozenset[str] = field(default_factory=frozenset)
    description: str | None = None


def grants(resources: Iterable[ResourceKind], actions: Iterable[ActionKind]) -> frozenset[Permission]:
    """Cartesian product of resources and actions."""
    actions = list(actions)
    return frozenset(Permission(r, a) for r in resources for a in actions)


ALL_PERMISSIONS = grants(ResourceKind, ActionKind)


@dataclass(frozen=True)
class DefaultRole:
    """Seed definition; inheritance by role name."""

    name: str
    description: str
    permissions: frozenset[Permission]
    inherits: tuple[str, ...] = ()


DEFAULT_ROLES: list[DefaultRole] = [
    DefaultRole(
        name="teller",
        description="Teller for daily transactions",
        permissions=grants(
            [ResourceKind.TRANSACTIONS, ResourceKind.ACCOUNTS, ResourceKind.MEMBERS],
            [ActionKind.CREATE, ActionKind.READ],
        ),
    ),
    DefaultRole(
        name="loan_officer",
        description="Loan officer for loan processing",
        permissions=grants(
            [ResourceKind.LOANS, ResourceKind.MEMBERS, ResourceKind.DOCUMENTS],
            ActionKind,
        ),
    ),
    DefaultRole(
        name="accountant",
        description="Accountant for financial reporting",
        permissions=grants(
            [ResourceKind.BUDGETS, ResourceKind.REPORTS, ResourceKind.TRANSACTIONS],
            ActionKind,
        ),
    ),
    DefaultRole(
        name="branch_manager",
        description="Branch manager with approval rights",
        permissions=grants(
            [ResourceKind.ACCOUNTS, ResourceKind.APPROVALS, ResourceKind.MEMBERS],
            ActionKind,
        ),
        inherits=("teller", "loan_officer", "accountant"),
    ),
    DefaultRole(
        name="admin",
        description="System administrator with full access",
        permissions=grants([ResourceKind.USERS, ResourceKind.SETTINGS], ActionKind),
        inherits=("branch_manager",),
    ),
]


class PermissionEvaluator:
    """Resolves whether a principal may perform an action on a resource.

    Nothing is cached between calls; each check reloads the principal and
    walks its role graph through the credential store.
    """

    def __init__(self, store: "CredentialStore"):
        self.store = store

    async def _active_principal(self, user_id: str) -> "Principal":
        principal = await self.store.find_user_by_id(user_id)
        if principal is None or not principal.is_active:
            raise UnauthorizedError("Unknown or inactive user")
        return principal

    async def effective_roles(self, role_id: str | None) -> list[RoleDefinition]:
        """The role and every role it inherits, each exactly once.

        Iterative depth-first walk with a visited set; unknown role ids
        are skipped.
        """
        if role_id is None:
            return []

        roles: list[RoleDefinition] = []
        visited: set[str] = set()
        stack = [role_id]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)

            role = await self.store.get_role(current)
            if role is None:
                logger.warning("Role not found during flattening", role_id=current)
                continue
            roles.append(role)
            stack.extend(parent for parent in role.inherits if parent not in visited)
        return roles

    async def effective_permissions(self, role_id: str | None) -> frozenset[Permission]:
        """Union of direct permissions over the flattened role graph."""
        permissions: set[Permission] = set()
        for role in await self.effective_roles(role_id):
            permissions |= role.direct_permissions
        return frozenset(permissions)

    async def permissions_for_user(self, user_id: str) -> frozenset[Permission]:
        principal = await self._active_principal(user_id)
        return await self.effective_permissions(principal.role_id)

    async def has_permission(
        self,
        user_id: str,
        resource: ResourceKind,
        action: ActionKind,
    ) -> bool:
        """Check if the user holds ``action`` on ``resource``.

        Raises:
            UnauthorizedError: Unknown or inactive user
        """
        permissions = await self.permissions_for_user(user_id)
        return Permission(ResourceKind(resource), ActionKind(action)) in permissions

    async def has_any(self, user_id: str, permissions: Iterable[Permission]) -> bool:
        """Check if the user holds at least one of ``permissions``."""
        effective = await self.permissions_for_user(user_id)
        for permission in permissions:
            if permission in effective:
                return True
        return False

    async def has_all(self, user_id: str, permissions: Iterable[Permission]) -> bool:
        """Check if the user holds every one of ``permissions``."""
        effective = await self.permissions_for_user(user_id)
        for permission in permissions:
            if permission not in effective:
                return False
        return True

    async def has_role(self, user_id: str, role_name: str) -> bool:
        """Check the user's role, including roles it inherits."""
        principal = await self._active_principal(user_id)
        roles = await self.effective_roles(principal.role_id)
        return any(role.name == role_name for role in roles)

    async def has_any_role(self, user_id: str, role_names: Iterable[str]) -> bool:
        principal = await self._active_principal(user_id)
        names = {role.name for role in await self.effective_roles(principal.role_id)}
        return any(name in names for name in role_names)

    async def authorize(
        self,
        principal: "Principal",
        resource: ResourceKind,
        action: ActionKind,
    ) -> bool:
        """Check an already-authenticated principal against the live role graph."""
        if not principal.is_active:
            raise UnauthorizedError("Inactive user")
        return await self.has_permission(principal.id, resource, action)

    async def require(
        self,
        principal: "Principal",
        resource: ResourceKind,
        action: ActionKind,
    ) -> None:
        """Like ``authorize`` but raises on denial.

        Raises:
            UnauthorizedError: Unknown or inactive user
            ForbiddenError: Permission not granted
        """
        if not await self.authorize(principal, resource, action):
            raise ForbiddenError(
                f"Permission denied: {ResourceKind(resource).value}:{ActionKind(action).value}"
            )


def list_permissions() -> list[dict]:
    """List all permissions grouped by resource."""
    return [
        {
            "resource": resource.value,
            "actions": [
                {"permission": str(Permission(resource, action)), "action": action.value}
                for action in ActionKind
            ],
        }
        for resource in sorted(ResourceKind, key=lambda r: r.value)
    ]


def list_roles() -> list[dict]:
    """List the default roles with their direct grant counts."""
    return [
        {
            "role": role.name,
            "description": role.description,
            "inherits": list(role.inherits),
            "permissions_count": len(role.permissions),
        }
        for role in DEFAULT_ROLES
    ]
