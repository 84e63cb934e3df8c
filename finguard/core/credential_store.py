"""Credential store: users, roles and hashed/encrypted secrets.

The engine reads principals and role definitions through the
``CredentialStore`` protocol and only ever writes lockout state and MFA
enrolment. ``SqlCredentialStore`` is the SQLAlchemy implementation.
"""

import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finguard.config import Settings, get_settings
from finguard.core.logging import get_logger
from finguard.core.rbac import DEFAULT_ROLES, Permission, RoleDefinition
from finguard.models import Role, RolePermission, User, role_inheritance

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated identity attached to a request."""

    id: str
    username: str
    email: str
    role_id: str | None
    is_active: bool = True
    locked_until: datetime | None = None
    phone: str | None = None
    mfa_enabled: bool = False
    mfa_method: str | None = None

    def is_locked_at(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


class CredentialStore(Protocol):
    """Outbound interface to wherever users and roles live."""

    async def find_user_by_id(self, user_id: str) -> Principal | None: ...

    async def find_user_by_username(self, username: str) -> Principal | None: ...

    async def update_lockout(self, user_id: str, locked_until: datetime | None) -> None: ...

    async def get_role(self, role_id: str) -> RoleDefinition | None: ...

    async def get_password_hash(self, user_id: str) -> str | None: ...

    async def get_totp_secret(self, user_id: str) -> str | None: ...

    async def set_totp_secret(self, user_id: str, secret: str, method: str) -> None: ...


def _principal_from_user(user: User) -> Principal:
    return Principal(
        id=user.id,
        username=user.username,
        email=user.email,
        role_id=user.role_id,
        is_active=user.is_active,
        locked_until=user.locked_until,
        phone=user.phone,
        mfa_enabled=user.mfa_enabled,
        mfa_method=user.mfa_method,
    )


class SqlCredentialStore:
    """SQLAlchemy-backed credential store.

    TOTP secrets are encrypted with a Fernet key derived from the master key.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.settings = settings or get_settings()
        key_bytes = hashlib.sha256(self.settings.finguard_master_key.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(key_bytes))

    # Users

    async def find_user_by_id(self, user_id: str) -> Principal | None:
        async with self.session_maker() as db:
            user = await db.get(User, user_id)
            return _principal_from_user(user) if user else None

    async def find_user_by_username(self, username: str) -> Principal | None:
        async with self.session_maker() as db:
            result = await db.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            return _principal_from_user(user) if user else None

    async def update_lockout(self, user_id: str, locked_until: datetime | None) -> None:
        async with self.session_maker() as db, db.begin():
            await db.execute(
                update(User).where(User.id == user_id).values(locked_until=locked_until)
            )

    async def get_password_hash(self, user_id: str) -> str | None:
        async with self.session_maker() as db:
            result = await db.execute(select(User.password_hash).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def set_password_hash(self, user_id: str, password_hash: str) -> None:
        async with self.session_maker() as db, db.begin():
            await db.execute(
                update(User).where(User.id == user_id).values(password_hash=password_hash)
            )

    async def record_login(self, user_id: str, at: datetime) -> None:
        async with self.session_maker() as db, db.begin():
            await db.execute(update(User).where(User.id == user_id).values(last_login_at=at))

    async def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        role_id: str | None = None,
        phone: str | None = None,
        mfa_enabled: bool = False,
        mfa_method: str | None = None,
        is_active: bool = True,
    ) -> Principal:
        """Create a user row (provisioning and tests)."""
        user = User(
            username=username,
            email=email,
            phone=phone,
            password_hash=password_hash,
            role_id=role_id,
            is_active=is_active,
            mfa_enabled=mfa_enabled,
            mfa_method=mfa_method,
        )
        async with self.session_maker() as db, db.begin():
            db.add(user)
        return _principal_from_user(user)

    # MFA enrolment

    async def get_totp_secret(self, user_id: str) -> str | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(User.totp_secret_encrypted).where(User.id == user_id)
            )
            encrypted = result.scalar_one_or_none()
        if not encrypted:
            return None
        try:
            return self._fernet.decrypt(encrypted.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("Stored TOTP secret cannot be decrypted", user_id=user_id)
            return None

    async def set_totp_secret(self, user_id: str, secret: str, method: str) -> None:
        encrypted = self._fernet.encrypt(secret.encode("utf-8")).decode("utf-8")
        async with self.session_maker() as db, db.begin():
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(totp_secret_encrypted=encrypted, mfa_enabled=True, mfa_method=method)
            )

    async def set_mfa(self, user_id: str, enabled: bool, method: str | None = None) -> None:
        """Enable an out-of-band MFA method or disable MFA entirely."""
        values: dict = {"mfa_enabled": enabled, "mfa_method": method if enabled else None}
        if not enabled:
            values["totp_secret_encrypted"] = None
        async with self.session_maker() as db, db.begin():
            await db.execute(update(User).where(User.id == user_id).values(**values))

    # Roles

    async def get_role(self, role_id: str) -> RoleDefinition | None:
        async with self.session_maker() as db:
            role = await db.get(Role, role_id)
            if role is None:
                return None
            parents = await db.execute(
                select(role_inheritance.c.parent_role_id).where(
                    role_inheritance.c.role_id == role_id
                )
            )
            permissions = set()
            for grant in role.permissions:
                try:
                    permissions.add(Permission.parse(f"{grant.resource}:{grant.action}"))
                except ValueError:
                    logger.warning(
                        "Ignoring unknown permission on role",
                        role=role.name,
                        resource=grant.resource,
                        action=grant.action,
                    )
            return RoleDefinition(
                id=role.id,
                name=role.name,
                direct_permissions=frozenset(permissions),
                inherits=frozenset(parents.scalars().all()),
                description=role.description,
            )

    async def find_role_by_name(self, name: str) -> RoleDefinition | None:
        async with self.session_maker() as db:
            result = await db.execute(select(Role.id).where(Role.name == name))
            role_id = result.scalar_one_or_none()
        return await self.get_role(role_id) if role_id else None

    async def create_role(
        self,
        name: str,
        permissions: Iterable[Permission] = (),
        inherits: Iterable[str] = (),
        description: str | None = None,
    ) -> RoleDefinition:
        """Create a role with direct grants and parent role ids."""
        role = Role(name=name, description=description)
        async with self.session_maker() as db, db.begin():
            db.add(role)
            await db.flush()
            for permission in permissions:
                db.add(RolePermission(
                    role_id=role.id,
                    resource=permission.resource.value,
                    action=permission.action.value,
                ))
            await self._add_parents(db, role.id, inherits)
        return await self.get_role(role.id)

    async def add_inheritance(self, role_id: str, parent_role_ids: Iterable[str]) -> None:
        async with self.session_maker() as db, db.begin():
            await self._add_parents(db, role_id, parent_role_ids)

    async def _add_parents(self, db: AsyncSession, role_id: str, parent_role_ids: Iterable[str]):
        rows = [{"role_id": role_id, "parent_role_id": p} for p in parent_role_ids]
        if rows:
            await db.execute(insert(role_inheritance), rows)

    async def grant(self, role_id: str, permission: Permission) -> None:
        async with self.session_maker() as db, db.begin():
            db.add(RolePermission(
                role_id=role_id,
                resource=permission.resource.value,
                action=permission.action.value,
            ))

    async def revoke_grant(self, role_id: str, permission: Permission) -> None:
        async with self.session_maker() as db, db.begin():
            result = await db.execute(
                select(RolePermission).where(
                    RolePermission.role_id == role_id,
                    RolePermission.resource == permission.resource.value,
                    RolePermission.action == permission.action.value,
                )
            )
            for grant in result.scalars().all():
                await db.delete(grant)


async def seed_default_roles(store: SqlCredentialStore) -> dict[str, RoleDefinition]:
    """Install the default banking roles. Existing roles are left untouched.

    Returns:
        Role definitions keyed by name
    """
    roles: dict[str, RoleDefinition] = {}
    for default in DEFAULT_ROLES:
        existing = await store.find_role_by_name(default.name)
        if existing is not None:
            roles[default.name] = existing
            continue
        roles[default.name] = await store.create_role(
            name=default.name,
            permissions=default.permissions,
            inherits=[roles[parent].id for parent in default.inherits],
            description=default.description,
        )
        logger.info("Seeded role", role=default.name)
    return roles
