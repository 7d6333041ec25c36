"""
Custom roles and permissions of one tenant.

`RoleRegistry` works on a session bound to a tenant database, every
operation is one unit of work: it either commits or rolls back before
returning. Business rules enforced here:

- Role and permission names (and permission codes) are unique per tenant.
- A role only ever references permission ids existing in the same tenant.
- A role assigned to a user, or a permission used by a role, cannot be deleted.
- Default roles are removable only by the platform superadmin.
"""

from dataclasses import dataclass
from logging import getLogger
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from routehub.src import exceptions
from routehub.src.constants import DEFAULT_SUPERADMIN_EMAIL
from routehub.src.db import Permission, Role, User
from routehub.src.enums import RoleType, UserRole
from routehub.src.functions import updateIfChanged
from routehub.src.permissions import (
    BUILTIN_MATRIX,
    DEFAULT_ROLES,
    permissionCatalogue,
)
from routehub.src.schemas import Identity

logger = getLogger("RoleRegistry")


@dataclass
class ExpandedRole:
    role: Role
    permissions: List[Permission]


def isElevated(identity: Identity) -> bool:
    """
    Whether the caller may remove protected default roles.

    Only identities issued from the platform user table qualify, tenant
    accounts never do whatever their email.
    """
    if identity.role == UserRole.SUPERADMIN:
        return True
    if identity.organization_id is not None or not identity.email:
        return False
    return identity.email.lower() == DEFAULT_SUPERADMIN_EMAIL.lower()


def _asUUID(value) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class RoleRegistry:
    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _commit(self, conflictColumn=None) -> None:
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if conflictColumn is not None:
                raise exceptions.DuplicateValue(conflictColumn) from e
            raise

    def _checkPermissionIds(self, permissionIds: Iterable) -> List[str]:
        """
        Validate permission ids against the tenant and normalize them.

        Returns:
            List[str]: The ids as strings, in the given order, without duplicates.

        Raises:
            exceptions.UnknownValue: Citing the first id missing from the tenant.
        """
        ordered: List[UUID] = []
        for value in permissionIds:
            permissionId = _asUUID(value)
            if permissionId is None:
                raise exceptions.UnknownValue(Role.permission_ids, value)
            if permissionId not in ordered:
                ordered.append(permissionId)
        if not ordered:
            return []
        found = {
            row.id
            for row in self.session.query(Permission.id).filter(
                Permission.id.in_(ordered)
            )
        }
        for permissionId in ordered:
            if permissionId not in found:
                raise exceptions.UnknownValue(Role.permission_ids, permissionId)
        return [str(permissionId) for permissionId in ordered]

    def _expand(self, roles: List[Role]) -> List[ExpandedRole]:
        ids = {
            _asUUID(value) for role in roles for value in (role.permission_ids or [])
        }
        ids.discard(None)
        byId: Dict[UUID, Permission] = {}
        if ids:
            for permission in self.session.query(Permission).filter(
                Permission.id.in_(ids)
            ):
                byId[permission.id] = permission
        expanded = []
        for role in roles:
            permissions = []
            for value in role.permission_ids or []:
                permission = byId.get(_asUUID(value))
                if permission is not None:
                    permissions.append(permission)
            expanded.append(ExpandedRole(role=role, permissions=permissions))
        return expanded

    def _role(self, roleId: UUID) -> Role:
        role = self.session.query(Role).filter(Role.id == roleId).first()
        if role is None:
            raise exceptions.InvalidIdentifier()
        return role

    def _permission(self, permissionId: UUID) -> Permission:
        permission = (
            self.session.query(Permission).filter(Permission.id == permissionId).first()
        )
        if permission is None:
            raise exceptions.InvalidIdentifier()
        return permission

    # ------------------------------------------------------------------ #
    # Roles
    # ------------------------------------------------------------------ #
    def createRole(
        self,
        name: str,
        description: Optional[str] = None,
        permissionIds: Iterable = (),
        type: RoleType = RoleType.CUSTOM,
        allowDelete: bool = True,
    ) -> ExpandedRole:
        """
        Create a role.

        Raises:
            exceptions.DuplicateValue: If the name is already used in the tenant.
            exceptions.UnknownValue: If a permission id does not exist in the tenant.
        """
        if self.session.query(Role.id).filter(Role.name == name).first():
            raise exceptions.DuplicateValue(Role.name)
        role = Role(
            name=name,
            description=description,
            permission_ids=self._checkPermissionIds(permissionIds),
            type=RoleType(type).value,
            allow_delete=allowDelete,
        )
        self.session.add(role)
        self._commit(Role.name)
        self.session.refresh(role)
        return self._expand([role])[0]

    def updateRole(
        self,
        roleId: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissionIds: Optional[Iterable] = None,
    ) -> ExpandedRole:
        """
        Update a role, only the given fields are changed.

        A given permission id list replaces the current one and is revalidated.

        Raises:
            exceptions.InvalidIdentifier: If the role does not exist.
            exceptions.DuplicateValue: If the new name belongs to another role.
            exceptions.UnknownValue: If a permission id does not exist in the tenant.
        """
        role = self._role(roleId)
        if name is not None and name != role.name:
            duplicate = (
                self.session.query(Role.id)
                .filter(Role.name == name, Role.id != role.id)
                .first()
            )
            if duplicate:
                raise exceptions.DuplicateValue(Role.name)
        patch = {Role.name.key: name, Role.description.key: description}
        if permissionIds is not None:
            patch[Role.permission_ids.key] = self._checkPermissionIds(permissionIds)
        updateIfChanged(
            role, patch, [Role.name.key, Role.description.key, Role.permission_ids.key]
        )
        if self.session.is_modified(role):
            self._commit(Role.name)
            self.session.refresh(role)
        return self._expand([role])[0]

    def getRole(self, roleId: UUID) -> ExpandedRole:
        return self._expand([self._role(roleId)])[0]

    def listRoles(
        self, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[ExpandedRole], int]:
        """
        List roles with their permissions expanded inline.

        Returns:
            Tuple[List[ExpandedRole], int]: The requested page and the total count.
        """
        query = self.session.query(Role)
        total = query.count()
        query = query.order_by(Role.created_at, Role.name).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return self._expand(query.all()), total

    def deleteRole(self, roleId: UUID, identity: Identity) -> None:
        """
        Delete a role.

        Raises:
            exceptions.InvalidIdentifier: If the role does not exist.
            exceptions.DataInUse: Listing the users still holding the role.
            exceptions.ProtectedResource: If the role is a protected default role
                and the caller is not the platform superadmin.
        """
        role = self._role(roleId)
        holders = (
            self.session.query(User.email)
            .filter(User.role_id == role.id)
            .order_by(User.email)
            .all()
        )
        if holders:
            raise exceptions.DataInUse(Role, [row.email for row in holders])
        protected = role.type == RoleType.DEFAULT.value or not role.allow_delete
        if protected and not isElevated(identity):
            raise exceptions.ProtectedResource(Role)
        self.session.delete(role)
        self._commit()
        logger.info("Deleted role %s (%s)", role.name, role.id)

    # ------------------------------------------------------------------ #
    # Permissions
    # ------------------------------------------------------------------ #
    def createPermission(
        self, name: str, code: str, description: Optional[str] = None
    ) -> Permission:
        """
        Create a permission.

        Raises:
            exceptions.DuplicateValue: If the code or the name already exists in the tenant.
        """
        if self.session.query(Permission.id).filter(Permission.code == code).first():
            raise exceptions.DuplicateValue(Permission.code)
        if self.session.query(Permission.id).filter(Permission.name == name).first():
            raise exceptions.DuplicateValue(Permission.name)
        permission = Permission(name=name, code=code, description=description)
        self.session.add(permission)
        self._commit(Permission.code)
        self.session.refresh(permission)
        return permission

    def getPermission(self, permissionId: UUID) -> Permission:
        return self._permission(permissionId)

    def listPermissions(
        self, offset: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[Permission], int]:
        query = self.session.query(Permission)
        total = query.count()
        query = query.order_by(Permission.code).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all(), total

    def rolesUsing(self, permissionId: UUID) -> List[str]:
        """Names of the roles whose permission list references the permission."""
        key = str(permissionId)
        roles = self.session.query(Role.name, Role.permission_ids).order_by(Role.name)
        return [row.name for row in roles if key in (row.permission_ids or [])]

    def deletePermission(self, permissionId: UUID) -> None:
        """
        Delete a permission.

        Raises:
            exceptions.InvalidIdentifier: If the permission does not exist.
            exceptions.DataInUse: Listing every role still referencing the permission.
        """
        permission = self._permission(permissionId)
        references = self.rolesUsing(permission.id)
        if references:
            raise exceptions.DataInUse(Permission, references)
        self.session.delete(permission)
        self._commit()
        logger.info("Deleted permission %s (%s)", permission.code, permission.id)

    def resolvePermissionCodes(self, roleId: Optional[UUID]) -> List[str]:
        """
        Permission codes granted by a custom role, in role order.

        An absent or deleted role grants nothing.
        """
        if roleId is None:
            return []
        role = self.session.query(Role).filter(Role.id == roleId).first()
        if role is None:
            return []
        return [permission.code for permission in self._expand([role])[0].permissions]

    # ------------------------------------------------------------------ #
    # Seed
    # ------------------------------------------------------------------ #
    def seedDefaults(self) -> None:
        """
        Seed the built-in permission catalogue and the default roles.

        Existing rows are kept as they are, so seeding can be re-applied.
        """
        existing = {
            row.code: row.id for row in self.session.query(Permission.code, Permission.id)
        }
        for code, name in permissionCatalogue().items():
            if code in existing:
                continue
            permission = Permission(name=name, code=code)
            self.session.add(permission)
            self.session.flush()
            existing[code] = permission.id

        seededRoles = {row.name for row in self.session.query(Role.name)}
        for name, (fixedRole, description) in DEFAULT_ROLES.items():
            if name in seededRoles:
                continue
            codes = sorted(code for code in BUILTIN_MATRIX[fixedRole] if code in existing)
            self.session.add(
                Role(
                    name=name,
                    description=description,
                    permission_ids=[str(existing[code]) for code in codes],
                    type=RoleType.DEFAULT.value,
                    allow_delete=False,
                )
            )
        self.session.commit()
