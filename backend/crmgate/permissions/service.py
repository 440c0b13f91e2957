import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from crmgate.auth.models import User
from crmgate.core.config import settings
from crmgate.core.errors import (
    PermissionDenied,
    RoleNotFound,
    UnknownAction,
    UnknownEntity,
    UserNotFound,
)
from crmgate.crm.client import CrmClient, crm_client_for_tenant
from crmgate.permissions.models import SYNTHETIC_ROLES, Role, UserRole
from crmgate.permissions.schemas import EntityPermission, FieldPermission, UserPermissions
from crmgate.tenants.service import resolve_tenant

logger = logging.getLogger(__name__)

ACTIONS = ("create", "read", "edit", "delete")
FIELD_ACTIONS = ("read", "edit")
# Scope narrowing (own/team) is not modeled: any grant counts.
GRANTED_SCOPES = {"yes", "own", "team", "all"}
CACHE_PREFIX = "user-permissions:"

PermissionSet = dict[str, EntityPermission]


def permissions_cache_key(user_id: str) -> str:
    return f"{CACHE_PREFIX}{user_id}"


def _role_tables(detail: dict) -> tuple[Any, Any]:
    data = detail.get("data") or {}
    if isinstance(data, dict) and ("table" in data or "fieldTable" in data):
        return data.get("table"), data.get("fieldTable")
    return data, detail.get("fieldData")


def normalize_role_document(detail: dict) -> PermissionSet:
    """Fold the CRM's action table and field table into one boolean document."""
    table, field_table = _role_tables(detail)
    result: PermissionSet = {}

    if isinstance(table, dict):
        for entity, actions in table.items():
            actions = actions if isinstance(actions, dict) else {}
            result[entity] = EntityPermission(
                **{action: actions.get(action) in GRANTED_SCOPES for action in ACTIONS}
            )

    if isinstance(field_table, dict):
        for entity, fields in field_table.items():
            if not isinstance(fields, dict):
                continue
            entity_perms = result.setdefault(entity, EntityPermission())
            for field_name, perms in fields.items():
                perms = perms if isinstance(perms, dict) else {}
                entity_perms.fields[field_name] = FieldPermission(
                    read=perms.get("read") == "yes",
                    edit=perms.get("edit") == "yes",
                )

    return result


def parse_permission_set(document: Any) -> PermissionSet:
    if not isinstance(document, dict):
        return {}
    result: PermissionSet = {}
    for entity, perms in document.items():
        if isinstance(perms, dict):
            result[entity] = EntityPermission.model_validate(perms)
    return result


def dump_permission_set(perms: PermissionSet) -> dict:
    return {entity: p.model_dump() for entity, p in perms.items()}


def merge_permissions(base: PermissionSet, incoming: PermissionSet) -> PermissionSet:
    """Boolean-OR union of two permission sets. Neither input is mutated."""
    result = {entity: p.model_copy(deep=True) for entity, p in base.items()}
    for entity, perms in incoming.items():
        current = result.get(entity)
        if current is None:
            result[entity] = perms.model_copy(deep=True)
            continue
        for action in ACTIONS:
            setattr(current, action, getattr(current, action) or getattr(perms, action))
        for field_name, fp in perms.fields.items():
            existing = current.fields.setdefault(field_name, FieldPermission())
            existing.read = existing.read or fp.read
            existing.edit = existing.edit or fp.edit
    return result


def apply_admin_override(perms: PermissionSet, known: Iterable[PermissionSet] = ()) -> PermissionSet:
    """Grant everything on every entity and field seen in ``perms`` or ``known``."""
    shape: dict[str, set[str]] = {}
    for source in (perms, *known):
        for entity, p in source.items():
            shape.setdefault(entity, set()).update(p.fields)

    return {
        entity: EntityPermission(
            create=True,
            read=True,
            edit=True,
            delete=True,
            fields={name: FieldPermission(read=True, edit=True) for name in sorted(fields)},
        )
        for entity, fields in shape.items()
    }


class PermissionResolver:
    def __init__(
        self,
        db: Session,
        cache,
        *,
        client_factory: Callable[..., CrmClient] = crm_client_for_tenant,
        ttl_seconds: int | None = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.client_factory = client_factory
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.PERMISSIONS_CACHE_TTL_SECONDS

    def sync_roles_and_permissions(self, tenant_id: str | None = None) -> int:
        tenant = resolve_tenant(self.db, tenant_id)
        client = self.client_factory(tenant)

        logger.info("Fetching roles from CRM for tenant %s", tenant.id)
        roles = client.list_roles()
        logger.info("Found %s roles in CRM", len(roles))

        now = datetime.utcnow()
        for listed in roles:
            detail = client.get_role(listed["id"])
            document = dump_permission_set(normalize_role_document(detail))
            name = listed.get("name") or detail.get("name") or listed["id"]

            role = self.db.query(Role).filter(Role.external_id == listed["id"]).first()
            if role is None:
                self.db.add(
                    Role(
                        id=f"r_{secrets.token_hex(10)}",
                        external_id=listed["id"],
                        name=name,
                        permissions=document,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                role.name = name
                role.permissions = document
                role.updated_at = now
            logger.info("Synced permissions for role %s (%s)", name, listed["id"])

        self.db.commit()
        cleared = self.cache.clear_pattern(f"{CACHE_PREFIX}*")
        logger.info("Role sync done: %s roles, %s cached views dropped", len(roles), cleared)
        return len(roles)

    def _user_roles(self, user_id: str) -> list[Role]:
        return (
            self.db.query(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(UserRole.user_id == user_id)
            .all()
        )

    def get_user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if not user:
            raise UserNotFound()
        return user

    def get_user_permissions(self, user_id: str) -> UserPermissions:
        key = permissions_cache_key(user_id)
        cached = self.cache.get(key)
        if cached:
            return UserPermissions.model_validate(cached)

        user = self.get_user(user_id)

        merged: PermissionSet = {}
        for role in self._user_roles(user_id):
            merged = merge_permissions(merged, parse_permission_set(role.permissions))

        if user.is_admin:
            known = [parse_permission_set(r.permissions) for r in self.db.query(Role).all()]
            merged = apply_admin_override(merged, known)

        result = UserPermissions(user_id=user_id, is_admin=user.is_admin, entities=merged)
        self.cache.set(key, result.model_dump(mode="json"), self.ttl_seconds)
        return result

    def check_user_permission(
        self,
        user_id: str,
        entity_type: str,
        action: str,
        field_name: str | None = None,
    ) -> bool:
        perms = self.get_user_permissions(user_id)
        # Admins pass any combination, including unmodeled actions.
        if perms.is_admin:
            return True

        if action not in ACTIONS:
            raise UnknownAction(f"Unknown action: {action}")
        if not entity_type:
            raise UnknownEntity("Entity type is required")

        entity = perms.entities.get(entity_type)
        if entity is None:
            return False

        if field_name and action in FIELD_ACTIONS:
            fp = entity.fields.get(field_name)
            # Unlisted fields inherit the entity-level grant.
            return getattr(fp, action) if fp else getattr(entity, action)

        return getattr(entity, action)

    def clear_user_permission_cache(self, user_id: str) -> None:
        self.cache.delete(permissions_cache_key(user_id))

    def _assignable_role(self, role_external_id: str) -> Role:
        if role_external_id in SYNTHETIC_ROLES:
            raise PermissionDenied("Synthetic roles are assigned at login")
        role = self.db.query(Role).filter(Role.external_id == role_external_id).first()
        if not role:
            raise RoleNotFound()
        return role

    def assign_role(self, user_id: str, role_external_id: str) -> None:
        self.get_user(user_id)
        role = self._assignable_role(role_external_id)
        exists = (
            self.db.query(UserRole)
            .filter(UserRole.user_id == user_id, UserRole.role_id == role.id)
            .first()
        )
        if not exists:
            self.db.add(UserRole(id=f"ur_{secrets.token_hex(12)}", user_id=user_id, role_id=role.id))
            self.db.commit()
            logger.info("Assigned role %s to user %s", role.name, user_id)
        self.clear_user_permission_cache(user_id)

    def unassign_role(self, user_id: str, role_external_id: str) -> None:
        role = self._assignable_role(role_external_id)
        self.db.query(UserRole).filter(
            UserRole.user_id == user_id, UserRole.role_id == role.id
        ).delete(synchronize_session=False)
        self.db.commit()
        self.clear_user_permission_cache(user_id)
