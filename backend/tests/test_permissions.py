import pytest

from crmgate.core.errors import PermissionDenied, RoleNotFound, UnknownAction, UnknownEntity, UserNotFound
from crmgate.permissions.models import Role, UserRole
from crmgate.permissions.schemas import EntityPermission, FieldPermission
from crmgate.permissions.service import (
    apply_admin_override,
    merge_permissions,
    normalize_role_document,
    permissions_cache_key,
)

SALES_DATA = {
    "Account": {"create": "no", "read": "team", "edit": "own", "delete": "no"},
    "Lead": {"create": "yes", "read": "all", "edit": "all", "delete": "all"},
    "Contact": False,
}
SALES_FIELDS = {
    "Account": {"industry": {"read": "yes", "edit": "no"}, "revenue": {"read": "no", "edit": "no"}},
}
SUPPORT_DATA = {
    "Case": {"create": "yes", "read": "yes", "edit": "yes", "delete": "no"},
    "Account": {"create": "no", "read": "yes", "edit": "no", "delete": "yes"},
}


@pytest.fixture
def synced_crm(crm):
    crm.add_role("crm-role-sales", "Sales", SALES_DATA, SALES_FIELDS)
    crm.add_role("crm-role-support", "Support", SUPPORT_DATA)
    return crm


@pytest.fixture
def sam(auth):
    return auth.login("sam", "hunter2").user


def _grant(db, user_id, external_id):
    role = db.query(Role).filter(Role.external_id == external_id).one()
    db.add(UserRole(id=f"ur_{external_id}", user_id=user_id, role_id=role.id))
    db.commit()


def test_normalize_role_document_folds_scopes_and_fields():
    perms = normalize_role_document({"data": SALES_DATA, "fieldData": SALES_FIELDS})

    assert perms["Account"].read is True
    assert perms["Account"].edit is True
    assert perms["Account"].create is False
    assert perms["Lead"].delete is True
    assert perms["Account"].fields["industry"] == FieldPermission(read=True, edit=False)
    assert perms["Account"].fields["revenue"] == FieldPermission()
    # Disabled scopes carry no action table.
    assert perms["Contact"] == EntityPermission()


def test_normalize_accepts_nested_table_layout():
    perms = normalize_role_document(
        {"data": {"table": {"Case": {"read": "own"}}, "fieldTable": {"Case": {"status": {"edit": "yes"}}}}}
    )

    assert perms["Case"].read is True
    assert perms["Case"].edit is False
    assert perms["Case"].fields["status"].edit is True


def test_normalize_tolerates_missing_tables():
    assert normalize_role_document({"id": "r1"}) == {}


def test_merge_is_a_commutative_union():
    a = normalize_role_document({"data": SALES_DATA, "fieldData": SALES_FIELDS})
    b = normalize_role_document({"data": SUPPORT_DATA})

    ab = merge_permissions(a, b)
    ba = merge_permissions(b, a)

    assert {k: v.model_dump() for k, v in ab.items()} == {k: v.model_dump() for k, v in ba.items()}
    assert ab["Account"].read and ab["Account"].edit and ab["Account"].delete
    assert ab["Account"].create is False
    assert ab["Case"].create is True
    assert ab["Account"].fields["industry"].read is True


def test_merge_does_not_mutate_inputs():
    a = {"Account": EntityPermission(read=True)}
    b = {"Account": EntityPermission(edit=True, fields={"name": FieldPermission(edit=True)})}

    merged = merge_permissions(a, b)
    merged["Account"].fields["name"].read = True

    assert a["Account"].edit is False
    assert a["Account"].fields == {}
    assert b["Account"].fields["name"].read is False


def test_admin_override_grants_everything_seen():
    own = {"Account": EntityPermission(fields={"industry": FieldPermission()})}
    known = [{"Case": EntityPermission(fields={"status": FieldPermission(read=True)})}]

    result = apply_admin_override(own, known)

    assert set(result) == {"Account", "Case"}
    for perm in result.values():
        assert perm.create and perm.read and perm.edit and perm.delete
    assert result["Account"].fields["industry"] == FieldPermission(read=True, edit=True)
    assert result["Case"].fields["status"] == FieldPermission(read=True, edit=True)


def test_sync_upserts_roles_and_is_idempotent(resolver, synced_crm, db):
    assert resolver.sync_roles_and_permissions() == 2
    first = {r.external_id: r.permissions for r in db.query(Role).all()}

    assert resolver.sync_roles_and_permissions("t_acme") == 2
    second = {r.external_id: r.permissions for r in db.query(Role).all()}

    assert first == second
    # Two synced roles plus the two login-managed ones.
    assert db.query(Role).count() == 4
    assert second["crm-role-sales"]["Account"]["fields"]["industry"] == {"read": True, "edit": False}


def test_sync_picks_up_renames_and_permission_changes(resolver, synced_crm, db):
    resolver.sync_roles_and_permissions()
    synced_crm.roles[0]["name"] = "Field Sales"
    synced_crm.role_details["crm-role-sales"]["data"] = {"Account": {"create": "yes"}}

    resolver.sync_roles_and_permissions()

    role = db.query(Role).filter(Role.external_id == "crm-role-sales").one()
    assert role.name == "Field Sales"
    assert role.permissions["Account"]["create"] is True
    assert "Lead" not in role.permissions


def test_sync_drops_cached_permission_views(resolver, synced_crm, db, cache, sam):
    resolver.sync_roles_and_permissions()
    _grant(db, sam.id, "crm-role-sales")
    resolver.get_user_permissions(sam.id)
    assert cache.get(permissions_cache_key(sam.id)) is not None

    resolver.sync_roles_and_permissions()

    assert cache.get(permissions_cache_key(sam.id)) is None


def test_sync_then_read_reflects_exactly_the_held_role(resolver, synced_crm, db, sam):
    resolver.sync_roles_and_permissions()
    _grant(db, sam.id, "crm-role-sales")

    perms = resolver.get_user_permissions(sam.id)

    expected = normalize_role_document({"data": SALES_DATA, "fieldData": SALES_FIELDS})
    assert {k: v.model_dump() for k, v in perms.entities.items()} == {
        k: v.model_dump() for k, v in expected.items()
    }


def test_user_permissions_merge_all_assigned_roles(resolver, synced_crm, db, sam):
    resolver.sync_roles_and_permissions()
    _grant(db, sam.id, "crm-role-sales")
    _grant(db, sam.id, "crm-role-support")

    perms = resolver.get_user_permissions(sam.id)

    assert perms.is_admin is False
    assert set(perms.entities) == {"Account", "Lead", "Contact", "Case"}
    assert perms.entities["Account"].delete is True
    assert perms.entities["Account"].create is False


def test_user_without_synced_roles_has_no_permissions(resolver, sam):
    perms = resolver.get_user_permissions(sam.id)

    assert perms.entities == {}
    assert resolver.check_user_permission(sam.id, "Account", "read") is False


def test_admin_gets_every_known_entity(resolver, synced_crm, auth):
    resolver.sync_roles_and_permissions()
    alex = auth.login("alex", "s3cret").user

    perms = resolver.get_user_permissions(alex.id)

    assert perms.is_admin is True
    assert {"Account", "Lead", "Case"} <= set(perms.entities)
    assert perms.entities["Account"].fields["industry"].edit is True
    assert resolver.check_user_permission(alex.id, "Anything", "delete") is True


def test_check_permission_semantics(resolver, synced_crm, db, sam):
    resolver.sync_roles_and_permissions()
    _grant(db, sam.id, "crm-role-sales")

    assert resolver.check_user_permission(sam.id, "Account", "read") is True
    assert resolver.check_user_permission(sam.id, "Account", "create") is False
    assert resolver.check_user_permission(sam.id, "Opportunity", "read") is False
    assert resolver.check_user_permission(sam.id, "Account", "read", "industry") is True
    assert resolver.check_user_permission(sam.id, "Account", "edit", "industry") is False
    # Unlisted field falls back to the entity flag.
    assert resolver.check_user_permission(sam.id, "Account", "edit", "website") is True


def test_check_rejects_unknown_action_and_empty_entity(resolver, sam):
    with pytest.raises(UnknownAction):
        resolver.check_user_permission(sam.id, "Account", "export")
    with pytest.raises(UnknownEntity):
        resolver.check_user_permission(sam.id, "", "read")


def test_permissions_are_served_from_cache_until_cleared(resolver, synced_crm, db, sam):
    resolver.sync_roles_and_permissions()
    _grant(db, sam.id, "crm-role-sales")
    assert resolver.check_user_permission(sam.id, "Case", "read") is False

    _grant(db, sam.id, "crm-role-support")
    assert resolver.check_user_permission(sam.id, "Case", "read") is False

    resolver.clear_user_permission_cache(sam.id)
    assert resolver.check_user_permission(sam.id, "Case", "read") is True


def test_unknown_user(resolver):
    with pytest.raises(UserNotFound):
        resolver.get_user_permissions("u_missing")


def test_assign_and_unassign_role(resolver, synced_crm, db, sam):
    resolver.sync_roles_and_permissions()
    resolver.get_user_permissions(sam.id)

    resolver.assign_role(sam.id, "crm-role-support")
    resolver.assign_role(sam.id, "crm-role-support")

    assert resolver.check_user_permission(sam.id, "Case", "create") is True
    support = db.query(Role).filter(Role.external_id == "crm-role-support").one()
    assert db.query(UserRole).filter(UserRole.role_id == support.id).count() == 1

    resolver.unassign_role(sam.id, "crm-role-support")

    assert resolver.check_user_permission(sam.id, "Case", "create") is False


def test_synthetic_roles_cannot_be_assigned_by_hand(resolver, sam):
    with pytest.raises(PermissionDenied):
        resolver.assign_role(sam.id, "external-admin")
    with pytest.raises(PermissionDenied):
        resolver.unassign_role(sam.id, "external-user")


def test_assign_unknown_role(resolver, sam):
    with pytest.raises(RoleNotFound):
        resolver.assign_role(sam.id, "crm-role-nope")


def test_admin_check_allows_unmodeled_actions(resolver, auth):
    alex = auth.login("alex", "s3cret").user

    assert resolver.check_user_permission(alex.id, "Account", "export") is True
    assert resolver.check_user_permission(alex.id, "", "read") is True


def test_demotion_at_login_drops_cached_admin_view(resolver, synced_crm, auth, cache):
    resolver.sync_roles_and_permissions()
    alex = auth.login("alex", "s3cret").user
    assert resolver.check_user_permission(alex.id, "Account", "delete") is True

    synced_crm.users["alex"]["type"] = "regular"
    bundle = auth.login("alex", "s3cret")

    assert bundle.user.is_admin is False
    assert cache.get(permissions_cache_key(alex.id)) is None
    perms = resolver.get_user_permissions(alex.id)
    assert perms.is_admin is False
    assert resolver.check_user_permission(alex.id, "Account", "delete") is False


def test_promotion_at_login_drops_cached_user_view(resolver, synced_crm, auth):
    resolver.sync_roles_and_permissions()
    sam = auth.login("sam", "hunter2").user
    assert resolver.check_user_permission(sam.id, "Lead", "delete") is False

    synced_crm.users["sam"]["type"] = "admin"
    auth.login("sam", "hunter2")

    assert resolver.check_user_permission(sam.id, "Lead", "delete") is True


def test_unchanged_login_keeps_cached_view(resolver, auth, cache):
    sam = auth.login("sam", "hunter2").user
    resolver.get_user_permissions(sam.id)

    auth.login("sam", "hunter2")

    assert cache.get(permissions_cache_key(sam.id)) is not None
