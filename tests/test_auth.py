import pytest

import auth
import database
from errors import PermissionDenied, Unauthenticated, ValidationError


def _role(user_id):
    return database.collection("user").find_one({"_id": database.to_obj_id(user_id)})["role"]


def test_register_never_grants_admin(db):
    identity = auth.register_user("Mallory", "OWNER@shop.example", "hunter22")
    assert identity.role == "customer"
    assert identity.email == "owner@shop.example"
    assert _role(identity.uid) == "customer"
    with pytest.raises(PermissionDenied):
        auth.require_admin(identity)


def test_register_rejects_duplicate_email(db):
    auth.register_user("Ana", "ana@example.com", "secret123")
    with pytest.raises(ValidationError) as exc:
        auth.register_user("Ana Again", "ANA@example.com", "secret456")
    assert "email" in exc.value.errors


def test_bootstrap_promotes_configured_id_only(db):
    owner = auth.register_user("Owner", "owner@shop.example", "secret123")
    squatter = auth.register_user("Mallory", "mallory@example.com", "secret123")
    database.collection("user").update_one(
        {"_id": database.to_obj_id(squatter.uid)}, {"$set": {"role": "admin"}})

    assert auth.bootstrap_admin(owner.uid) is True

    assert _role(owner.uid) == "admin"
    assert _role(squatter.uid) == "customer"
    assert auth.identity_from_token(auth.create_access_token({"sub": owner.uid})).is_admin


@pytest.mark.parametrize("admin_uid", ["", "not-an-id", "64b000000000000000000000"])
def test_bootstrap_without_a_usable_id_changes_nothing(db, admin_uid):
    user = auth.register_user("Ana", "ana@example.com", "secret123")
    assert auth.bootstrap_admin(admin_uid) is False
    assert _role(user.uid) == "customer"


def test_anonymous_token_is_not_signed_in(db):
    identity = auth.identity_from_token(auth.start_anonymous_session())
    assert identity.is_anonymous
    with pytest.raises(Unauthenticated):
        auth.require_signed_in(identity)


def test_bad_token_is_rejected(db):
    with pytest.raises(Unauthenticated):
        auth.identity_from_token("not.a.jwt")
    assert auth.identity_from_token(None) is None
