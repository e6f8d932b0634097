from __future__ import annotations
from pathlib import Path
import sys

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from devicetracker.core.v1.access import check_record_update, is_admin, require_admin
from devicetracker.core.v1.config import SEED_ADMIN
from devicetracker.core.v1.records import create_record, get_record, list_records, update_record
from devicetracker.core.v1.schema import get_settings, set_registration_enabled, add_field
from devicetracker.core.v1.store import init_datastore, reset_datastore
from devicetracker.core.v1.users import (
    delete_user,
    find_user_by_email,
    list_users,
    login_user,
    purge_users,
    register_user,
    seed_default_users,
)


@pytest.fixture()
def store(tmp_path: Path) -> Path:
    return init_datastore(tmp_path / "store")


def test_init_seeds_admin_and_settings_idempotently(store: Path):
    users = list_users(store)
    assert [u["email"] for u in users] == [SEED_ADMIN["email"]]
    assert users[0]["role"] == "ADMIN"
    assert "password" not in users[0]
    assert (store / "dtstore.yml").exists()
    add_field(store, "Vendor")
    init_datastore(store)
    seed_default_users(store)
    assert len(list_users(store)) == 1
    assert get_settings(store)["fields"][-1]["id"] == "vendor"


def test_register_lowercases_email_and_rejects_duplicates(store: Path):
    u = register_user(store, "  Jane.Doe@Example.COM ", "Jane", "pw")
    assert u["email"] == "jane.doe@example.com"
    assert u["role"] == "TEAM_MEMBER"
    with pytest.raises(ValueError):
        register_user(store, "JANE.DOE@example.com", "Other Jane", "pw2")
    assert find_user_by_email(store, "JANE.doe@example.com")["id"] == u["id"]


@pytest.mark.parametrize("email,name,password,role", [
    ("not-an-email", "X", "pw", "TEAM_MEMBER"),
    ("a@b.c", "", "pw", "TEAM_MEMBER"),
    ("a@b.c", "X", "", "TEAM_MEMBER"),
    ("a@b.c", "X", "pw", "OWNER"),
])
def test_register_rejects_bad_input(store: Path, email, name, password, role):
    with pytest.raises(ValueError):
        register_user(store, email, name, password, role)
    assert len(list_users(store)) == 1


def test_register_blocked_when_disabled(store: Path):
    set_registration_enabled(store, False)
    with pytest.raises(PermissionError):
        register_user(store, "a@b.c", "A", "pw")


def test_login_plaintext_and_invalid_credentials(store: Path):
    register_user(store, "a@b.c", "A", "secret")
    user = login_user(store, "A@B.C", "secret")
    assert user["name"] == "A"
    assert "password" not in user
    with pytest.raises(PermissionError):
        login_user(store, "a@b.c", "wrong")
    with pytest.raises(PermissionError):
        login_user(store, "nobody@b.c", "secret")


def test_passwords_are_stored_in_users_file(store: Path):
    register_user(store, "a@b.c", "A", "secret")
    raw = yaml.safe_load((store / "users" / "users.yml").read_text())
    assert {u["email"]: u["password"] for u in raw}["a@b.c"] == "secret"


def test_seed_admin_cannot_be_deleted(store: Path):
    admin = find_user_by_email(store, SEED_ADMIN["email"])
    with pytest.raises(ValueError):
        delete_user(store, admin["id"])
    other = register_user(store, "a@b.c", "A", "pw")
    delete_user(store, other["id"])
    assert [u["email"] for u in list_users(store)] == [SEED_ADMIN["email"]]
    with pytest.raises(FileNotFoundError):
        delete_user(store, other["id"])


def test_purge_users_keeps_seed(store: Path):
    register_user(store, "a@b.c", "A", "pw")
    register_user(store, "b@b.c", "B", "pw")
    assert purge_users(store) == 2
    assert len(list_users(store)) == 1


def test_reset_restores_defaults_and_keeps_seed(store: Path):
    register_user(store, "a@b.c", "A", "pw")
    create_record(store, {"assetTag": "A-1"})
    add_field(store, "Vendor")
    set_registration_enabled(store, False)
    removed = reset_datastore(store)
    assert removed == {"records": 1, "users": 1}
    assert list_records(store) == []
    s = get_settings(store)
    assert "vendor" not in [f["id"] for f in s["fields"]]
    assert s["registration_enabled"] is True
    assert login_user(store, SEED_ADMIN["email"], SEED_ADMIN["password"])["role"] == "ADMIN"


ADMIN = {"id": "1", "email": "root@x.io", "name": "Root", "role": "ADMIN"}
MEMBER = {"id": "2", "email": "m@x.io", "name": "Member", "role": "TEAM_MEMBER"}


def test_role_checks():
    assert is_admin(ADMIN)
    assert not is_admin(MEMBER)
    assert not is_admin(None)
    require_admin(ADMIN, "delete records")
    with pytest.raises(PermissionError) as ei:
        require_admin(MEMBER, "delete records")
    assert "delete records" in str(ei.value)


def test_team_member_limited_to_operational_fields():
    check_record_update(MEMBER, {"status": "In Use", "currentOwner": "M", "comments": "", "location": "L",
                                 "_rev": 3})
    with pytest.raises(PermissionError) as ei:
        check_record_update(MEMBER, {"status": "In Use", "assetTag": "X", "serialNumber": "Y"})
    assert "assetTag" in str(ei.value) and "serialNumber" in str(ei.value)
    check_record_update(ADMIN, {"assetTag": "X"})
    with pytest.raises(PermissionError):
        check_record_update(None, {"status": "x"})


def test_member_update_echoing_record_id_passes_check_and_write(tmp_path: Path):
    store = tmp_path / "store"
    store.mkdir()
    rec = create_record(store, {"equipmentDescription": "Dock", "status": "Available"})
    updates = {"_id": rec["id"], "id": rec["id"], "historyLog": [], "status": "In Use"}
    check_record_update(MEMBER, updates)
    out = update_record(store, rec["id"], updates, user="M")
    assert out["status"] == "In Use"
    assert "_id" not in get_record(store, rec["id"])
