from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
import yaml

from pydantic import ValidationError

from .config import ROLES, SEED_ADMIN
from .ids import new_ulid
from .models import User
from .schema import get_settings


# -------------------------------
# User directory
#   - <store>/users/users.yml holds an ordered list of user mappings
#   - Emails are unique case-insensitively (stored lowercased)
#   - Passwords are compared as plaintext; this is not an auth system
# -------------------------------


def _users_file(store: Path) -> Path:
    return store / "users" / "users.yml"


def _load(store: Path) -> List[User]:
    fp = _users_file(store)
    if not fp.exists():
        return []
    with open(fp) as f:
        raw = yaml.safe_load(f) or []
    if not isinstance(raw, list):
        print(f"[devicetracker] Warning: {fp} is not a list; ignoring")
        return []
    out: List[User] = []
    for item in raw:
        try:
            out.append(User.model_validate(item))
        except ValidationError as e:
            print(f"[devicetracker] Warning: skipping invalid user entry: {e.errors()[0]['msg']}")
    return out


def _save(store: Path, users: List[User]) -> None:
    fp = _users_file(store)
    fp.parent.mkdir(parents=True, exist_ok=True)
    with open(fp, "w") as f:
        yaml.safe_dump([u.model_dump() for u in users], f, sort_keys=False)


def _is_seed(user: User) -> bool:
    return user.email == SEED_ADMIN["email"]


def _build_user(email: str, name: str, password: str, role: str) -> User:
    if role not in ROLES:
        raise ValueError(f"Unknown role '{role}' (expected one of: {', '.join(ROLES)})")
    if not str(password or ""):
        raise ValueError("password is required")
    try:
        return User(id=new_ulid(), email=email, name=name, password=password, role=role)
    except ValidationError as e:
        msgs = "; ".join(f"{err['loc'][0]}: {err['msg']}" for err in e.errors())
        raise ValueError(f"Invalid user: {msgs}") from None


# Public API

def list_users(store: Path) -> List[Dict]:
    return [u.public() for u in _load(store)]


def get_user(store: Path, user_id: str) -> Dict:
    for u in _load(store):
        if u.id == user_id:
            return u.public()
    raise FileNotFoundError(f"User '{user_id}' not found")


def find_user_by_email(store: Path, email: str) -> Optional[Dict]:
    key = str(email or "").strip().lower()
    if not key:
        return None
    for u in _load(store):
        if u.email == key:
            return u.public()
    return None


def add_user(store: Path, email: str, name: str, password: str, role: str = "TEAM_MEMBER") -> Dict:
    """Create a user regardless of the registration switch (admin action)."""
    new = _build_user(email, name, password, role)
    users = _load(store)
    if any(u.email == new.email for u in users):
        raise ValueError(f"A user with email '{new.email}' already exists")
    users.append(new)
    _save(store, users)
    return new.public()


def register_user(store: Path, email: str, name: str, password: str, role: str = "TEAM_MEMBER") -> Dict:
    """Self-service signup. Raises PermissionError when registration is disabled."""
    if not get_settings(store).get("registration_enabled", True):
        raise PermissionError("Registration is currently disabled")
    return add_user(store, email, name, password, role)


def login_user(store: Path, email: str, password: str) -> Dict:
    key = str(email or "").strip().lower()
    for u in _load(store):
        if u.email == key and u.password == str(password or ""):
            return u.public()
    raise PermissionError("Invalid credentials")


def delete_user(store: Path, user_id: str) -> Dict:
    users = _load(store)
    for i, u in enumerate(users):
        if u.id != user_id:
            continue
        if _is_seed(u):
            raise ValueError("The default administrator cannot be deleted")
        del users[i]
        _save(store, users)
        return u.public()
    raise FileNotFoundError(f"User '{user_id}' not found")


def seed_default_users(store: Path) -> Dict:
    """Ensure the default administrator exists. Returns it."""
    existing = find_user_by_email(store, SEED_ADMIN["email"])
    if existing:
        return existing
    return add_user(
        store,
        SEED_ADMIN["email"],
        SEED_ADMIN["name"],
        SEED_ADMIN["password"],
        SEED_ADMIN["role"],
    )


def purge_users(store: Path, keep_seed: bool = True) -> int:
    users = _load(store)
    kept = [u for u in users if keep_seed and _is_seed(u)]
    _save(store, kept)
    return len(users) - len(kept)
