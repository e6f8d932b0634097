"""HTTP client for the devicetracker web API with an offline read cache.

Reads fall back to the last successful response cached on disk when the
server is unreachable (connection error, 404 or 503). Writes update the
cache first, then go to the server. Observers registered with subscribe()
are called after every connection check and write.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, List, Optional

import requests

from devicetracker.core.v1.config import default_settings, get_api_url, get_cache_dir


class DeviceTrackerError(RuntimeError):
    """The server rejected a request; the message is the server's error text."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


_OFFLINE_STATUSES = (404, 503)


class DeviceTrackerClient:
    def __init__(self, base_url: Optional[str] = None, cache_dir: Optional[Path] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or get_api_url()).rstrip("/")
        self.cache_dir = Path(cache_dir) if cache_dir else get_cache_dir()
        self.session = session or requests.Session()
        self.is_connected = False
        self.current_user: Optional[dict] = None
        self._subscribers: List[Callable[[], None]] = []

    # ----- observers -----

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self) -> None:
        for cb in list(self._subscribers):
            cb()

    # ----- cache -----

    def _cache_path(self, name: str) -> Path:
        return self.cache_dir / f"{name}.json"

    def _write_cache(self, name: str, data) -> None:
        p = self._cache_path(name)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False))

    def _read_cache(self, name: str, default):
        p = self._cache_path(name)
        if not p.exists():
            return default
        try:
            return json.loads(p.read_text())
        except ValueError:
            print(f"[devicetracker] Warning: ignoring corrupt cache file {p}")
            return default

    # ----- transport -----

    def _request(self, method: str, path: str, **kwargs) -> Optional[dict]:
        """Send a request and return the decoded JSON body.

        Returns None when the server is unreachable. Raises DeviceTrackerError
        for any other non-2xx response.
        """
        url = f"{self.base_url}{path}"
        kwargs.setdefault("timeout", 10)
        try:
            r = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            print(f"[devicetracker] Warning: network error for {url}: {e}")
            return None
        if r.status_code in _OFFLINE_STATUSES:
            print(f"[devicetracker] Warning: server {url} unreachable ({r.status_code}); using local cache")
            return None
        if not r.ok:
            try:
                msg = (r.json() or {}).get("error")
            except ValueError:
                msg = None
            raise DeviceTrackerError(msg or f"Server error: {r.status_code}", r.status_code)
        if "application/json" in r.headers.get("content-type", ""):
            return r.json()
        return {"success": True}

    def check_connection(self) -> bool:
        try:
            r = self.session.get(f"{self.base_url}/api/settings", timeout=1.5)
            self.is_connected = r.ok
        except requests.RequestException:
            self.is_connected = False
        self._notify()
        return self.is_connected

    # ----- records / settings -----

    def get_records(self) -> List[dict]:
        data = self._request("GET", "/api/inventory")
        if data and isinstance(data.get("records"), list):
            self._write_cache("records", data["records"])
            return data["records"]
        return self._read_cache("records", [])

    def save_records(self, records: List[dict], *, replace: bool = False) -> Optional[dict]:
        self._write_cache("records", records)
        params = {"mode": "replace"} if replace else None
        data = self._request("POST", "/api/inventory", json=records, params=params)
        self._notify()
        return data

    def get_settings(self) -> dict:
        data = self._request("GET", "/api/settings")
        if data and isinstance(data.get("settings"), dict) and "fields" in data["settings"]:
            self._write_cache("settings", data["settings"])
            return data["settings"]
        return self._read_cache("settings", default_settings())

    def save_settings(self, settings: dict) -> Optional[dict]:
        self._write_cache("settings", settings)
        data = self._request("POST", "/api/settings", json=settings)
        self._notify()
        return data

    # ----- identity -----

    def login(self, email: str, password: str) -> dict:
        data = self._request(
            "POST", "/api/users/login",
            json={"email": str(email or "").strip().lower(), "password": password},
        )
        if not data or not data.get("user"):
            raise DeviceTrackerError("Login failed: server unreachable")
        self.current_user = data["user"]
        self._notify()
        return self.current_user

    def register(self, email: str, name: str, password: str, role: str = "TEAM_MEMBER") -> dict:
        data = self._request(
            "POST", "/api/users/register",
            json={"email": email, "name": name, "password": password, "role": role},
        )
        if not data or not data.get("user"):
            raise DeviceTrackerError("Registration failed: server unreachable")
        return data["user"]

    def logout(self) -> None:
        self._request("POST", "/api/users/logout")
        self.current_user = None
        self._notify()
