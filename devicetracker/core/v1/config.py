import copy
import pathlib
import yaml
import os

DT_TOOL_VERSION = "1.0"
CONFIG_FILENAME = ".devicetracker.yml"
DATASTORE_CONFIG_FILENAME = "dtstore.yml"

# -------------------------------
# Inventory schema defaults (YAML-driven)
# -------------------------------
# The settings document lives in <datastore>/dtstore.yml:
#   fields: [ {id, label, type, options?, isPrimary, required}, ... ]   (ordered)
#   status_options: [ ... ]                                             (ordered)
#   registration_enabled: true
#   import: { repair_keywords: [] }
# Missing keys fall back to the defaults below.

RESERVED_RECORD_KEYS = ("id", "historyLog", "_rev")
# Dropped from record writes; "_id" is echoed back by some clients
IGNORED_UPDATE_KEYS = RESERVED_RECORD_KEYS + ("_id",)

FIELD_TYPES = ("text", "number", "date", "select")

DEFAULT_FIELDS = [
    {"id": "entryDate", "label": "Entry Date", "type": "text"},
    {"id": "equipmentDescription", "label": "Equipment Description", "type": "text", "isPrimary": True},
    {"id": "partNumber", "label": "Part Number", "type": "text"},
    {"id": "serialNumber", "label": "Serial Number / IMEI", "type": "text"},
    {"id": "assetTag", "label": "Asset Tag", "type": "text"},
    {"id": "deviceType", "label": "Type (Device/Accessory/PC)", "type": "text"},
    {"id": "releasedTo", "label": "Released to", "type": "text"},
    {"id": "coreId", "label": "Core ID", "type": "text"},
    {"id": "manager", "label": "Manager", "type": "text"},
    {"id": "gatePass", "label": "Gate Pass (Y/N)", "type": "text"},
    {"id": "returned", "label": "Returned", "type": "text"},
    {"id": "currentOwner", "label": "Current Owner", "type": "text"},
    {"id": "comments", "label": "Comments", "type": "text"},
    {"id": "location", "label": "Location", "type": "text"},
    {"id": "status", "label": "Status", "type": "select"},
]

DEFAULT_STATUS_OPTIONS = ["Available", "In Use", "Need Repair", "Taken", "Borrow", "Missing"]

# Fields a TEAM_MEMBER may write on an existing record.
TEAM_EDITABLE_FIELDS = ("status", "currentOwner", "comments", "location")

SEED_ADMIN = {
    "email": "admin@devicetracker.io",
    "name": "System Admin",
    "password": "admin",
    "role": "ADMIN",
}

ROLES = ("ADMIN", "TEAM_MEMBER")


def default_settings() -> dict:
    """Return a fresh copy of the built-in settings document."""
    return {
        "fields": copy.deepcopy(DEFAULT_FIELDS),
        "status_options": list(DEFAULT_STATUS_OPTIONS),
        "registration_enabled": True,
        "import": {"repair_keywords": []},
    }


def _resolve_config_path() -> pathlib.Path:
    """Resolve the path to .devicetracker.yml with environment overrides.

    Precedence:
      1) DT_CONFIG_FILE = absolute or relative path to the config file
      2) DT_CONFIG_DIR = directory containing the config file
      3) DT_DATA_PATH  = parent data path (config at $DT_DATA_PATH/.devicetracker.yml)
      4) Fallback to CWD
    """
    env_file = os.environ.get("DT_CONFIG_FILE")
    if env_file:
        return pathlib.Path(env_file).expanduser().resolve()
    env_dir = os.environ.get("DT_CONFIG_DIR") or os.environ.get("DT_DATA_PATH")
    if env_dir:
        return pathlib.Path(env_dir).expanduser().resolve() / CONFIG_FILENAME
    return pathlib.Path(CONFIG_FILENAME).expanduser().resolve()


def ensure_config() -> pathlib.Path:
    """Ensure the tool config exists; create with defaults if missing."""
    config_path = _resolve_config_path()
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump({"default_datastore": None}, f)
    return config_path


def load_config() -> dict:
    config_path = ensure_config()
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def save_config(config: dict) -> None:
    config_path = _resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(config, f)


def get_datastore_path() -> pathlib.Path:
    env_store = os.environ.get("DT_STORE")
    if env_store:
        return pathlib.Path(env_store).expanduser().resolve()
    config = load_config()
    store = config.get("default_datastore")
    if not store:
        raise RuntimeError(
            f"[devicetracker] Error: default_datastore not set in {CONFIG_FILENAME}. Run 'init' or set it manually."
        )
    return pathlib.Path(store).expanduser().resolve()


def load_datastore_config(store_path: pathlib.Path | None = None) -> dict:
    """Read the raw settings document from dtstore.yml ({} when absent)."""
    if store_path is None:
        store_path = get_datastore_path()
    config_file = store_path / DATASTORE_CONFIG_FILENAME
    if not config_file.exists():
        return {}
    with open(config_file) as f:
        data = yaml.safe_load(f) or {}
    return data if isinstance(data, dict) else {}


def save_datastore_config(store_path: pathlib.Path, data: dict) -> pathlib.Path:
    config_file = store_path / DATASTORE_CONFIG_FILENAME
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        f.write("# devicetracker settings document (inventory schema and status options).\n")
        yaml.safe_dump(data, f, sort_keys=False)
    return config_file


def get_repair_keywords(store_path: pathlib.Path | None = None) -> list[str]:
    """Return import.repair_keywords from dtstore.yml, lowercased and trimmed.

    An empty list (the default) disables comment-based status inference.
    """
    cfg = load_datastore_config(store_path)
    imp = cfg.get("import")
    if not isinstance(imp, dict):
        return []
    kws = imp.get("repair_keywords")
    if not isinstance(kws, (list, tuple)):
        return []
    out = []
    for k in kws:
        s = str(k).strip().lower()
        if s:
            out.append(s)
    return out


# -------------------------------
# Web / client configuration
# -------------------------------

def get_api_url() -> str:
    """Base URL of the devicetracker web API. Env var: DT_API_URL."""
    return os.environ.get("DT_API_URL", "http://localhost:8080").rstrip("/")


def get_cache_dir() -> pathlib.Path:
    """Directory for the HTTP client's offline cache. Env var: DT_CACHE_DIR."""
    env_dir = os.environ.get("DT_CACHE_DIR")
    if env_dir:
        return pathlib.Path(env_dir).expanduser()
    return pathlib.Path("~/.cache/devicetracker").expanduser()
