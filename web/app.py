#!/usr/bin/env python3
"""
devicetracker web API - Flask application serving the shared equipment
inventory, its schema and the user directory to browser and CLI clients.
"""

from flask import Flask, request, jsonify, send_file, Response, g, session
from pathlib import Path
import io
import os
import secrets
import sys
import threading
import time

# Prometheus metrics
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Add the parent directory to Python path to import devicetracker modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from devicetracker import __version__
from devicetracker.core.v1.config import get_datastore_path, get_repair_keywords
from devicetracker.core.v1.access import check_record_update, is_admin, require_admin
from devicetracker.core.v1.records import (
    RecordConflictError,
    list_records,
    get_record,
    create_record,
    update_record,
    delete_record,
    upsert_records,
    import_records,
    record_history,
    sort_records,
    search_records,
    inventory_stats,
    equipment_stats,
)
from devicetracker.core.v1.reconcile import decode_csv_bytes, export_csv, reconcile
from devicetracker.core.v1.schema import (
    get_settings,
    save_settings,
    get_fields,
    add_field,
    edit_field,
    remove_field,
    move_field,
    add_status_option,
    remove_status_option,
)
from devicetracker.core.v1.users import (
    add_user,
    delete_user,
    find_user_by_email,
    get_user,
    list_users,
    login_user,
    register_user,
)
from devicetracker.core.v1.labels import generate_label_for_record
from devicetracker.core.v1.store import reset_datastore
from devicetracker.core.v1.validate import validate_store

app = Flask(__name__)
_WEB_SECRET = (os.environ.get('DT_WEB_SECRET') or '').strip()
if not _WEB_SECRET:
    # Per-process secret: sessions do not survive a restart or span workers
    _WEB_SECRET = secrets.token_hex(32)
    app.logger.warning("[devicetracker] DT_WEB_SECRET is not set; using a random per-process session secret")
app.secret_key = _WEB_SECRET

# -----------------------
# Prometheus instrumentation
# -----------------------
_METRICS_ENV = os.environ.get('METRICS_ENV', 'prod')
_SERVICE_NAME = os.environ.get('SERVICE_NAME', 'app')

# Module-level registry so the app can be imported more than once per process
METRICS_REGISTRY = CollectorRegistry()

HTTP_REQUESTS_TOTAL = Counter(
    'dt_web_http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status', 'env', 'service'],
    registry=METRICS_REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    'dt_web_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path', 'status', 'env', 'service'],
    buckets=(0.05, 0.1, 0.3, 1, 3, 10),
    registry=METRICS_REGISTRY,
)

RECORDS_TOTAL = Gauge(
    'dt_records_total',
    'Total number of inventory records',
    ['env', 'service'],
    registry=METRICS_REGISTRY,
)

USERS_TOTAL = Gauge(
    'dt_users_total',
    'Total number of registered users',
    ['env', 'service'],
    registry=METRICS_REGISTRY,
)

# TTL for recomputing internal gauges (in seconds). Override via DT_METRICS_TTL_SEC
try:
    _METRICS_TTL_SEC = int(os.environ.get('DT_METRICS_TTL_SEC', '15') or '15')
except ValueError:
    _METRICS_TTL_SEC = 15

_SIMPLE_METRICS_CACHE: dict = {
    'ts': 0.0,
    'values': {},
}


@app.before_request
def _metrics_before_request():
    g._metrics_t0 = time.time()


@app.after_request
def _metrics_after_request(response: Response):
    t0 = getattr(g, '_metrics_t0', None)
    dt = (time.time() - t0) if t0 is not None else None
    method = str(request.method or 'GET')
    # Prefer route rule (stable cardinality); fallback to path
    rule = request.url_rule.rule if request.url_rule is not None else None
    path_label = str(rule or request.path or '/')
    status = str(response.status_code)
    HTTP_REQUESTS_TOTAL.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).inc()
    if dt is not None:
        HTTP_REQUEST_DURATION_SECONDS.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).observe(dt)
    return response


def _update_internal_gauges() -> None:
    """Refresh record/user gauges, at most once per TTL window."""
    now = time.time()
    ts = float(_SIMPLE_METRICS_CACHE.get('ts') or 0.0)
    if now - ts < _METRICS_TTL_SEC:
        vals = _SIMPLE_METRICS_CACHE.get('values') or {}
    else:
        store = get_datastore_path()
        vals = {
            'records_total': len(list_records(store)),
            'users_total': len(list_users(store)),
        }
        _SIMPLE_METRICS_CACHE['ts'] = now
        _SIMPLE_METRICS_CACHE['values'] = vals
    lbls = (_METRICS_ENV, _SERVICE_NAME)
    RECORDS_TOTAL.labels(*lbls).set(float(vals.get('records_total') or 0))
    USERS_TOTAL.labels(*lbls).set(float(vals.get('users_total') or 0))


@app.get('/metrics')
def _metrics_endpoint():
    try:
        _update_internal_gauges()
    except Exception as e:
        # Request metrics are still worth serving when the datastore is unavailable
        app.logger.warning(f"[devicetracker] metrics: could not refresh gauges: {e}")
    data = generate_latest(METRICS_REGISTRY)
    return Response(response=data, status=200, mimetype=CONTENT_TYPE_LATEST)


# -----------------------
# Identity / access helpers
# -----------------------

class AuthenticationRequired(PermissionError):
    """No session user and no recognised proxy identity header."""


def _get_proxy_identity_email_headers() -> list[str]:
    """Header names carrying the authenticated email when behind an auth proxy.

    Env var DT_WEB_IDENTITY_HEADER_EMAIL (comma-separated, case-insensitive),
    e.g. X-Forwarded-Email,X-Auth-Request-Email. Unset means no header is
    trusted and only the login session identifies the caller; set it only
    when a proxy in front of the app strips these headers from clients.
    """
    env = (os.environ.get('DT_WEB_IDENTITY_HEADER_EMAIL') or '').strip()
    return [h.strip() for h in env.split(',') if h.strip()]


def _current_user(store: Path) -> dict | None:
    uid = session.get('user_id')
    if uid:
        try:
            return get_user(store, uid)
        except FileNotFoundError:
            # User deleted since login
            session.pop('user_id', None)
    for hn in _get_proxy_identity_email_headers():
        email = (request.headers.get(hn) or '').strip()
        if email:
            return find_user_by_email(store, email)
    return None


def _require_user(store: Path) -> dict:
    user = _current_user(store)
    if not user:
        raise AuthenticationRequired("Authentication required")
    return user


def _require_admin(store: Path, action: str) -> dict:
    user = _require_user(store)
    require_admin(user, action)
    return user


def _error(e: Exception):
    """Map a core exception onto a JSON error response."""
    if isinstance(e, AuthenticationRequired):
        status = 401
    elif isinstance(e, PermissionError):
        status = 403
    elif isinstance(e, (RecordConflictError, FileExistsError)):
        status = 409
    elif isinstance(e, FileNotFoundError):
        status = 404
    elif isinstance(e, ValueError):
        status = 400
    else:
        status = 500
    if status in (401, 403):
        app.logger.warning(f"[devicetracker] denied {request.method} {request.path}: {e}")
    elif status == 500:
        app.logger.exception(f"[devicetracker] {request.method} {request.path} failed")
    return jsonify({'success': False, 'error': str(e)}), status


def _json_payload() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return request.form.to_dict(flat=True)
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object")
    return payload


def _truthy(val) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(val)


# -----------------------
# Mutation serialization
# -----------------------
_STORE_TXN_LOCK = threading.Lock()


def _run_store_txn(mutate_fn, *, log_message: str | None = None):
    """Serialize datastore mutations: one writer at a time in this process."""
    with _STORE_TXN_LOCK:
        result = mutate_fn()
    if log_message:
        app.logger.info(log_message)
    return result


# -----------------------
# Health
# -----------------------

@app.route('/api/health', methods=['GET'])
def api_health():
    return jsonify({'success': True, 'status': 'ok', 'version': __version__})


# -----------------------
# Inventory API endpoints
# -----------------------

@app.route('/api/inventory', methods=['GET'])
def api_inventory_list():
    try:
        store = get_datastore_path()
        _require_user(store)
        records = list_records(store)
        q = (request.args.get('q') or '').strip()
        if q:
            records = search_records(records, q, get_fields(store))
        records = sort_records(records, request.args.get('sort') or 'entryDate')
        return jsonify({'success': True, 'records': records, 'count': len(records)})
    except Exception as e:
        return _error(e)


@app.route('/api/inventory', methods=['POST'])
def api_inventory_save():
    """Bulk save: a record or a list of records.

    Existing ids are merged, others created. ?mode=replace deletes every
    stored record first.
    """
    try:
        store = get_datastore_path()
        user = _require_admin(store, "save inventory records")
        payload = request.get_json(silent=True)
        if not isinstance(payload, (dict, list)):
            raise ValueError("Expected a JSON record or a list of records")
        mode = (request.args.get('mode') or 'merge').strip().lower()
        if mode not in ('merge', 'replace'):
            raise ValueError("mode must be 'merge' or 'replace'")
        res = _run_store_txn(
            lambda: upsert_records(store, payload, user=user['name'], replace=(mode == 'replace')),
            log_message=f"[devicetracker][web] {user['email']} saved inventory ({mode})",
        )
        return jsonify({'success': True, 'mode': mode, **res})
    except Exception as e:
        return _error(e)


@app.route('/api/inventory/records', methods=['POST'])
def api_record_create():
    try:
        store = get_datastore_path()
        user = _require_admin(store, "create records")
        data = _json_payload()
        rec = _run_store_txn(
            lambda: create_record(store, data, user=user['name'], fields=get_fields(store)),
            log_message=f"[devicetracker][web] {user['email']} created record",
        )
        return jsonify({'success': True, 'record': rec}), 201
    except Exception as e:
        return _error(e)


@app.route('/api/inventory/stats', methods=['GET'])
def api_inventory_stats():
    try:
        store = get_datastore_path()
        _require_user(store)
        records = list_records(store)
        return jsonify({
            'success': True,
            'inventory': inventory_stats(records),
            'equipment': equipment_stats(records, get_fields(store)),
        })
    except Exception as e:
        return _error(e)


@app.route('/api/inventory/import', methods=['POST'])
def api_inventory_import():
    """Import a spreadsheet export.

    Accepts a multipart upload ('file') or JSON {"csv": "..."}; 'mode' is
    'append' (default) or 'replace'. Individual rows never fail the import.
    """
    try:
        store = get_datastore_path()
        user = _require_admin(store, "import records")
    except Exception as e:
        return _error(e)
    try:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            raise ValueError("Expected a JSON object")
        up = request.files.get('file')
        if up is not None:
            text = decode_csv_bytes(up.read())
        else:
            text = payload.get('csv') or request.form.get('csv') or ''
        if not str(text).strip():
            raise ValueError("No CSV data provided")
        mode = (request.args.get('mode') or request.form.get('mode') or payload.get('mode') or 'append').strip().lower()
        if mode not in ('append', 'replace'):
            raise ValueError("mode must be 'append' or 'replace'")
        candidates = reconcile(text, get_fields(store), repair_keywords=get_repair_keywords(store))
        created = _run_store_txn(
            lambda: import_records(store, candidates, user=user['name'], replace=(mode == 'replace')),
            log_message=f"[devicetracker][web] {user['email']} imported {len(candidates)} records ({mode})",
        )
        return jsonify({
            'success': True,
            'mode': mode,
            'imported': len(created),
            'ids': [r['id'] for r in created],
        })
    except ValueError as e:
        return _error(e)
    except Exception:
        app.logger.exception("[devicetracker] CSV import failed")
        return jsonify({'success': False, 'error': 'Failed to parse CSV'}), 500


@app.route('/api/inventory/export.csv', methods=['GET'])
def api_inventory_export():
    try:
        store = get_datastore_path()
        _require_admin(store, "export records")
        body = export_csv(sort_records(list_records(store)), get_fields(store))
        resp = Response(body, mimetype='text/csv')
        resp.headers['Content-Disposition'] = 'attachment; filename=inventory_export.csv'
        return resp
    except Exception as e:
        return _error(e)


@app.route('/api/inventory/<record_id>', methods=['GET'])
def api_record_get(record_id):
    try:
        store = get_datastore_path()
        _require_user(store)
        return jsonify({'success': True, 'record': get_record(store, record_id)})
    except Exception as e:
        return _error(e)


def _expected_rev(payload: dict):
    if '_rev' in payload:
        return payload.get('_rev')
    etag = (request.headers.get('If-Match') or '').strip()
    if etag:
        if etag.startswith('W/'):
            etag = etag[2:]
        return etag.strip('"')
    return None


@app.route('/api/inventory/<record_id>', methods=['PATCH'])
def api_record_update(record_id):
    try:
        store = get_datastore_path()
        user = _require_user(store)
        payload = _json_payload()
        check_record_update(user, payload)
        rev = _expected_rev(payload)
        rec = _run_store_txn(
            lambda: update_record(
                store,
                record_id,
                payload,
                user=user['name'],
                expected_rev=rev,
                fields=get_fields(store),
            ),
            log_message=f"[devicetracker][web] {user['email']} updated {record_id}",
        )
        resp = jsonify({'success': True, 'record': rec})
        resp.headers['ETag'] = f'"{rec["_rev"]}"'
        return resp
    except Exception as e:
        return _error(e)


@app.route('/api/inventory/<record_id>', methods=['DELETE'])
def api_record_delete(record_id):
    try:
        store = get_datastore_path()
        user = _require_admin(store, "delete records")
        _run_store_txn(
            lambda: delete_record(store, record_id),
            log_message=f"[devicetracker][web] {user['email']} deleted {record_id}",
        )
        return jsonify({'success': True, 'deleted': record_id})
    except Exception as e:
        return _error(e)


@app.route('/api/inventory/<record_id>/history', methods=['GET'])
def api_record_history(record_id):
    try:
        store = get_datastore_path()
        _require_user(store)
        return jsonify({'success': True, 'id': record_id, 'historyLog': record_history(store, record_id)})
    except Exception as e:
        return _error(e)


@app.route('/api/inventory/<record_id>/label.png', methods=['GET'])
def api_record_label(record_id):
    try:
        store = get_datastore_path()
        _require_admin(store, "print labels")
        res = generate_label_for_record(store, record_id)
        return send_file(
            io.BytesIO(res['png']),
            mimetype='image/png',
            as_attachment=_truthy(request.args.get('download')),
            download_name=res['filename'],
        )
    except Exception as e:
        return _error(e)


# -----------------------
# Settings (schema registry) endpoints
# -----------------------

@app.route('/api/settings', methods=['GET'])
def api_settings_get():
    try:
        return jsonify({'success': True, 'settings': get_settings(get_datastore_path())})
    except Exception as e:
        return _error(e)


@app.route('/api/settings', methods=['POST'])
def api_settings_save():
    try:
        store = get_datastore_path()
        user = _require_admin(store, "change settings")
        payload = _json_payload()
        settings = _run_store_txn(
            lambda: save_settings(store, payload),
            log_message=f"[devicetracker][web] {user['email']} replaced settings",
        )
        return jsonify({'success': True, 'settings': settings})
    except Exception as e:
        return _error(e)


@app.route('/api/settings/fields', methods=['POST'])
def api_field_add():
    try:
        store = get_datastore_path()
        user = _require_admin(store, "add fields")
        payload = _json_payload()
        settings = _run_store_txn(
            lambda: add_field(
                store,
                payload.get('label'),
                payload.get('type') or 'text',
                payload.get('options'),
                _truthy(payload.get('isPrimary', False)),
                field_id=payload.get('id'),
                required=_truthy(payload.get('required', False)),
            ),
            log_message=f"[devicetracker][web] {user['email']} added field '{payload.get('label')}'",
        )
        return jsonify({'success': True, 'settings': settings}), 201
    except Exception as e:
        return _error(e)


@app.route('/api/settings/fields/<field_id>', methods=['PATCH'])
def api_field_edit(field_id):
    try:
        store = get_datastore_path()
        user = _require_admin(store, "edit fields")
        payload = _json_payload()
        changes = {k: payload[k] for k in ('id', 'label', 'type', 'options', 'isPrimary', 'required') if k in payload}
        for k in ('isPrimary', 'required'):
            if k in changes:
                changes[k] = _truthy(changes[k])
        settings = _run_store_txn(
            lambda: edit_field(store, field_id, **changes),
            log_message=f"[devicetracker][web] {user['email']} edited field '{field_id}'",
        )
        return jsonify({'success': True, 'settings': settings})
    except Exception as e:
        return _error(e)


@app.route('/api/settings/fields/<field_id>', methods=['DELETE'])
def api_field_remove(field_id):
    try:
        store = get_datastore_path()
        user = _require_admin(store, "remove fields")
        settings = _run_store_txn(
            lambda: remove_field(store, field_id),
            log_message=f"[devicetracker][web] {user['email']} removed field '{field_id}'",
        )
        return jsonify({'success': True, 'settings': settings})
    except Exception as e:
        return _error(e)


@app.route('/api/settings/fields/<field_id>/move', methods=['POST'])
def api_field_move(field_id):
    try:
        store = get_datastore_path()
        _require_admin(store, "reorder fields")
        direction = _json_payload().get('direction')
        settings = _run_store_txn(lambda: move_field(store, field_id, direction))
        return jsonify({'success': True, 'settings': settings})
    except Exception as e:
        return _error(e)


@app.route('/api/settings/statuses', methods=['POST'])
def api_status_add():
    try:
        store = get_datastore_path()
        _require_admin(store, "add status options")
        status = _json_payload().get('status')
        settings = _run_store_txn(lambda: add_status_option(store, status))
        return jsonify({'success': True, 'settings': settings})
    except Exception as e:
        return _error(e)


@app.route('/api/settings/statuses/<path:status>', methods=['DELETE'])
def api_status_remove(status):
    try:
        store = get_datastore_path()
        _require_admin(store, "remove status options")
        settings = _run_store_txn(lambda: remove_status_option(store, status))
        return jsonify({'success': True, 'settings': settings})
    except Exception as e:
        return _error(e)


# -----------------------
# Users
# -----------------------

@app.route('/api/users', methods=['GET'])
def api_users_list():
    try:
        store = get_datastore_path()
        _require_admin(store, "list users")
        return jsonify({'success': True, 'users': list_users(store)})
    except Exception as e:
        return _error(e)


@app.route('/api/users/me', methods=['GET'])
def api_users_me():
    try:
        store = get_datastore_path()
        return jsonify({'success': True, 'user': _require_user(store)})
    except Exception as e:
        return _error(e)


@app.route('/api/users/register', methods=['POST'])
def api_users_register():
    """Self-service signup (when enabled), or user creation by an administrator.

    Only administrators may create ADMIN accounts; they also bypass the
    registration switch.
    """
    try:
        store = get_datastore_path()
        payload = _json_payload()
        role = (payload.get('role') or 'TEAM_MEMBER').strip().upper()
        caller = _current_user(store)
        if is_admin(caller):
            fn = add_user
        else:
            if role != 'TEAM_MEMBER':
                raise PermissionError("Only administrators can create administrator accounts")
            fn = register_user
        user = _run_store_txn(
            lambda: fn(store, payload.get('email'), payload.get('name'), payload.get('password'), role),
            log_message=f"[devicetracker][web] registered user {payload.get('email')} ({role})",
        )
        return jsonify({'success': True, 'user': user}), 201
    except Exception as e:
        return _error(e)


@app.route('/api/users/login', methods=['POST'])
def api_users_login():
    try:
        store = get_datastore_path()
        payload = _json_payload()
        try:
            user = login_user(store, payload.get('email'), payload.get('password'))
        except PermissionError as e:
            app.logger.warning(f"[devicetracker] failed login for {payload.get('email')}")
            return jsonify({'success': False, 'error': str(e)}), 401
        session['user_id'] = user['id']
        return jsonify({'success': True, 'user': user})
    except Exception as e:
        return _error(e)


@app.route('/api/users/logout', methods=['POST'])
def api_users_logout():
    session.clear()
    return jsonify({'success': True})


@app.route('/api/users/<user_id>', methods=['DELETE'])
def api_users_delete(user_id):
    try:
        store = get_datastore_path()
        admin = _require_admin(store, "delete users")
        removed = _run_store_txn(
            lambda: delete_user(store, user_id),
            log_message=f"[devicetracker][web] {admin['email']} deleted user {user_id}",
        )
        return jsonify({'success': True, 'user': removed})
    except Exception as e:
        return _error(e)


# -----------------------
# System
# -----------------------

@app.route('/api/system/reset', methods=['POST'])
def api_system_reset():
    try:
        store = get_datastore_path()
        admin = _require_admin(store, "reset the system")
        removed = _run_store_txn(
            lambda: reset_datastore(store),
            log_message=f"[devicetracker][web] {admin['email']} reset the datastore",
        )
        return jsonify({'success': True, 'removed': removed})
    except Exception as e:
        return _error(e)


@app.route('/api/system/validate', methods=['POST'])
def api_system_validate():
    try:
        store = get_datastore_path()
        _require_admin(store, "validate the datastore")
        return jsonify({'success': True, 'result': validate_store(store)})
    except Exception as e:
        return _error(e)


@app.errorhandler(404)
def not_found(error):
    return jsonify({'success': False, 'error': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({'success': False, 'error': 'Method not allowed'}), 405


if __name__ == '__main__':
    # Determine port (env PORT or --port flag), default 8080
    port = int(os.environ.get('PORT', '8080'))
    if '--port' in sys.argv:
        idx = sys.argv.index('--port')
        if idx + 1 < len(sys.argv):
            port = int(sys.argv[idx + 1])

    print("Starting devicetracker web API...")
    print(f"Listening on: http://localhost:{port}")
    print("=" * 50)

    debug_mode = os.environ.get('FLASK_ENV') == 'development' or '--debug' in sys.argv
    try:
        app.run(
            debug=debug_mode,
            host='0.0.0.0',
            port=port,
            use_reloader=debug_mode
        )
    except KeyboardInterrupt:
        print("\nShutting down devicetracker web API...")
