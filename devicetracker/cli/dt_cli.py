import sys
import os
import argparse
import pathlib
import json
import yaml

from devicetracker import __version__
from devicetracker.core.v1.config import (
    get_datastore_path,
    get_repair_keywords,
    CONFIG_FILENAME,
    FIELD_TYPES,
)
from devicetracker.core.v1 import store as store_ops
from devicetracker.core.v1.schema import (
    get_settings,
    get_fields,
    add_field,
    edit_field,
    remove_field,
    move_field,
    add_field_option,
    remove_field_option,
    add_status_option,
    remove_status_option,
    set_registration_enabled,
)
from devicetracker.core.v1.records import (
    list_records,
    get_record,
    create_record,
    update_record,
    delete_record,
    import_records,
    record_history,
    sort_records,
    search_records,
    inventory_stats,
    equipment_stats,
    display_status,
)
from devicetracker.core.v1.reconcile import decode_csv_bytes, export_csv, reconcile
from devicetracker.core.v1.users import add_user, delete_user, list_users
from devicetracker.core.v1.labels import (
    generate_label_for_record,
    check_dependencies as labels_check_dependencies,
)
from devicetracker.core.v1.validate import validate_store


class DTArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help on error instead of short usage."""
    def error(self, message):
        self.print_help()
        sys.stderr.write(f"\nError: {message}\n")
        raise SystemExit(2)


def main(argv=None):
    # Root parser and global options (git-like)
    env_format = os.getenv("DT_FORMAT", "human").lower()
    if env_format not in ("human", "json", "yaml"):
        env_format = "human"
    parser = DTArgumentParser(prog="dt", description="devicetracker CLI")
    parser.add_argument("-R", "--repo", dest="repo", default=os.getenv("DT_STORE"), help="Override datastore path")
    parser.add_argument(
        "-F", "--format", dest="format", choices=["human", "json", "yaml"], default=env_format,
        help="Output format (default from DT_FORMAT or 'human')"
    )
    parser.add_argument(
        "--user", dest="user", default=os.getenv("DT_USER", "System"),
        help="Name recorded in history entries (default from DT_USER or 'System')",
    )
    parser.add_argument("--version", action="version", version=f"devicetracker {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=False, parser_class=DTArgumentParser)

    # init
    init_parser = subparsers.add_parser("init", help="Initialize a new datastore at PATH")
    init_parser.add_argument("path", help="Target directory for the datastore")
    init_parser.add_argument("--no-default", dest="no_default", action="store_true",
                             help=f"Do not record the datastore as default in {CONFIG_FILENAME}")

    # fields group
    fields_parser = subparsers.add_parser("fields", help="Inventory schema (field) operations")
    fld_sub = fields_parser.add_subparsers(dest="fld_cmd", required=False, parser_class=DTArgumentParser)

    fld_sub.add_parser("ls", aliases=["list"], help="List fields in display order")

    fld_add = fld_sub.add_parser("add", help="Add a field")
    fld_add.add_argument("label", help="Display label (id derives from it unless --id is given)")
    fld_add.add_argument("--type", dest="type", default="text", choices=list(FIELD_TYPES))
    fld_add.add_argument("--options", default=None, help="Comma-separated options for select fields")
    fld_add.add_argument("--id", dest="field_id", default=None, help="Explicit field id")
    fld_add.add_argument("--primary", action="store_true", help="Make this the primary (grouping) field")
    fld_add.add_argument("--required", action="store_true", help="Require a value on manual creation")

    fld_set = fld_sub.add_parser("set", help="Edit a field's label, type, options or flags")
    fld_set.add_argument("field_id", help="Field id")
    fld_set.add_argument("--label", default=None)
    fld_set.add_argument("--type", dest="type", default=None, choices=list(FIELD_TYPES))
    fld_set.add_argument("--options", default=None, help="Comma-separated options (replaces the list)")
    fld_set.add_argument("--primary", action="store_true", help="Make this the primary field")
    fld_set.add_argument("--required", dest="required", action="store_true", default=None)
    fld_set.add_argument("--optional", dest="required", action="store_false")

    fld_rm = fld_sub.add_parser("rm", aliases=["remove"], help="Remove a field (record values are kept)")
    fld_rm.add_argument("field_id", help="Field id")

    fld_move = fld_sub.add_parser("move", help="Move a field one position up or down")
    fld_move.add_argument("field_id", help="Field id")
    fld_move.add_argument("direction", choices=["up", "down"])

    fld_opt_add = fld_sub.add_parser("opt-add", help="Add an option to a select field")
    fld_opt_add.add_argument("field_id")
    fld_opt_add.add_argument("option")

    fld_opt_rm = fld_sub.add_parser("opt-rm", help="Remove an option from a select field")
    fld_opt_rm.add_argument("field_id")
    fld_opt_rm.add_argument("option")

    # statuses group
    statuses_parser = subparsers.add_parser("statuses", help="Status option operations")
    st_sub = statuses_parser.add_subparsers(dest="st_cmd", required=False, parser_class=DTArgumentParser)
    st_sub.add_parser("ls", aliases=["list"], help="List status options")
    st_add = st_sub.add_parser("add", help="Add a status option")
    st_add.add_argument("status")
    st_rm = st_sub.add_parser("rm", aliases=["remove"], help="Remove a status option")
    st_rm.add_argument("status")

    # records group
    records_parser = subparsers.add_parser("records", help="Inventory record operations")
    rec_sub = records_parser.add_subparsers(dest="rec_cmd", required=False, parser_class=DTArgumentParser)

    rec_ls = rec_sub.add_parser("ls", aliases=["list"], help="List records (newest entry date first)")
    rec_ls.add_argument("-q", "--query", default=None, help="Case-insensitive search across schema fields")

    rec_show = rec_sub.add_parser("show", aliases=["view"], help="Show a record")
    rec_show.add_argument("record_id")

    rec_add = rec_sub.add_parser("add", help="Create a record")
    rec_add.add_argument("pairs", nargs="*", help="field=value pairs")

    rec_set = rec_sub.add_parser("set", help="Update fields on a record")
    rec_set.add_argument("record_id")
    rec_set.add_argument("pairs", nargs="+", help="field=value pairs")
    rec_set.add_argument("--rev", dest="rev", type=int, default=None,
                         help="Expected revision; refuse the update if the record changed")

    rec_rm = rec_sub.add_parser("rm", aliases=["remove"], help="Delete a record and its history")
    rec_rm.add_argument("record_id")

    rec_hist = rec_sub.add_parser("history", help="Show a record's history log")
    rec_hist.add_argument("record_id")

    # import / export
    import_parser = subparsers.add_parser("import", help="Import records from a spreadsheet CSV export")
    import_parser.add_argument("file", help="CSV file path ('-' for stdin)")
    import_parser.add_argument("--replace", action="store_true", help="Delete all records before importing")

    export_parser = subparsers.add_parser("export", help="Export records as CSV")
    export_parser.add_argument("file", nargs="?", default=None, help="Output path (default stdout)")

    # users group
    users_parser = subparsers.add_parser("users", help="User directory operations")
    usr_sub = users_parser.add_subparsers(dest="usr_cmd", required=False, parser_class=DTArgumentParser)
    usr_sub.add_parser("ls", aliases=["list"], help="List users")
    usr_add = usr_sub.add_parser("add", help="Add a user")
    usr_add.add_argument("email")
    usr_add.add_argument("name")
    usr_add.add_argument("--password", required=True)
    usr_add.add_argument("--role", default="TEAM_MEMBER", choices=["ADMIN", "TEAM_MEMBER"])
    usr_rm = usr_sub.add_parser("rm", aliases=["remove"], help="Delete a user")
    usr_rm.add_argument("user_id")
    usr_reg = usr_sub.add_parser("registration", help="Enable or disable self-service signup")
    usr_reg.add_argument("state", choices=["on", "off"])

    # stats / validate / reset
    subparsers.add_parser("stats", help="Inventory and per-equipment counts")

    validate_parser = subparsers.add_parser("validate", help="Validate datastore structure and content")
    validate_parser.add_argument("--strict", action="store_true", help="Treat warnings as errors (non-zero exit)")

    reset_parser = subparsers.add_parser("reset", help="Delete all records and non-default users; restore default settings")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")

    # label
    label_parser = subparsers.add_parser("label", help="Render a QR asset label PNG for a record")
    label_parser.add_argument("record_id")
    label_parser.add_argument("-o", "--out", dest="out", default=None, help="Output PNG (default label_<id>.png)")
    label_parser.add_argument("--dpi", dest="dpi", type=int, default=300, help="Dots per inch (default 300)")
    label_parser.add_argument("--text-size", dest="text_size", type=int, default=24, help="Base text size in pixels")

    # web
    web_parser = subparsers.add_parser("web", help="Start the web API server")
    web_parser.add_argument("--port", type=int, default=8080, help="Port to run on (default: 8080)")
    web_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    web_parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args(argv)

    # Helper: resolve datastore path honoring -R/--repo
    def _store_path() -> pathlib.Path:
        if getattr(args, "repo", None):
            return pathlib.Path(args.repo).expanduser().resolve()
        return get_datastore_path()

    def _fmt() -> str:
        return args.format

    def _fail(e) -> None:
        print(f"[devicetracker] Error: {e}")
        sys.exit(1)

    def _print_or_dump(obj, human_line: str | None = None):
        fmt = _fmt()
        if fmt == "json":
            print(json.dumps(obj, indent=2))
        elif fmt == "yaml":
            print(yaml.safe_dump(obj, sort_keys=False))
        elif human_line is not None:
            print(human_line)

    def _parse_pairs(pairs_list):
        updates = {}
        for pair in pairs_list or []:
            if "=" not in pair:
                print(f"[devicetracker] Error: invalid field=value pair '{pair}'")
                sys.exit(1)
            k, v = pair.split("=", 1)
            updates[k.strip()] = v.strip()
        return updates

    def _split_options(raw):
        if raw is None:
            return None
        return [o.strip() for o in raw.split(",") if o.strip()]

    def cmd_init(args):
        try:
            store = store_ops.init_datastore(pathlib.Path(args.path))
            if not args.no_default:
                store_ops.set_default_datastore(store)
        except (OSError, ValueError) as e:
            _fail(e)
        _print_or_dump(
            {"store_path": str(store), "default": not args.no_default},
            f"[devicetracker] Initialized datastore at '{store}'",
        )
        if _fmt() == "human" and not args.no_default:
            print(f"[devicetracker] Default datastore set in '{CONFIG_FILENAME}'")

    # Fields
    def _print_fields(settings):
        fields = settings["fields"]
        if _fmt() != "human":
            _print_or_dump(fields)
            return
        print(f"{'Id':<22} | {'Label':<28} | {'Type':<6} | Flags")
        print("-" * 72)
        for f in fields:
            flags = []
            if f.get("isPrimary"):
                flags.append("primary")
            if f.get("required"):
                flags.append("required")
            if f.get("options"):
                flags.append("options=" + "/".join(f["options"]))
            print(f"{f['id']:<22} | {f['label']:<28} | {f['type']:<6} | {', '.join(flags)}")

    def cmd_fields_ls(args):
        _print_fields(get_settings(_store_path()))

    def cmd_fields_add(args):
        try:
            settings = add_field(
                _store_path(),
                args.label,
                args.type,
                _split_options(args.options),
                args.primary,
                field_id=args.field_id,
                required=args.required,
            )
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(settings["fields"], f"[devicetracker] Added field '{args.label}'")

    def cmd_fields_set(args):
        changes = {}
        if args.label is not None:
            changes["label"] = args.label
        if args.type is not None:
            changes["type"] = args.type
        if args.options is not None:
            changes["options"] = _split_options(args.options)
        if args.primary:
            changes["isPrimary"] = True
        if args.required is not None:
            changes["required"] = args.required
        if not changes:
            print("[devicetracker] Error: nothing to change")
            sys.exit(2)
        try:
            settings = edit_field(_store_path(), args.field_id, **changes)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(settings["fields"], f"[devicetracker] Updated field '{args.field_id}': {', '.join(sorted(changes))}")

    def cmd_fields_rm(args):
        try:
            settings = remove_field(_store_path(), args.field_id)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(settings["fields"], f"[devicetracker] Removed field '{args.field_id}'")

    def cmd_fields_move(args):
        try:
            settings = move_field(_store_path(), args.field_id, args.direction)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_fields(settings)

    def cmd_fields_opt_add(args):
        try:
            settings = add_field_option(_store_path(), args.field_id, args.option)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(settings["fields"], f"[devicetracker] Added option '{args.option}' to '{args.field_id}'")

    def cmd_fields_opt_rm(args):
        try:
            settings = remove_field_option(_store_path(), args.field_id, args.option)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(settings["fields"], f"[devicetracker] Removed option '{args.option}' from '{args.field_id}'")

    # Statuses
    def cmd_statuses_ls(args):
        statuses = get_settings(_store_path())["status_options"]
        _print_or_dump(statuses, "\n".join(statuses) if statuses else "[devicetracker] No status options.")

    def cmd_statuses_add(args):
        settings = add_status_option(_store_path(), args.status)
        _print_or_dump(settings["status_options"], f"[devicetracker] Status options: {', '.join(settings['status_options'])}")

    def cmd_statuses_rm(args):
        settings = remove_status_option(_store_path(), args.status)
        _print_or_dump(settings["status_options"], f"[devicetracker] Status options: {', '.join(settings['status_options'])}")

    # Records
    def cmd_records_ls(args):
        store = _store_path()
        settings = get_settings(store)
        records = list_records(store)
        if args.query:
            records = search_records(records, args.query, settings["fields"])
        records = sort_records(records)
        if _fmt() != "human":
            _print_or_dump(records)
            return
        if not records:
            print("[devicetracker] No records found.")
            return
        cols = [("id", "Id", 26), ("equipmentDescription", "Equipment", 28), ("assetTag", "Asset Tag", 12),
                ("currentOwner", "Owner", 16)]
        header = " | ".join(f"{title:<{w}}" for _, title, w in cols) + " | Status"
        print(header)
        print("-" * len(header))
        for r in records:
            row = [f"{str(r.get(k) or '')[:w]:<{w}}" for k, _, w in cols]
            print(" | ".join(row) + " | " + display_status(r, settings["status_options"]))

    def cmd_records_show(args):
        try:
            rec = get_record(_store_path(), args.record_id)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        if _fmt() == "json":
            print(json.dumps(rec, indent=2))
        else:
            print(yaml.safe_dump(rec, sort_keys=False))

    def cmd_records_add(args):
        store = _store_path()
        data = _parse_pairs(args.pairs)
        try:
            rec = create_record(store, data, user=args.user, fields=get_fields(store))
        except (ValueError, FileExistsError) as e:
            _fail(e)
        _print_or_dump(rec, f"[devicetracker] Created record '{rec['id']}'")

    def cmd_records_set(args):
        store = _store_path()
        updates = _parse_pairs(args.pairs)
        try:
            rec = update_record(store, args.record_id, updates, user=args.user,
                                expected_rev=args.rev, fields=get_fields(store))
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(rec, f"[devicetracker] Updated record '{args.record_id}' fields: {', '.join(sorted(updates))}")

    def cmd_records_rm(args):
        try:
            rec = delete_record(_store_path(), args.record_id)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(rec, f"[devicetracker] Deleted record '{args.record_id}'")

    def cmd_records_history(args):
        try:
            events = record_history(_store_path(), args.record_id)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        if _fmt() != "human":
            _print_or_dump(events)
            return
        for ev in events:
            print(f"{ev['date']}  {ev['user']:<20} {ev['action']:<12} {ev['details']}")

    def cmd_import(args):
        store = _store_path()
        try:
            if args.file == "-":
                text = sys.stdin.read()
            else:
                text = decode_csv_bytes(pathlib.Path(args.file).read_bytes())
        except OSError as e:
            _fail(e)
        candidates = reconcile(text, get_fields(store), repair_keywords=get_repair_keywords(store))
        created = import_records(store, candidates, user=args.user, replace=args.replace)
        mode = "replace" if args.replace else "append"
        _print_or_dump(
            {"imported": len(created), "mode": mode, "ids": [r["id"] for r in created]},
            f"[devicetracker] Imported {len(created)} records ({mode})",
        )

    def cmd_export(args):
        store = _store_path()
        body = export_csv(sort_records(list_records(store)), get_fields(store))
        if args.file:
            pathlib.Path(args.file).write_text(body + "\n")
            print(f"[devicetracker] Wrote {args.file}")
        else:
            print(body)

    # Users
    def cmd_users_ls(args):
        users = list_users(_store_path())
        if _fmt() != "human":
            _print_or_dump(users)
            return
        for u in users:
            print(f"{u['id']:<26} | {u['email']:<32} | {u['name']:<20} | {u['role']}")

    def cmd_users_add(args):
        try:
            user = add_user(_store_path(), args.email, args.name, args.password, args.role)
        except ValueError as e:
            _fail(e)
        _print_or_dump(user, f"[devicetracker] Added user '{user['email']}' ({user['role']})")

    def cmd_users_rm(args):
        try:
            user = delete_user(_store_path(), args.user_id)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        _print_or_dump(user, f"[devicetracker] Deleted user '{user['email']}'")

    def cmd_users_registration(args):
        settings = set_registration_enabled(_store_path(), args.state == "on")
        _print_or_dump(
            {"registration_enabled": settings["registration_enabled"]},
            f"[devicetracker] Registration {'enabled' if settings['registration_enabled'] else 'disabled'}",
        )

    def cmd_stats(args):
        store = _store_path()
        records = list_records(store)
        result = {
            "inventory": inventory_stats(records),
            "equipment": equipment_stats(records, get_fields(store)),
        }
        if _fmt() != "human":
            _print_or_dump(result)
            return
        inv = result["inventory"]
        print(f"Total: {inv['total']}  Available: {inv['available']}  In Use: {inv['inUse']}  Need Repair: {inv['needRepair']}")
        for s in result["equipment"]:
            print(f" - {s['description']} ({s['manufacturer']}): {s['count']}")

    def cmd_validate(args):
        store = _store_path()
        result = validate_store(store)
        errors = int(result.get("errors", 0))
        warnings = int(result.get("warnings", 0))
        fmt = _fmt()
        if fmt == "json":
            print(json.dumps(result, indent=2))
        elif fmt == "yaml":
            print(yaml.safe_dump(result, sort_keys=False))
        else:
            print(f"[devicetracker] Validation results for {store}")
            print(f"Errors: {errors}, Warnings: {warnings}")
            for it in result.get("issues", []):
                print(f" - [{it['severity'].upper()}] {it['code']} :: {it['path']} :: {it['message']}")
        if errors > 0 or (args.strict and warnings > 0):
            sys.exit(1)

    def cmd_reset(args):
        if not args.yes:
            print("[devicetracker] Error: reset deletes every record; pass --yes to confirm")
            sys.exit(2)
        removed = store_ops.reset_datastore(_store_path())
        _print_or_dump(
            removed,
            f"[devicetracker] Reset datastore: removed {removed['records']} records, {removed['users']} users",
        )

    def cmd_label(args):
        deps = labels_check_dependencies()
        if not all(deps.values()):
            missing = ", ".join(k for k, ok in deps.items() if not ok)
            _fail(f"missing label dependencies: {missing}")
        try:
            res = generate_label_for_record(_store_path(), args.record_id, dpi=args.dpi, text_size=args.text_size)
        except (ValueError, FileNotFoundError) as e:
            _fail(e)
        out = pathlib.Path(args.out or res["filename"])
        out.write_bytes(res["png"])
        _print_or_dump({"id": args.record_id, "file": str(out)}, f"[devicetracker] Wrote label to {out}")

    def cmd_web(args):
        # Add the project root to Python path for web imports
        project_root = pathlib.Path(__file__).parent.parent.parent
        sys.path.insert(0, str(project_root))
        try:
            from web.app import app
        except ImportError as e:
            if getattr(e, "name", "") == "flask":
                print(" Error: Flask is not installed. Install with: pip install flask")
            else:
                print(f" Import error starting web API: {e}")
            sys.exit(1)
        print(" Starting devicetracker web API...")
        print(f" Listening on: http://localhost:{args.port}")
        print("=" * 50)
        try:
            app.run(debug=args.debug, host=args.host, port=args.port, use_reloader=args.debug)
        except KeyboardInterrupt:
            print("\n Shutting down devicetracker web API...")
        except OSError as e:
            if "Address already in use" in str(e):
                print(f" Error: Port {args.port} is already in use.")
                print(f"   Try using a different port: dt web --port {args.port + 1}")
            else:
                print(f" Error starting web server: {e}")
            sys.exit(1)

    # Dispatch via table
    cmd = args.command
    aliases = {"list": "ls", "view": "show", "remove": "rm"}
    sub_attr = {
        "fields": "fld_cmd",
        "statuses": "st_cmd",
        "records": "rec_cmd",
        "users": "usr_cmd",
    }.get(cmd)
    sub = getattr(args, sub_attr, None) if sub_attr else None
    sub = aliases.get(sub, sub)

    DISPATCH = {
        ("init", None): cmd_init,
        ("web", None): cmd_web,
        ("validate", None): cmd_validate,
        ("stats", None): cmd_stats,
        ("reset", None): cmd_reset,
        ("label", None): cmd_label,
        ("import", None): cmd_import,
        ("export", None): cmd_export,
        ("fields", "ls"): cmd_fields_ls,
        ("fields", "add"): cmd_fields_add,
        ("fields", "set"): cmd_fields_set,
        ("fields", "rm"): cmd_fields_rm,
        ("fields", "move"): cmd_fields_move,
        ("fields", "opt-add"): cmd_fields_opt_add,
        ("fields", "opt-rm"): cmd_fields_opt_rm,
        ("statuses", "ls"): cmd_statuses_ls,
        ("statuses", "add"): cmd_statuses_add,
        ("statuses", "rm"): cmd_statuses_rm,
        ("records", "ls"): cmd_records_ls,
        ("records", "show"): cmd_records_show,
        ("records", "add"): cmd_records_add,
        ("records", "set"): cmd_records_set,
        ("records", "rm"): cmd_records_rm,
        ("records", "history"): cmd_records_history,
        ("users", "ls"): cmd_users_ls,
        ("users", "add"): cmd_users_add,
        ("users", "rm"): cmd_users_rm,
        ("users", "registration"): cmd_users_registration,
    }

    handler = DISPATCH.get((cmd, sub))
    if handler:
        try:
            handler(args)
        except RuntimeError as e:
            # Raised when no datastore is configured
            print(e)
            sys.exit(1)
    else:
        {
            "fields": fields_parser,
            "statuses": statuses_parser,
            "records": records_parser,
            "users": users_parser,
        }.get(cmd, parser).print_help()


if __name__ == "__main__":
    main()
