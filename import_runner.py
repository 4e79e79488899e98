import argparse
import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from piletracker.config import AppConfig, configure_logging
from piletracker.database import DatabaseError, PileDatabase
from piletracker.filters import PileFilters, apply_pile_filters, sort_and_group_duplicates
from piletracker.importer import PileImporter, iter_error_lines
from piletracker.lookup import build_lookup_records, describe_lookup_upload, read_lookup_file, replace_lookup_data
from piletracker.metrics import daily_production, summarize_groups, summarize_machines
from piletracker.pdf_report import make_piles_pdf_bytes
from piletracker.preliminary import build_preliminary_records, read_preliminary_file, upload_preliminary
from piletracker.services.projects import ProjectSettings, create_project, get_project
from piletracker.state import AppDataStore
from piletracker.workbook import (
    export_filename,
    make_import_report_workbook_bytes,
    make_piles_workbook_bytes,
    make_production_workbook_bytes,
)


def _resolve_path(value: Optional[str], base: Path) -> Optional[Path]:
    if value in (None, ""):
        return None
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate.resolve()


def _parse_overrides(raw: Optional[Iterable[str]]) -> Dict[str, Optional[str]]:
    """``--map field=Header`` pairs; an empty header unmaps the field."""

    overrides: Dict[str, Optional[str]] = {}
    for item in raw or []:
        if "=" not in item:
            raise SystemExit(f"Invalid --map value '{item}'; expected field=Header.")
        name, header = item.split("=", 1)
        overrides[name.strip()] = header.strip() or None
    return overrides


def _read_input(path_value: str) -> tuple[bytes, str]:
    path = _resolve_path(path_value, Path.cwd())
    if path is None or not path.is_file():
        raise SystemExit(f"Input file not found: {path_value}")
    return path.read_bytes(), path.name


def _write_output(content: bytes, output: Optional[str], default_name: str) -> Path:
    destination = _resolve_path(output, Path.cwd()) if output else Path.cwd() / default_name
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(content)
    return destination


def _require_project(db: PileDatabase, project_id: str) -> Dict[str, Any]:
    project = get_project(db, project_id)
    if project is None:
        raise SystemExit(f"Unknown project '{project_id}'.")
    return project


def run_import(db: PileDatabase, config: AppConfig, args: argparse.Namespace) -> int:
    _require_project(db, args.project)
    content, filename = _read_input(args.file)
    importer = PileImporter(db, config)
    report, result = importer.run(
        content,
        filename,
        args.project,
        overrides=_parse_overrides(args.map),
        skip_duplicates=args.skip_duplicates,
        dry_run=args.dry_run,
    )
    print(f"[import] {filename}: {report.summary_text()}")
    for line in iter_error_lines(report):
        print(f"[import]   {line}")
    if args.report:
        path = _write_output(make_import_report_workbook_bytes(report), args.report, "import_review.xlsx")
        print(f"[import] Review workbook written to {path}")
    if result is None:
        print("[import] Dry run: nothing was written.")
        return 0
    print(f"[import] {result.message()}")
    return 0 if result.ok else 1


def run_lookup(db: PileDatabase, config: AppConfig, args: argparse.Namespace) -> int:
    _require_project(db, args.project)
    content, filename = _read_input(args.file)
    frame, mapping = read_lookup_file(content, filename)
    mapping = mapping.with_overrides(_parse_overrides(args.map))
    records, skipped = build_lookup_records(frame, mapping, args.project)
    print(f"[lookup] {filename}: {describe_lookup_upload(db, args.project, len(records), skipped)}")
    if args.dry_run:
        return 0
    result = replace_lookup_data(db, args.project, records, config.lookup_batch_size, skipped=skipped)
    print(f"[lookup] Replaced {result.deleted} rows with {result.inserted}.")
    for error in result.errors:
        print(f"[lookup] Warning: {error}")
    return 0 if result.ok else 1


def run_preliminary(db: PileDatabase, config: AppConfig, args: argparse.Namespace) -> int:
    _require_project(db, args.project)
    content, filename = _read_input(args.file)
    frame, mapping = read_preliminary_file(content, filename)
    mapping = mapping.with_overrides(_parse_overrides(args.map))
    records, skipped = build_preliminary_records(frame, mapping, args.project)
    print(f"[preliminary] {filename}: {len(records)} records ready, {len(skipped)} skipped without a machine.")
    if args.dry_run:
        return 0
    result = upload_preliminary(db, records, config.preliminary_batch_size, skipped_rows=skipped)
    print(f"[preliminary] {result.message()}")
    return 0 if not result.errors else 1


def run_create_project(db: PileDatabase, config: AppConfig, args: argparse.Namespace) -> int:
    try:
        settings = ProjectSettings.from_form(
            {
                "project_name": args.name,
                "project_location": args.location,
                "embedment_tolerance": args.tolerance,
                "total_project_piles": args.total_piles,
                "geotech_company": args.geotech,
            }
        )
    except ValueError as exc:
        raise SystemExit(f"[project] {exc}") from exc
    project_id = create_project(db, settings, owner_user_id=args.owner)
    print(f"[project] Created '{settings.project_name}' with id {project_id}")
    return 0


def run_export(db: PileDatabase, config: AppConfig, args: argparse.Namespace) -> int:
    project = _require_project(db, args.project)
    export_config = dataclasses.replace(config, account_type="owner") if args.published_only else config
    store = AppDataStore(export_config, db)
    prepared = store.get_prepared_piles(args.project)
    name = str(project.get("project_name") or "project")

    if args.kind == "production":
        content = make_production_workbook_bytes(
            summarize_machines(prepared),
            daily_production(prepared),
            summarize_groups(prepared, "block"),
        )
        path = _write_output(content, args.output, export_filename(name, "production", "xlsx"))
        print(f"[export] Production workbook written to {path}")
        return 0

    filters = PileFilters(
        statuses=args.status or [],
        blocks=args.block or [],
        start_date=args.start_date,
        end_date=args.end_date,
        duplicates_only=args.duplicates_only,
        search=args.search or "",
    )
    filtered = sort_and_group_duplicates(apply_pile_filters(prepared, filters))
    if args.kind == "pdf":
        try:
            content = make_piles_pdf_bytes(filtered, project=project, active_filters=filters.describe())
        except ValueError as exc:
            print(f"[export] {exc}")
            return 1
    else:
        content = make_piles_workbook_bytes(filtered, project=project, active_filters=filters.describe())
    path = _write_output(content, args.output, export_filename(name, "piles", args.kind))
    print(f"[export] {len(filtered)} piles written to {path}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import pile data and export reports without the dashboard.")
    parser.add_argument("--database", help="DuckDB file (defaults to DATABASE_PATH).")
    parser.add_argument("--json-summary", action="store_true", help="Print table row counts as JSON when done.")
    sub = parser.add_subparsers(dest="command", required=True)

    def _upload_command(name: str, help_text: str) -> argparse.ArgumentParser:
        command = sub.add_parser(name, help=help_text)
        command.add_argument("file", help="CSV or XLSX file.")
        command.add_argument("--project", required=True, help="Target project id.")
        command.add_argument(
            "--map",
            action="append",
            metavar="FIELD=HEADER",
            help="Override the suggested column for a field (repeatable).",
        )
        command.add_argument("--dry-run", action="store_true", help="Validate only; do not write.")
        return command

    pile_cmd = _upload_command("import", "Validate and upload a pile sheet.")
    pile_cmd.add_argument("--skip-duplicates", action="store_true", help="Do not upload rows flagged as duplicate.")
    pile_cmd.add_argument("--report", help="Write the review workbook to this path.")
    _upload_command("lookup", "Replace the project's pile plot lookup data.")
    _upload_command("preliminary", "Upload preliminary production records.")

    project_cmd = sub.add_parser("create-project", help="Create a project.")
    project_cmd.add_argument("--name", required=True)
    project_cmd.add_argument("--location", required=True)
    project_cmd.add_argument("--tolerance", type=float, default=None)
    project_cmd.add_argument("--total-piles", type=int, default=None)
    project_cmd.add_argument("--geotech", default=None)
    project_cmd.add_argument("--owner", default=None, help="User id linked as project owner.")

    export_cmd = sub.add_parser("export", help="Export piles (xlsx/pdf) or production (xlsx).")
    export_cmd.add_argument("kind", choices=["xlsx", "pdf", "production"])
    export_cmd.add_argument("--project", required=True)
    export_cmd.add_argument("--output", help="Destination path.")
    export_cmd.add_argument("--status", action="append", help="Status filter (repeatable).")
    export_cmd.add_argument("--block", action="append", help="Block filter (repeatable).")
    export_cmd.add_argument("--start-date")
    export_cmd.add_argument("--end-date")
    export_cmd.add_argument("--search")
    export_cmd.add_argument("--duplicates-only", action="store_true")
    export_cmd.add_argument("--published-only", action="store_true", help="Only include published piles.")
    return parser


COMMANDS = {
    "import": run_import,
    "lookup": run_lookup,
    "preliminary": run_preliminary,
    "create-project": run_create_project,
    "export": run_export,
}


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    configure_logging()
    config = AppConfig()
    if args.database:
        resolved = _resolve_path(args.database, Path.cwd())
        config = dataclasses.replace(config, database_path=str(resolved))
    try:
        config.validate()
    except ValueError as exc:
        parser.error(str(exc))

    try:
        db = PileDatabase(config.database_path)
    except DatabaseError as exc:
        raise SystemExit(f"[pipeline] {exc}") from exc
    try:
        code = COMMANDS[args.command](db, config, args)
        if args.json_summary:
            print(json.dumps(db.table_counts()))
    except DatabaseError as exc:
        print(f"[pipeline] Database error: {exc}")
        code = 1
    finally:
        db.close()
    return code


if __name__ == "__main__":
    raise SystemExit(main())
