import argparse
import json
import sys
import time
from datetime import date
from pathlib import Path

import uvicorn

from attendance_engine.config import get_settings
from attendance_engine.engine import AttendanceEngine
from attendance_engine.exceptions import AttendanceError
from attendance_engine.logger import setup_logger
from attendance_engine.recognition_service import SessionEvent


def _load_descriptors(path: Path) -> list[list[float]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if payload and isinstance(payload[0], (int, float)):
        return [payload]
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Face descriptor matching and daily attendance engine"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    api = subparsers.add_parser("api", help="Serve the attendance HTTP API")
    api.add_argument("--host", default="0.0.0.0", help="Host interface")
    api.add_argument("--port", type=int, default=8000, help="Port")

    subparsers.add_parser("init-db", help="Create database tables")

    enroll = subparsers.add_parser("enroll", help="Enroll or re-enroll an identity from a descriptor file")
    enroll.add_argument("--id", required=True, dest="identity_id", help="Identity ID")
    enroll.add_argument("--name", required=True, help="Display name")
    enroll.add_argument(
        "--descriptors",
        type=Path,
        required=True,
        help="JSON file with one descriptor or a list of descriptors",
    )
    enroll.add_argument("--department", default=None, help="Department")
    enroll.add_argument("--external-id", default=None, help="External employee or student ID")

    remove = subparsers.add_parser("remove", help="Remove an identity and its attendance")
    remove.add_argument("--id", required=True, dest="identity_id", help="Identity ID")

    replay = subparsers.add_parser("replay", help="Feed recorded probe descriptors through a capture session")
    replay.add_argument("--probes", type=Path, required=True, help="JSON file with a list of descriptors")
    replay.add_argument("--interval", type=float, default=0.2, help="Seconds between probes")

    export = subparsers.add_parser("export", help="Export attendance for a date")
    export.add_argument("--date", type=date.fromisoformat, default=None, help="Day (YYYY-MM-DD), default today")
    export.add_argument("--format", choices=("csv", "xlsx"), default="csv", help="Output format")
    export.add_argument("--output", type=Path, default=None, help="Output file (CSV goes to stdout if omitted)")

    list_cmd = subparsers.add_parser("list-identities", help="List enrolled identities")
    list_cmd.add_argument("--all", action="store_true", help="Include deactivated identities")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "api":
            from attendance_engine.api.app import create_app

            app = create_app()
            uvicorn.run(app, host=args.host, port=args.port, log_level=get_settings().log_level.lower())
            return 0

        engine = AttendanceEngine.from_settings()

        if args.command == "init-db":
            print(f"Database ready at {engine.settings.database_url}")
            return 0

        if args.command == "enroll":
            metadata = {}
            if args.department:
                metadata["department"] = args.department
            if args.external_id:
                metadata["external_id"] = args.external_id
            identity = engine.registration.enroll(
                identity_id=args.identity_id,
                display_name=args.name,
                descriptors=_load_descriptors(args.descriptors),
                metadata=metadata,
            )
            print(f"Enrolled {identity.identity_id} ({identity.display_name}) with {len(identity.descriptors)} descriptors.")
            return 0

        if args.command == "remove":
            removed = engine.registration.remove(args.identity_id)
            print(f"Removed {args.identity_id}." if removed else f"{args.identity_id} was not enrolled.")
            return 0

        if args.command == "replay":
            recorded = _load_descriptors(args.probes)
            probes = iter(recorded)
            session = engine.new_session(frame_source=lambda: next(probes, None))
            session.interval_seconds = max(0.01, args.interval)

            def _print_event(event: SessionEvent) -> None:
                print(f"[{event.sequence:04d}] {event.outcome.value}: {event.message}")

            session.subscribe(_print_event)
            with session:
                time.sleep(session.interval_seconds * (len(recorded) + 1))
            return 0

        if args.command == "export":
            day = args.date or engine.attendance.local_day()
            if args.format == "xlsx":
                output = args.output or Path(f"attendance-{day.isoformat()}.xlsx")
                output.write_bytes(engine.reports.attendance_excel(day))
                print(f"Wrote {output}")
            elif args.output is not None:
                args.output.write_text(engine.reports.attendance_csv(day), encoding="utf-8")
                print(f"Wrote {args.output}")
            else:
                sys.stdout.write(engine.reports.attendance_csv(day))
            return 0

        if args.command == "list-identities":
            identities = engine.db.list_identities(active_only=not args.all)
            if not identities:
                print("No identities enrolled.")
                return 0

            print(f"{'Identity ID':<16} {'Descriptors':<12} {'Active':<7} {'Name'}")
            print("-" * 60)
            for identity in identities[: args.limit]:
                active = "yes" if identity.is_active else "no"
                print(f"{identity.identity_id:<16} {len(identity.descriptors):<12} {active:<7} {identity.display_name}")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
