"""Command-line entry point for the Gmail Archiver."""

from __future__ import annotations

import argparse
import logging
import sys

from gmail_archiver.config.settings import GmailArchiverSettings
from gmail_archiver.core.models import ArchiveProgress
from gmail_archiver.pipeline.archiver import INTERRUPTED_REASON, Archiver

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_INTERRUPTED = 130


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: ArchiveProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.state.value}] "
        f"seen={progress.total_seen}/{progress.total_estimated} "
        f"archived={progress.archived} "
        f"skipped={progress.skipped} "
        f"failed={progress.failed}",
        end="\r",
        flush=True,
    )


def print_summary(progress: ArchiveProgress) -> None:
    """Print the end-of-run counts, and how to resume if the run aborted."""
    print("\n")
    print(f"Archived: {progress.archived}")
    print(f"Skipped (already archived): {progress.skipped}")
    print(f"Failed: {progress.failed}")
    if progress.aborted:
        print(f"\nRun aborted: {progress.abort_reason}")
        print("Re-run the archive command to continue from where it left off.")
        if progress.last_page_token:
            print(f"To skip already-listed pages, add --resume-token {progress.last_page_token}")
    else:
        print("\nArchive complete.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gmail-archiver",
        description="Gmail Archiver - Download every message of a Gmail account",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    archive_parser = subparsers.add_parser("archive", help="Start or resume an archive run")
    archive_parser.add_argument("--query", "-q", help="Gmail search query restricting the run")
    archive_parser.add_argument(
        "--workers",
        "-w",
        type=int,
        default=None,
        help="Concurrent fetches (default: from settings)",
    )
    archive_parser.add_argument(
        "--resume-token",
        default=None,
        dest="resume_token",
        help="Page token printed by an aborted run",
    )
    archive_parser.add_argument(
        "--no-labels",
        action="store_true",
        dest="no_labels",
        help="Do not archive label metadata",
    )

    subparsers.add_parser("status", help="Show archive counts and the last run")
    subparsers.add_parser("verify", help="Recompute checksums of archived messages")
    subparsers.add_parser("list-labels", help="List labels of the Gmail account")
    return parser


def _validate_archive_args(args: argparse.Namespace) -> None:
    """Reject non-positive worker counts."""
    if args.workers is not None and args.workers <= 0:
        print("Error: --workers must be positive", file=sys.stderr)
        sys.exit(2)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(2)

    if args.command == "archive":
        _validate_archive_args(args)

    settings = GmailArchiverSettings()
    if args.command == "archive" and args.no_labels:
        settings.archive_labels = False
    setup_logging(settings.log_level)

    archiver = Archiver(settings=settings, on_progress=on_progress)
    exit_code = EXIT_OK

    try:
        if args.command == "archive":
            progress = archiver.run(
                query=args.query,
                resume_token=args.resume_token,
                workers=args.workers,
            )
            print_summary(progress)
            if progress.aborted:
                interrupted = progress.abort_reason == INTERRUPTED_REASON
                exit_code = EXIT_INTERRUPTED if interrupted else EXIT_ABORTED

        elif args.command == "status":
            status = archiver.status()
            print(f"\nArchived messages: {status['archived']}")
            for representation, count in sorted(status["by_representation"].items()):
                print(f"  {representation}: {count}")
            print(f"Archived labels: {status['labels']}")
            last_run = status["last_run"]
            if last_run:
                print(
                    f"\nLast run #{last_run['run_id']} ({last_run['state']}, "
                    f"started {last_run['started_at']}): "
                    f"archived={last_run['archived']} skipped={last_run['skipped']} "
                    f"failed={last_run['failed']}"
                )
                if last_run["abort_reason"]:
                    print(f"  Aborted: {last_run['abort_reason']}")

        elif args.command == "verify":
            issues = archiver.verify()
            if issues:
                print(f"\nFound {len(issues)} problems:\n")
                for issue in issues:
                    print(f"  {issue.message_id:24s} {issue.problem:18s} {issue.detail}")
                exit_code = EXIT_ABORTED
            else:
                print("\nAll archived messages verified.")

        elif args.command == "list-labels":
            labels = archiver.list_labels()
            print(f"\nFound {len(labels)} labels:\n")
            for label in sorted(labels, key=lambda x: x.get("name", "")):
                print(f"  {label['id']:40s} {label.get('name', '')}")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        exit_code = EXIT_INTERRUPTED
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        exit_code = EXIT_ABORTED
    finally:
        archiver.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
