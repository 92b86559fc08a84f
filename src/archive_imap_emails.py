"""
IMAP Mailbox Archiver

Archives the mailboxes of one or more IMAP accounts to a local directory,
one .eml file (RFC 5322, byte-for-byte as stored on the server) per message.

Features:
- Incremental: the UID in each filename is the index, so messages already on
  disk are never downloaded again and an interrupted run resumes where it
  stopped.
- Read-only: mailboxes are EXAMINEd and bodies fetched with BODY.PEEK[].
- Include/exclude lists per account.
- Per-UID (verified) or batched fetching.
- Password or OAuth2 (XOAUTH2, Microsoft and Google) login.

Layout:
  <dir>/<username>/<mailbox>/<uid>-<subject>.eml

Configuration (JSON, see config.example.json):
  ARCHIVE_CONFIG: Path to the config file (default: config.json).
  ARCHIVE_DIR: Overrides "dir" from the config file.
  MAX_WORKERS: Accounts archived in parallel (default: 1).
  CONTINUE_ON_ERROR: Set to "true" to keep going after a failed account.

Usage:
  python3 archive_imap_emails.py --config config.json
  python3 archive_imap_emails.py --config config.json --dest-path ./archive --continue-on-error
"""

import argparse
import os
import sys
import threading

from auth import imap_oauth2
from core import archiver
from utils import archive_config
from utils.archive_errors import ArchiveError, ConfigError
from utils.archive_log import ArchiveLog

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def env_flag(name):
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def build_parser():
    parser = argparse.ArgumentParser(description="Archive IMAP mailboxes to local .eml files.")
    parser.add_argument(
        "--config",
        default=os.getenv("ARCHIVE_CONFIG", archive_config.DEFAULT_CONFIG_PATH),
        help="Path to the JSON configuration file",
    )
    parser.add_argument("--dest-path", default=os.getenv("ARCHIVE_DIR"), help="Override the archive root directory")
    parser.add_argument(
        "--workers", type=int, default=int(os.getenv("MAX_WORKERS", 1)), help="Accounts to archive in parallel"
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        default=env_flag("CONTINUE_ON_ERROR"),
        help="Archive remaining accounts after one fails and report all failures at the end",
    )
    parser.add_argument("--verbose", action="store_true", default=env_flag("VERBOSE"), help="Log state transitions")
    return parser


def print_summary(config, args):
    print("\n--- Configuration Summary ---")
    print(f"Config File     : {args.config}")
    print(f"Archive Path    : {config.dir}")
    print(f"Accounts        : {len(config.accounts)}")
    for account in config.accounts:
        filters = []
        if account.include:
            filters.append(f"include={list(account.include)}")
        if account.exclude:
            filters.append(f"exclude={list(account.exclude)}")
        print(f"  - {account.username} @ {account.imap}")
        print(f"    Auth        : {imap_oauth2.auth_description(account)}")
        print(f"    Fetch       : {account.fetch_strategy} (batch size {account.batch_size})")
        if filters:
            print(f"    Filters     : {', '.join(filters)}")
    print(f"Workers         : {args.workers}")
    print(f"On Error        : {'continue' if args.continue_on_error else 'stop'}")
    print("-----------------------------\n")


def print_results(results):
    print("\n--- Archive Results ---")
    for result in results:
        status = "OK" if result.ok else "FAILED"
        if result.ok and result.stopped:
            status = "STOPPED"
        print(f"{result.username}: {status}, {result.archived} new message(s)")
        for mailbox in result.mailboxes:
            print(f"  {mailbox.name}: {mailbox.archived} archived, {mailbox.skipped} already present")
        if result.error is not None:
            print(f"  Error: {result.error}")
    print("-----------------------")


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.workers < 1:
        print("Error: --workers must be >= 1")
        return EXIT_FAILURE

    try:
        config = archive_config.load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        return EXIT_FAILURE

    if args.dest_path:
        config = config.with_dir(os.path.expanduser(args.dest_path))

    print_summary(config, args)
    log = ArchiveLog(verbose=args.verbose)
    stop_event = threading.Event()

    try:
        results = archiver.archive_all(
            config,
            log,
            continue_on_error=args.continue_on_error,
            workers=args.workers,
            stop_event=stop_event,
        )
    except KeyboardInterrupt:
        stop_event.set()
        print("\nArchive interrupted by user. Files already written are complete and will be skipped next run.")
        return EXIT_INTERRUPTED
    except ArchiveError as e:
        print(f"\nArchive stopped: {e}")
        return EXIT_FAILURE
    except Exception as e:
        print(f"\nFatal Error: {e}")
        return EXIT_FAILURE

    print_results(results)
    if any(not r.ok for r in results):
        print("\nArchive completed with errors.")
        return EXIT_FAILURE
    print("\nArchive completed successfully.")
    return EXIT_OK


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
