"""Minimal CLI entry point for manual testing of the mail sync engine."""

from __future__ import annotations

import argparse
import logging
import sys
import time

from mailsync.config.settings import MailSyncSettings
from mailsync.core.auth import authenticate
from mailsync.core.folders import FolderResolver
from mailsync.core.models import ALL_MAIL, SENT, FolderSelector, RawMessage, SyncProgress
from mailsync.pipeline.synchronizer import MailSynchronizer

INBOX = FolderSelector(role="inbox", attribute="\\Inbox", name_patterns=("INBOX",))

SELECTORS: dict[str, FolderSelector] = {
    "all": ALL_MAIL,
    "sent": SENT,
    "inbox": INBOX,
}


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: SyncProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.current_stage}] "
        f"folder={progress.folder or '-'} "
        f"fetched={progress.messages_fetched} "
        f"saved={progress.messages_saved} "
        f"duplicates={progress.messages_duplicate} "
        f"failed={progress.messages_failed}",
        end="\r",
        flush=True,
    )


def on_batch(raws: list[RawMessage]) -> None:
    """Announce a batch picked up by the watcher."""
    print(f"\n{len(raws)} new message(s), newest UID {max(r.uid for r in raws)}")


def _add_folder_arg(subparser: argparse.ArgumentParser) -> None:
    """Add the --folder selector flag to a subparser."""
    subparser.add_argument(
        "--folder",
        "-f",
        choices=sorted(SELECTORS),
        default="all",
        help="Which folder to sync (default: all mail)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        description="Mail Sync - fetch, decode and watch an IMAP mailbox"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("auth", help="Run the OAuth consent flow and cache the token")
    subparsers.add_parser("folders", help="List folders with decoded names and roles")

    sync_parser = subparsers.add_parser("sync", help="Run one sync pass")
    _add_folder_arg(sync_parser)

    watch_parser = subparsers.add_parser("watch", help="Watch for new mail until interrupted")
    _add_folder_arg(watch_parser)

    subparsers.add_parser("status", help="Show stored message count and watermarks")
    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = MailSyncSettings()
    setup_logging(settings.log_level)

    if args.command == "auth":
        try:
            settings.ensure_directories()
            authenticate(settings.credentials_path, settings.token_path)
        except Exception as e:
            print(f"\nError: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Token cached at {settings.token_path}")
        return

    synchronizer = MailSynchronizer(settings=settings, on_progress=on_progress)

    try:
        if args.command == "folders":
            resolver = FolderResolver()
            with synchronizer.open_session() as session:
                folders = session.list_folders()
            print(f"\nFound {len(folders)} folders:\n")
            for folder in folders:
                roles = ",".join(resolver.classify(folder)) or "-"
                print(f"  {folder.display_name:40s} {roles:10s} {folder.name}")

        elif args.command == "sync":
            messages = synchronizer.sync_once(SELECTORS[args.folder])
            print(f"\n\nSynced {len(messages)} new messages")
            for msg in messages:
                sender = msg.from_name or msg.from_email
                print(f"  {msg.received_at:%Y-%m-%d %H:%M}  {sender}: {msg.subject or '(no subject)'}")

        elif args.command == "watch":
            handle = synchronizer.start_watch(SELECTORS[args.folder], on_batch=on_batch)
            print("\nWatching for new mail, press Ctrl-C to stop")
            while handle.is_running:
                time.sleep(1)

        elif args.command == "status":
            count, watermarks = synchronizer.get_status()
            print(f"\nStored messages: {count}")
            for watermark in watermarks:
                print(f"  {watermark.folder}: UID {watermark.last_uid}")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        synchronizer.close()


if __name__ == "__main__":
    main()
