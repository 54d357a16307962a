#!/usr/bin/env python3
"""
Migration: merge duplicate CRM conversations and backfill normalized identity keys.

- Groups conversations by (channel, normalized identity) and merges each group into
  one primary conversation (most messages, then latest activity, then smallest id).
- Duplicates are deleted, or archived with --archive.
- --backfill-phones writes the normalized identity_key instead of merging.

Usage:
  python scripts/migrate_conversations.py --dry-run              # report only
  python scripts/migrate_conversations.py --limit 500            # merge, delete duplicates
  python scripts/migrate_conversations.py --archive --channel whatsapp
  python scripts/migrate_conversations.py --backfill-phones --dry-run
"""
import argparse
import logging
import os
import sys

# Project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

import config
from services.conversation_migration_service import ConversationMigrationService
from services.crm_contracts import Channel, MigrationOptions
from services.migration_errors import MigrationInProgressError
from storage.conversation_store import FirestoreConversationStore
from utils.utils import get_firestore_db


def build_parser():
    parser = argparse.ArgumentParser(description="Merge duplicate CRM conversations")
    parser.add_argument("--dry-run", action="store_true", help="Only report, do not write")
    parser.add_argument("--limit", type=int, default=config.MIGRATION_DEFAULT_LIMIT,
                        help="Maximum number of conversations to load")
    parser.add_argument("--archive", action="store_true",
                        help="Archive duplicates (status=closed) instead of deleting them")
    parser.add_argument("--channel", action="append", choices=[c.value for c in Channel],
                        help="Only process this channel (repeatable)")
    parser.add_argument("--collection", action="append",
                        help="Firestore collection to process (repeatable)")
    parser.add_argument("--backfill-phones", action="store_true",
                        help="Write normalized identity keys instead of merging")
    parser.add_argument("--requested-by", default="cli", help="Operator name stored on merged records")
    return parser


def print_merge_report(report):
    prefix = "[DRY-RUN] " if report.dry_run else ""
    print(f"\n{prefix}Scanned {report.records_scanned} conversations")
    print(f"  Groups found:    {report.groups_found}")
    print(f"  Groups merged:   {report.groups_merged}")
    print(f"  Groups failed:   {report.groups_failed}")
    print(f"  Messages merged: {report.messages_merged}")
    print(f"  Deleted:         {report.records_deleted}")
    print(f"  Archived:        {report.records_archived}")
    print(f"  Unmatched:       {len(report.unmatched)}")
    for plan in report.plans:
        action = "Would merge" if report.dry_run else "Merged"
        print(f"  {action} {plan['groupKey']}: {plan['discardedIds']} -> {plan['primaryId']}"
              f" ({plan['mergedMessageCount']} messages)")
    for error in report.errors:
        print(f"  ❌ {error['groupKey']}: {error['message']}")


def print_backfill_report(report):
    prefix = "[DRY-RUN] " if report.dry_run else ""
    print(f"\n{prefix}Scanned {report.scanned} conversations")
    for update in report.updates:
        print(f"  {update['id']}: {update['from']} -> {update['to']}")
    print(f"  Updated: {report.updated}  Skipped: {report.skipped}  Failed: {report.failed}"
          f"  Unmatched: {len(report.unmatched)}")
    for error in report.errors:
        print(f"  ❌ {error['recordId']}: {error['message']}")


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO))

    db = get_firestore_db()
    if not db:
        print("❌ Firestore not initialized. Ensure data/firebase_data.json exists.")
        return 1

    try:
        options = MigrationOptions(
            dry_run=args.dry_run,
            limit=args.limit,
            delete_duplicates=not args.archive,
            channels=set(args.channel) if args.channel else None,
            collections=args.collection or [config.FIRESTORE_CONVERSATIONS_COLLECTION],
            requested_by=args.requested_by,
        )
    except ValueError as e:
        print(f"❌ {e}")
        return 2

    service = ConversationMigrationService(FirestoreConversationStore(db))
    try:
        if args.backfill_phones:
            report = service.backfill_identity_keys(options)
            print_backfill_report(report)
        else:
            report = service.run(options)
            print_merge_report(report)
    except MigrationInProgressError as e:
        print(f"❌ {e}")
        return 1

    if report.aborted:
        print("\n❌ Aborted.")
        return 1
    print("\nDone.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
