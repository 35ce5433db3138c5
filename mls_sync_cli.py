#!/usr/bin/env python3
"""
CLI Interface for the MLS Sync Pipeline

Provides commands for:
- Viewing provider sync status
- Running a sync for one provider
- Viewing sync history, errors and summaries
- Reviewing and resolving duplicate candidates
- Running the per-provider schedulers as a daemon

Usage:
    python mls_sync_cli.py status
    python mls_sync_cli.py sync reso_web_api --full
    python mls_sync_cli.py history
    python mls_sync_cli.py errors --unresolved
    python mls_sync_cli.py summary
    python mls_sync_cli.py duplicates
    python mls_sync_cli.py daemon
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime

from dotenv import load_dotenv
from supabase import create_client, Client

from config.sync_config import get_config
from services.mls_admin_service import MLSAdminService
from services.property_store import SupabasePropertyStore

# Load environment variables
load_dotenv()

config = get_config()

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(config.log_file)
    ]
)
logger = logging.getLogger(__name__)

STATUS_ICONS = {
    'completed': '✅',
    'failed': '❌',
    'running': '🔄',
    'paused': '⏸️',
    'idle': '💤',
}


def get_supabase_client() -> Client:
    """Create and return a Supabase client."""
    url = os.getenv('SUPABASE_URL')
    # Support both SUPABASE_KEY and SUPABASE_ANON_KEY for compatibility
    key = os.getenv('SUPABASE_KEY') or os.getenv('SUPABASE_ANON_KEY')

    if not url or not key:
        print("Error: SUPABASE_URL and SUPABASE_ANON_KEY environment variables required")
        sys.exit(1)

    return create_client(url, key)


def create_admin_service() -> MLSAdminService:
    """Create the admin service over the Supabase-backed store."""
    store = SupabasePropertyStore(get_supabase_client())
    return MLSAdminService(store, config)


async def cmd_status(args):
    """Show sync status for all providers."""
    print("\n" + "=" * 60)
    print("MLS PROVIDER SYNC STATUS")
    print("=" * 60)

    admin = create_admin_service()

    try:
        statuses = await admin.get_all_sync_status()

        for status in statuses:
            icon = STATUS_ICONS.get(status['status'], '❓')
            enabled = "enabled" if status['enabled'] else "disabled"
            print(f"\n{status['provider_id']} - {status['name']} ({enabled})")
            print("-" * 60)
            print(f"  Status: {icon} {status['status']}")
            print(f"  Interval: {status['sync_interval_minutes']} minutes")
            print(f"  Rate Limit Remaining: {status['rate_limit']['remaining']}")

            run = status.get('current_run')
            if run:
                print(f"  Last Run: {run['id']}")
                print(f"    Started: {(run.get('started_at') or '')[:19].replace('T', ' ')}")
                print(f"    Progress: {run['progress']:.1f}%")
                print(f"    Processed: {run['records_processed']} "
                      f"(created {run['records_created']}, updated {run['records_updated']}, "
                      f"failed {run['records_failed']})")
                print(f"    Duplicates Found: {run['duplicates_found']}")
                print(f"    Errors: {run['error_count']}")

        print()

    except Exception as e:
        print(f"\nError getting status: {e}")
        logger.exception("Status error")
        sys.exit(1)
    finally:
        await admin.shutdown()


async def cmd_sync(args):
    """Run a sync for one provider."""
    print("\n" + "=" * 60)
    print(f"SYNCING PROVIDER: {args.provider}")
    print("=" * 60)
    print(f"Mode: {'full' if args.full else 'incremental'}")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    admin = create_admin_service()

    options = {
        'full_sync': args.full,
        'max_records': args.max_records,
        'property_types': args.property_type or [],
        'status_filter': args.status or [],
        'skip_duplicates': args.skip_duplicates,
        'validate_data': not args.no_validate,
    }

    try:
        result = await admin.trigger_sync(args.provider, options, wait=args.wait)

        if not result.success:
            print(f"\n❌ Sync not started ({result.status}): {result.message}")
            sys.exit(1)

        print(f"\nRun ID: {result.run_id}")
        if not args.wait:
            print("Sync started in the background; use 'status' to follow progress.")
            return

        run = await admin.get_sync_progress(result.run_id)
        icon = STATUS_ICONS.get(run['status'], '❓')

        print("\n" + "-" * 60)
        print("RESULTS:")
        print("-" * 60)
        print(f"Status: {icon} {run['status']}")
        print(f"Pages Fetched: {run['pages_fetched']}")
        print(f"Processed: {run['records_processed']}")
        print(f"Created: {run['records_created']}")
        print(f"Updated: {run['records_updated']}")
        print(f"Failed: {run['records_failed']}")
        print(f"Duplicates Found: {run['duplicates_found']}")
        print(f"Errors: {run['error_count']}")
        print()

    except Exception as e:
        print(f"\nError running sync: {e}")
        logger.exception("Sync error")
        sys.exit(1)
    finally:
        await admin.shutdown()


async def cmd_history(args):
    """Show sync run history."""
    print("\n" + "=" * 60)
    print("SYNC RUN HISTORY")
    print("=" * 60)

    admin = create_admin_service()

    try:
        history = await admin.get_sync_history(args.provider, args.limit)

        if not history:
            print("\nNo sync runs found.")
        else:
            print(f"\nShowing {len(history)} most recent runs:")
            print("-" * 90)
            print(f"{'Provider':<16} {'Started':<20} {'Status':<13} {'Processed':<10} {'Created':<8} {'Failed':<8}")
            print("-" * 90)

            for run in history:
                started = (run.get('started_at') or '')[:19].replace('T', ' ')
                status = run.get('status', 'unknown')
                icon = STATUS_ICONS.get(status, '❓')
                print(f"{run.get('provider_id', '?'):<16} {started:<20} {icon} {status:<10} "
                      f"{run.get('records_processed', 0):<10} {run.get('records_created', 0):<8} "
                      f"{run.get('records_failed', 0):<8}")

        print("-" * 90)
        print()

    except Exception as e:
        print(f"\nError getting history: {e}")
        logger.exception("History error")
        sys.exit(1)
    finally:
        await admin.shutdown()


async def cmd_errors(args):
    """Show recent sync errors, optionally retrying or resolving one."""
    admin = create_admin_service()

    try:
        if args.retry:
            ok = await admin.retry_error(args.retry)
            print(f"{'✅ Retried' if ok else '❌ Could not retry'} error {args.retry}")
            return
        if args.resolve:
            ok = await admin.resolve_error(args.resolve)
            print(f"{'✅ Resolved' if ok else '❌ Could not resolve'} error {args.resolve}")
            return

        print("\n" + "=" * 60)
        print("RECENT SYNC ERRORS")
        print("=" * 60)

        errors = await admin.get_recent_errors(args.provider, args.limit, args.unresolved)
        if not errors:
            print("\nNo errors found.")
        for error in errors:
            flags = []
            if error.retryable:
                flags.append('retryable')
            if error.resolved:
                flags.append('resolved')
            print(f"\n[{error.timestamp.strftime('%Y-%m-%d %H:%M:%S')}] {error.provider_id} "
                  f"{error.error_type.value} ({', '.join(flags) or 'final'})")
            print(f"  {error.message}")
            print(f"  id: {error.id}" + (f"  record: {error.mls_record_id}" if error.mls_record_id else ""))
        print()

    except Exception as e:
        print(f"\nError getting sync errors: {e}")
        logger.exception("Errors command error")
        sys.exit(1)
    finally:
        await admin.shutdown()


async def cmd_summary(args):
    """Show sync summary statistics."""
    days = args.days if hasattr(args, 'days') and args.days else 7

    print("\n" + "=" * 60)
    print(f"SYNC SUMMARY (Last {days} days)")
    print("=" * 60)

    admin = create_admin_service()

    try:
        summary = await admin.get_sync_summary(days)

        if not summary:
            print("\nNo data available.")
        else:
            print(f"\nTotal Runs: {summary.get('total_runs', 0)}")
            print(f"  Successful: {summary.get('successful_runs', 0)}")
            print(f"  Failed: {summary.get('failed_runs', 0)}")
            print(f"\nTotal Processed: {summary.get('total_processed', 0):,}")
            print(f"Total Created: {summary.get('total_created', 0):,}")
            print(f"Total Updated: {summary.get('total_updated', 0):,}")
            print(f"Total Failed: {summary.get('total_failed', 0):,}")
            print(f"Duplicates Found: {summary.get('total_duplicates', 0):,}")

            if summary.get('by_provider'):
                print("\nBy Provider:")
                print("-" * 50)
                for provider_id, stats in summary['by_provider'].items():
                    print(f"  {provider_id}:")
                    print(f"    Runs: {stats.get('runs', 0)} "
                          f"({stats.get('successful', 0)} successful)")
                    print(f"    Processed: {stats.get('processed', 0):,}, "
                          f"Errors: {stats.get('errors', 0):,}")

        print()

    except Exception as e:
        print(f"\nError getting summary: {e}")
        logger.exception("Summary error")
        sys.exit(1)
    finally:
        await admin.shutdown()


async def cmd_duplicates(args):
    """List pending duplicate candidates."""
    print("\n" + "=" * 60)
    print("PENDING DUPLICATE CANDIDATES")
    print("=" * 60)

    admin = create_admin_service()

    try:
        candidates = await admin.get_pending_duplicates(args.limit)

        if not candidates:
            print("\nNo pending duplicates.")
        for candidate in candidates:
            source = candidate.source_record
            target = candidate.target_record
            print(f"\n{candidate.id}  confidence {candidate.confidence:.2f}  "
                  f"suggested: {candidate.suggested_action.value}")
            print(f"  {source.provider_id}/{source.mls_id}: {source.address.street}, "
                  f"{source.address.city} ${source.price:,.0f}")
            print(f"  {target.provider_id}/{target.mls_id}: {target.address.street}, "
                  f"{target.address.city} ${target.price:,.0f}")
            print(f"  Reasons: {', '.join(candidate.match_reasons) or '-'}")
        print()

    except Exception as e:
        print(f"\nError getting duplicates: {e}")
        logger.exception("Duplicates error")
        sys.exit(1)
    finally:
        await admin.shutdown()


async def cmd_resolve_duplicate(args):
    """Resolve a duplicate candidate."""
    admin = create_admin_service()

    try:
        resolution = await admin.resolve_duplicate(args.candidate_id, args.action)

        if not resolution.success:
            print(f"❌ Could not resolve {args.candidate_id}: {resolution.error_message}")
            sys.exit(1)
        if resolution.already_resolved:
            print(f"Candidate {args.candidate_id} was already resolved ({resolution.action.value})")
        else:
            print(f"✅ Candidate {args.candidate_id} resolved: {resolution.action.value}")

    except Exception as e:
        print(f"\nError resolving duplicate: {e}")
        logger.exception("Resolve duplicate error")
        sys.exit(1)
    finally:
        await admin.shutdown()


async def cmd_run_daemon(args):
    """Run the per-provider schedulers continuously."""
    print("\n" + "=" * 60)
    print("STARTING MLS SYNC DAEMON")
    print("=" * 60)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    admin = create_admin_service()

    started = admin.start_scheduler(args.provider)
    for provider_id, ok in started.items():
        print(f"  {provider_id}: {'scheduled' if ok else 'not scheduled'}")

    if not any(started.values()):
        print("\nNo enabled providers to schedule.")
        await admin.shutdown()
        return

    print("\nPress Ctrl+C to stop...")
    print()

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n\nDaemon stopped by user.")
    except Exception as e:
        print(f"\nDaemon error: {e}")
        logger.exception("Daemon error")
        sys.exit(1)
    finally:
        await admin.shutdown()


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description='MLS Sync Pipeline CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s status                              Show sync status for all providers
  %(prog)s sync reso_web_api --wait            Run an incremental sync and wait for it
  %(prog)s sync rets_main --full --max-records 500
  %(prog)s history --provider rets_main        Show recent runs for one provider
  %(prog)s errors --unresolved                 Show unresolved errors
  %(prog)s summary --days 14                   Show 14-day summary
  %(prog)s duplicates                          List pending duplicate candidates
  %(prog)s resolve-duplicate dup_ab12 merge    Merge a duplicate pair
  %(prog)s daemon                              Run schedulers for enabled providers
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Status command
    status_parser = subparsers.add_parser('status', help='Show sync status for all providers')
    status_parser.set_defaults(func=cmd_status)

    # Sync command
    sync_parser = subparsers.add_parser('sync', help='Run a sync for one provider')
    sync_parser.add_argument('provider', choices=config.provider_ids, help='Provider to sync')
    sync_parser.add_argument('--full', action='store_true', help='Full sync instead of incremental')
    sync_parser.add_argument('--max-records', type=int, help='Stop after this many records')
    sync_parser.add_argument('--property-type', action='append', help='Only this property type (repeatable)')
    sync_parser.add_argument('--status', action='append', help='Only this listing status (repeatable)')
    sync_parser.add_argument('--skip-duplicates', action='store_true', help='Skip duplicate detection')
    sync_parser.add_argument('--no-validate', action='store_true', help='Skip data quality validation')
    sync_parser.add_argument('--wait', action='store_true', help='Wait for the run to finish')
    sync_parser.set_defaults(func=cmd_sync)

    # History command
    history_parser = subparsers.add_parser('history', help='Show sync run history')
    history_parser.add_argument('--provider', choices=config.provider_ids, help='Filter by provider')
    history_parser.add_argument('--limit', type=int, default=10, help='Number of records to show')
    history_parser.set_defaults(func=cmd_history)

    # Errors command
    errors_parser = subparsers.add_parser('errors', help='Show recent sync errors')
    errors_parser.add_argument('--provider', choices=config.provider_ids, help='Filter by provider')
    errors_parser.add_argument('--limit', type=int, default=20, help='Number of errors to show')
    errors_parser.add_argument('--unresolved', action='store_true', help='Only unresolved errors')
    errors_parser.add_argument('--retry', metavar='ERROR_ID', help='Re-fetch the record behind an error')
    errors_parser.add_argument('--resolve', metavar='ERROR_ID', help='Mark an error resolved')
    errors_parser.set_defaults(func=cmd_errors)

    # Summary command
    summary_parser = subparsers.add_parser('summary', help='Show sync summary statistics')
    summary_parser.add_argument('--days', type=int, default=7, help='Number of days to include')
    summary_parser.set_defaults(func=cmd_summary)

    # Duplicates command
    duplicates_parser = subparsers.add_parser('duplicates', help='List pending duplicate candidates')
    duplicates_parser.add_argument('--limit', type=int, default=20, help='Number of candidates to show')
    duplicates_parser.set_defaults(func=cmd_duplicates)

    # Resolve duplicate command
    resolve_parser = subparsers.add_parser('resolve-duplicate', help='Resolve a duplicate candidate')
    resolve_parser.add_argument('candidate_id', help='Duplicate candidate id')
    resolve_parser.add_argument('action', nargs='?', choices=['merge', 'keep_both', 'skip'],
                                help='Action to apply (default: suggested action)')
    resolve_parser.set_defaults(func=cmd_resolve_duplicate)

    # Daemon command
    daemon_parser = subparsers.add_parser('daemon', help='Run schedulers as a continuous daemon')
    daemon_parser.add_argument('--provider', choices=config.provider_ids, help='Only schedule this provider')
    daemon_parser.set_defaults(func=cmd_run_daemon)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    # Run the async command
    try:
        asyncio.run(args.func(args))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
