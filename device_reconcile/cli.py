"""
Command line entry point.

    device-reconcile --serial 5CG1234XYZ --wipe
    device-reconcile --name LAPTOP-042 --services registry,directory --dry-run
    device-reconcile --report-only
    device-reconcile --all-orphans --export orphans.csv
"""

import argparse
import logging
import sys
from datetime import datetime

from .auth import token_provider_from_settings
from .client import GraphDeviceClient, create_session
from .config import RunOptions, Settings, parse_services
from .errors import AuthenticationError, ConfigurationError, DeviceServiceError, IdentityValidationError
from .index import IndexBuilder, find_duplicate_names, find_orphans, row_for_record
from .models import DELETION_ORDER, DeviceIdentity
from .orchestrator import DeletionOrchestrator
from .report import ReconciliationReport
from .workflow import reconcile_device, run_batch

logger = logging.getLogger(__name__)


def configure_logging(verbose=False, log_file=None):
    """Log to the console and to a timestamped file"""
    if log_file is None:
        log_file = f'device_reconcile_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    # urllib3 is chatty at debug
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    return log_file


def build_parser():
    parser = argparse.ArgumentParser(
        prog='device-reconcile',
        description='Reconcile and remove devices across Autopilot, Intune and Entra ID',
    )
    identity = parser.add_argument_group('device identity')
    identity.add_argument('--name', help='Device name')
    identity.add_argument('--serial', help='Device serial number')

    batch = parser.add_argument_group('fleet mode')
    batch.add_argument('--report-only', action='store_true',
                       help='Print orphaned Autopilot devices and duplicate Entra ID names, change nothing')
    batch.add_argument('--all-orphans', action='store_true',
                       help='Remove every Autopilot device that has no Intune record')
    batch.add_argument('--workers', type=int, default=1, help='Devices processed in parallel (default: 1)')

    action = parser.add_argument_group('actions')
    action.add_argument('--services', default=None,
                        help='Comma separated services to delete from: management,registry,directory (default: all)')
    action.add_argument('--wipe', action='store_true', help='Send a remote wipe before deleting records')
    action.add_argument('--keep-enrollment', action='store_true', help='Wipe but keep enrollment data')
    action.add_argument('--keep-user', action='store_true', help='Wipe but keep user data')

    mode = parser.add_argument_group('mode')
    mode.add_argument('--dry-run', action='store_true', help='Preview only - no delete or wipe calls are made')
    mode.add_argument('--fast', action='store_true', help='Do not wait for removals to be confirmed')
    mode.add_argument('--timeout', type=float, default=None, help='Seconds to wait for removal confirmation')
    mode.add_argument('--poll-interval', type=float, default=None, help='Seconds between confirmation checks')
    mode.add_argument('--wipe-timeout', type=float, default=None, help='Seconds to wait for a wipe to complete')
    mode.add_argument('--yes', action='store_true', help='Do not ask for confirmation')

    output = parser.add_argument_group('output')
    output.add_argument('--export', metavar='PATH', help='Write per-device results to a CSV file')
    output.add_argument('--env-file', default=None, help='Load settings from this .env file')
    output.add_argument('--log-file', default=None, help='Log file path (default: timestamped file)')
    output.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    return parser


def build_options(args, settings):
    return RunOptions(
        dry_run=args.dry_run,
        fast=args.fast,
        wipe=args.wipe,
        keep_enrollment=args.keep_enrollment,
        keep_user=args.keep_user,
        max_wait=args.timeout if args.timeout is not None else settings.max_wait,
        poll_interval=args.poll_interval if args.poll_interval is not None else settings.poll_interval,
        wipe_timeout=args.wipe_timeout if args.wipe_timeout is not None else settings.wipe_timeout,
        targets=parse_services(args.services),
    )


def ask(prompt):
    try:
        return input(prompt).strip()
    except EOFError:
        return ''


def confirm_device(resolved, options, assume_yes=False):
    """Show what was found and ask before anything is changed"""
    print("\n🔍 DEVICE RESOLUTION")
    print("=" * 60)
    print(f"Identity: {resolved.identity}")
    for service in DELETION_ORDER:
        records = resolved.get(service)
        marker = '🎯' if service in options.targets else '  '
        if not records:
            print(f"{marker} {service.label:<9} not found")
            continue
        confidence = ' (LOW CONFIDENCE)' if service in resolved.low_confidence else ''
        print(f"{marker} {service.label:<9} {len(records)} record(s) by {resolved.matched_by.get(service)}{confidence}")
        for record in records:
            print(f"      • {record.describe()}")

    if options.dry_run or assume_yes:
        return True
    if not resolved.found_anywhere:
        return True

    actions = 'WIPE and delete' if options.wipe else 'delete'
    answer = ask(f"\n❓ {actions} this device from {', '.join(s.label for s in options.targets)}? (yes/NO): ")
    if answer.lower() != 'yes':
        print("❌ Cancelled - nothing changed")
        return False
    return True


def print_index_report(index, orphans, duplicates):
    print("\n📊 RECONCILIATION REPORT")
    print("=" * 60)
    print(f"Autopilot records:               {len(index.registry)}")
    print(f"  • matched in Intune by serial: {sum(1 for r in index.rows if r.management_match == 'serial')}")
    print(f"  • matched in Intune by name:   {sum(1 for r in index.rows if r.management_match == 'name')}")
    print(f"  • orphaned (not in Intune):    {len(orphans)}")
    print(f"Entra ID names with duplicates:  {len(duplicates)}")

    if orphans:
        print("\n🔍 ORPHANED AUTOPILOT DEVICES:")
        for i, record in enumerate(orphans, 1):
            print(f"{i:4d}. {record.describe()}")
    if duplicates:
        print("\n🔍 DUPLICATE ENTRA ID NAMES:")
        for _, records in sorted(duplicates.items(), key=lambda item: item[0]):
            print(f"  • {records[0].display_name}: {len(records)} objects")


def run_fleet(client, options, args, report):
    index = IndexBuilder(client).build()
    orphans = find_orphans(index)
    duplicates = find_duplicate_names(index)
    print_index_report(index, orphans, duplicates)

    if args.report_only:
        return 0
    if not orphans:
        print("✅ No orphaned devices found!")
        return 0

    if not (options.dry_run or args.yes):
        print(f"\n⚠️  WARNING: This will remove {len(orphans)} devices from "
              f"{', '.join(s.label for s in options.targets)}.")
        answer = ask("❓ Type 'DELETE ALL' to confirm: ")
        if answer != 'DELETE ALL':
            print("❌ Cancelled - confirmation text didn't match")
            return 0

    rows = [row_for_record(index, record) for record in orphans]
    run_batch(client, index, rows, options, report=report, workers=max(args.workers, 1))
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    fleet_mode = args.report_only or args.all_orphans
    identity = DeviceIdentity(name=args.name, serial=args.serial)
    if not fleet_mode and identity.is_empty:
        parser.print_usage(sys.stderr)
        logger.error('Provide --name and/or --serial, or use --report-only / --all-orphans')
        return 1

    try:
        settings = Settings.from_env(args.env_file).validate()
        options = build_options(args, settings)
        token_provider = token_provider_from_settings(settings, session=create_session(retries=5))
        token_provider.get_token()
    except (ConfigurationError, AuthenticationError) as e:
        logger.error(str(e))
        return 1

    client = GraphDeviceClient.from_settings(settings, token_provider)
    report = ReconciliationReport()

    if options.dry_run:
        print("🧪 DRY RUN - no delete or wipe calls will be made")

    try:
        if fleet_mode:
            exit_code = run_fleet(client, options, args, report)
        else:
            orchestrator = DeletionOrchestrator(client, options)
            result = reconcile_device(
                client, identity, options, report=report, orchestrator=orchestrator,
                confirm=lambda resolved: confirm_device(resolved, options, args.yes),
            )
            exit_code = 0
            if result is None:
                return 0
    except IdentityValidationError as e:
        logger.error(str(e))
        return 1
    except (DeviceServiceError, AuthenticationError) as e:
        # Only the fleet inventory fetch lets these through
        logger.error(f"Could not fetch device inventories: {str(e)}")
        return 1
    except KeyboardInterrupt:
        print("\n❌ Interrupted - requests already sent are not undone")
        return 0

    if report.results:
        report.print_summary()
        if args.export:
            report.export_csv(args.export)
    return exit_code


if __name__ == '__main__':
    sys.exit(main())
