"""
Drivers that wire resolver/index, orchestrator, verifier and report together.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterable, Optional

from .index import resolved_from_row
from .models import DeviceIdentity, DeviceReconciliationResult, IndexRow
from .orchestrator import DeletionOrchestrator
from .report import ReconciliationReport
from .resolver import IdentityResolver

logger = logging.getLogger(__name__)


def _failed_result(identity, targets, exc):
    result = DeviceReconciliationResult(identity=identity, targets=tuple(targets), aborted=True,
                                        error=f"Unexpected error: {str(exc)}")
    return result.finish()


def reconcile_device(client, identity: DeviceIdentity, options, report: Optional[ReconciliationReport] = None,
                     orchestrator=None, resolver=None, confirm=None) -> Optional[DeviceReconciliationResult]:
    """Single-device mode: resolve over the network, then delete and verify.

    ``confirm`` is called with the ResolvedDevice before anything destructive
    happens; returning False cancels and the function returns None.
    """
    identity.validate()
    resolver = resolver or IdentityResolver(client)
    orchestrator = orchestrator or DeletionOrchestrator(client, options)

    # Resolve everywhere: wipe needs Intune and Entra ID borrows names from the others
    resolved = resolver.resolve(identity)
    if not resolved.found_anywhere:
        logger.warning(f"{identity} was not found in any service")

    if confirm is not None and not confirm(resolved):
        logger.info(f"Cancelled by operator - nothing done for {identity}")
        return None

    result = orchestrator.process(resolved)
    if report is not None:
        report.add(result)
    return result


def run_batch(client, index, rows: Iterable[IndexRow], options, report: Optional[ReconciliationReport] = None,
              orchestrator=None, workers=1) -> ReconciliationReport:
    """Process selected index rows one device at a time (or across a small pool)

    Each device still runs its own steps strictly in order; the index is only read.
    """
    report = report if report is not None else ReconciliationReport()
    orchestrator = orchestrator or DeletionOrchestrator(client, options)
    rows = list(rows)
    logger.info(f"Processing {len(rows)} devices with {workers} worker(s)")

    def process_row(row):
        resolved = resolved_from_row(row, index)
        try:
            return orchestrator.process(resolved)
        except Exception as e:
            logger.error(f"Error processing {resolved.identity}: {str(e)}")
            return _failed_result(resolved.identity, options.targets, e)

    if workers <= 1:
        for i, row in enumerate(rows, 1):
            result = report.add(process_row(row))
            logger.info(f"[{i}/{len(rows)}] {result.identity}: {result.status.value}")
        return report

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_row = {executor.submit(process_row, row): row for row in rows}
        for i, future in enumerate(as_completed(future_to_row), 1):
            result = report.add(future.result())
            logger.info(f"[{i}/{len(rows)}] {result.identity}: {result.status.value}")
    return report
