"""
Roll per-device results up into counts, an error list and an optional CSV.
"""

import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Dict, List

import pandas as pd

from .models import DELETION_ORDER, DeviceReconciliationResult, DeviceStatus, ErrorClass

logger = logging.getLogger(__name__)

TIMEOUT_ADVISORY = 'may still be present - verify manually'


class ReconciliationReport:
    """Aggregates DeviceReconciliationResult values; safe to add to from worker threads"""

    def __init__(self):
        self._results: List[DeviceReconciliationResult] = []
        self._lock = threading.Lock()
        self.created_at = datetime.now()

    def add(self, result: DeviceReconciliationResult):
        with self._lock:
            self._results.append(result)
        return result

    @property
    def results(self) -> List[DeviceReconciliationResult]:
        with self._lock:
            return list(self._results)

    def summary(self) -> Dict:
        results = self.results
        counts = Counter(result.status for result in results)
        return {
            'processed': len(results),
            'succeeded': counts[DeviceStatus.SUCCEEDED],
            'partial': counts[DeviceStatus.PARTIAL],
            'failed': counts[DeviceStatus.FAILED],
            'aborted': counts[DeviceStatus.ABORTED],
            'not_found': counts[DeviceStatus.NOT_FOUND],
            'timed_out': counts[DeviceStatus.TIMED_OUT],
            'errors': self.errors(),
        }

    def errors(self) -> List[Dict]:
        """Messages an operator needs to follow up on (UNKNOWN and CONFLICT), plus timeouts"""
        errors = []
        for result in self.results:
            device = str(result.identity)
            if result.error:
                errors.append({'device': device, 'service': None, 'error_class': 'aborted' if result.aborted else 'error',
                               'message': result.error})
            for service in DELETION_ORDER:
                service_outcome = result.outcome(service)
                if not service_outcome:
                    continue
                for outcome in service_outcome.outcomes:
                    if outcome.message and outcome.error_class in (ErrorClass.UNKNOWN, ErrorClass.CONFLICT):
                        errors.append({
                            'device': device,
                            'service': service.label,
                            'error_class': outcome.error_class.value,
                            'message': outcome.message,
                        })
            if result.verification and result.verification.timed_out:
                for service in DELETION_ORDER:
                    if service in result.verification.pending:
                        errors.append({
                            'device': device,
                            'service': service.label,
                            'error_class': 'timeout',
                            'message': TIMEOUT_ADVISORY,
                        })
        return errors

    def to_rows(self) -> List[Dict]:
        rows = []
        for result in self.results:
            row = {
                'name': result.identity.name or '',
                'serial': result.identity.serial or '',
                'status': result.status.value,
            }
            for service in DELETION_ORDER:
                key = service.value
                service_outcome = result.outcome(service)
                if service_outcome is None:
                    row[f'{key}_found'] = None
                    row[f'{key}_sent'] = None
                    row[f'{key}_result'] = 'not targeted'
                    continue
                row[f'{key}_found'] = service_outcome.found
                row[f'{key}_sent'] = any(outcome.sent for outcome in service_outcome.outcomes)
                row[f'{key}_result'] = ';'.join(
                    sorted({outcome.error_class.value for outcome in service_outcome.outcomes}))
                if result.verification and not result.verification.skipped:
                    row[f'{key}_verified'] = service in result.verification.confirmed
            row['wipe_sent'] = result.wipe.success if result.wipe else None
            row['dry_run'] = any(
                outcome.dry_run for service_outcome in result.outcomes.values() for outcome in service_outcome.outcomes)
            row['timed_out'] = bool(result.verification and result.verification.timed_out)
            row['elapsed_seconds'] = round(result.elapsed, 1)
            row['timestamp'] = (result.finished_at or result.started_at).strftime('%Y-%m-%d %H:%M:%S')
            rows.append(row)
        return rows

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.to_rows())

    def export_csv(self, path):
        """Write one line per processed device"""
        df = self.to_frame()
        df.to_csv(path, index=False)
        logger.info(f"Results saved to {path}")
        return path

    def print_summary(self):
        summary = self.summary()
        print("\n" + "=" * 60)
        print("🎯 RECONCILIATION COMPLETE")
        print("=" * 60)
        print(f"Devices processed: {summary['processed']}")
        print(f"✅ Succeeded:       {summary['succeeded']}")
        print(f"⚠️  Partial:         {summary['partial']}")
        print(f"❌ Failed:          {summary['failed']}")
        print(f"🛑 Aborted:         {summary['aborted']}")
        print(f"🔍 Not found:       {summary['not_found']}")
        print(f"⏳ Timed out:       {summary['timed_out']}")

        if summary['errors']:
            print("\n🔍 NEEDS ATTENTION:")
            for error in summary['errors']:
                service = f" [{error['service']}]" if error['service'] else ''
                print(f"  • {error['device']}{service} {error['error_class']}: {error['message']}")
        return summary
