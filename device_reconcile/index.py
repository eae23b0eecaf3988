"""
Whole-fleet index: one full listing per service, then in-memory joins only.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List

from .models import (
    CrossServiceIndex,
    DeviceIdentity,
    DeviceRecord,
    IndexRow,
    ResolvedDevice,
    ServiceKind,
    normalize_name,
    normalize_serial,
)
from .resolver import filter_by_embedded_serial

logger = logging.getLogger(__name__)


def _index_unique(records, key_func, label):
    """Map key -> record, last write wins"""
    index = {}
    for record in records:
        key = key_func(record)
        if not key:
            continue
        if key in index:
            logger.debug(f"Duplicate {label} key {key}: {index[key].native_id} replaced by {record.native_id}")
        index[key] = record
    return index


def _index_multi(records, key_func) -> Dict[str, tuple]:
    index = defaultdict(list)
    for record in records:
        key = key_func(record)
        if key:
            index[key].append(record)
    return {key: tuple(values) for key, values in index.items()}


class IndexBuilder:
    """Builds a CrossServiceIndex from exactly one list_all call per service"""

    def __init__(self, client):
        self.client = client

    def build(self) -> CrossServiceIndex:
        logger.info("Fetching Autopilot device identities...")
        registry = self.client.list_all(ServiceKind.REGISTRY)
        logger.info(f"Found {len(registry)} Autopilot records")

        logger.info("Fetching Intune managed devices...")
        management = self.client.list_all(ServiceKind.MANAGEMENT)
        logger.info(f"Found {len(management)} Intune records")

        logger.info("Fetching Entra ID devices...")
        directory = self.client.list_all(ServiceKind.DIRECTORY)
        logger.info(f"Found {len(directory)} Entra ID records")

        return build_index(registry, management, directory)


def build_index(registry: List[DeviceRecord], management: List[DeviceRecord],
                directory: List[DeviceRecord], built_at=None) -> CrossServiceIndex:
    """Join three inventory snapshots without any further I/O"""
    management_by_serial = _index_unique(management, lambda r: normalize_serial(r.serial_number), 'serial')
    management_by_name = _index_unique(management, lambda r: normalize_name(r.display_name), 'name')
    directory_by_name = _index_multi(directory, lambda r: normalize_name(r.display_name))

    rows = []
    for record in registry:
        counterpart = None
        match = None
        serial = normalize_serial(record.serial_number)
        if serial and serial in management_by_serial:
            counterpart = management_by_serial[serial]
            match = 'serial'
        else:
            name = normalize_name(record.display_name)
            candidate = management_by_name.get(name) if name else None
            candidate_serial = normalize_serial(candidate.serial_number) if candidate else None
            if candidate and serial and candidate_serial and candidate_serial != serial:
                # Hostname reused by a different device
                logger.debug(f"Not matching {record.describe()} to {candidate.describe()}: serials differ")
            elif candidate:
                counterpart = candidate
                match = 'name'

        lookup_name = counterpart.display_name if counterpart and counterpart.display_name else record.display_name
        directory_matches = directory_by_name.get(normalize_name(lookup_name), ())
        rows.append(IndexRow(
            registry=record,
            management=counterpart,
            management_match=match,
            directory=directory_matches[0] if directory_matches else None,
        ))

    index = CrossServiceIndex(
        registry=tuple(registry),
        management_by_serial=management_by_serial,
        management_by_name=management_by_name,
        directory_by_name=directory_by_name,
        rows=tuple(rows),
        built_at=built_at or datetime.now(),
    )
    logger.info(
        f"Index built: {len(rows)} Autopilot rows, "
        f"{sum(1 for row in rows if row.management)} matched in Intune, "
        f"{sum(1 for row in rows if row.directory)} matched in Entra ID"
    )
    return index


def find_orphans(index: CrossServiceIndex) -> List[DeviceRecord]:
    """Autopilot records with no Intune counterpart (deployed but unmanaged)"""
    return [row.registry for row in index.rows if row.is_orphan]


def find_duplicate_names(index: CrossServiceIndex) -> Dict[str, tuple]:
    """Entra ID display names shared by more than one device object"""
    return {name: records for name, records in index.directory_by_name.items() if len(records) > 1}


def row_for_record(index: CrossServiceIndex, record: DeviceRecord) -> IndexRow:
    for row in index.rows:
        if row.registry.native_id == record.native_id:
            return row
    raise KeyError(record.native_id)


def resolved_from_row(row: IndexRow, index: CrossServiceIndex) -> ResolvedDevice:
    """Deletion targets for one row, taken from the snapshot"""
    identity = DeviceIdentity(name=row.device_name, serial=row.registry.serial_number)
    directory = filter_by_embedded_serial(
        index.directory_by_name.get(normalize_name(row.device_name), ()),
        identity.serial,
    )

    resolved = ResolvedDevice(identity=identity)
    resolved.records[ServiceKind.REGISTRY] = [row.registry]
    resolved.matched_by[ServiceKind.REGISTRY] = 'serial' if row.registry.serial_number else 'name'
    resolved.records[ServiceKind.MANAGEMENT] = [row.management] if row.management else []
    resolved.matched_by[ServiceKind.MANAGEMENT] = row.management_match
    resolved.records[ServiceKind.DIRECTORY] = directory
    resolved.matched_by[ServiceKind.DIRECTORY] = 'name' if directory else None
    return resolved
