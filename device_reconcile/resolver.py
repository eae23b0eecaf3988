"""
Resolve an ad-hoc device identity against each service's inventory.
"""

import logging
from typing import Iterable, List, Optional

import requests

from .errors import ReconcileError
from .models import DELETION_ORDER, DeviceIdentity, DeviceRecord, ResolvedDevice, ServiceKind, normalize_serial

logger = logging.getLogger(__name__)


def filter_by_embedded_serial(candidates: Iterable[DeviceRecord], serial: Optional[str]) -> List[DeviceRecord]:
    """Drop directory duplicates whose embedded serial conflicts with ``serial``.

    A candidate without an embedded serial is kept; a candidate with a
    different one is not.
    """
    candidates = list(candidates)
    wanted = normalize_serial(serial)
    if not wanted:
        return candidates
    kept = []
    for record in candidates:
        embedded = normalize_serial(record.embedded_serial)
        if embedded is None or embedded == wanted:
            kept.append(record)
        else:
            logger.debug(f"Excluding {record.describe()}: embedded serial {embedded} != {wanted}")
    return kept


class IdentityResolver:
    """Find the most likely matching record(s) per service for one identity"""

    def __init__(self, client):
        self.client = client

    def resolve(self, identity: DeviceIdentity, services=DELETION_ORDER) -> ResolvedDevice:
        identity.validate()
        resolved = ResolvedDevice(identity=identity)
        for service in services:
            query = identity
            if service == ServiceKind.DIRECTORY and not identity.name:
                # Directory is name-only; borrow the name the other services reported
                query = resolved.lookup_identity()
            records, matched_by = self._resolve_service(service, query)
            resolved.records[service] = records
            resolved.matched_by[service] = matched_by
            if (service != ServiceKind.DIRECTORY and matched_by == 'name' and len(records) > 1):
                logger.warning(
                    f"{service.label}: {len(records)} records named '{identity.name}' and no serial match - "
                    f"treating as low confidence"
                )
                resolved.low_confidence.add(service)

            if records:
                logger.info(f"{service.label}: found {len(records)} record(s) for {identity} (by {matched_by})")
            else:
                logger.info(f"{service.label}: no record found for {identity}")
        return resolved

    def lookup(self, service: ServiceKind, identity: DeviceIdentity, serial_only=False):
        """Run the per-service lookup and let errors propagate.

        Returns (records, matched_by). The verifier uses this directly because
        it must not mistake an error for absence. With ``serial_only`` a known
        serial is the only key for Intune and Autopilot, so another device
        reusing the hostname does not keep the record looking present.
        """
        if service == ServiceKind.DIRECTORY:
            if not identity.name:
                return [], None
            candidates = self.client.find_by_name(service, identity.name)
            records = filter_by_embedded_serial(candidates, identity.serial)
            return records, 'name' if records else None

        if identity.serial:
            record = self.client.find_by_serial(service, identity.serial)
            if record is not None:
                return [record], 'serial'
            if serial_only:
                return [], None

        if identity.name:
            records = self.client.find_by_name(service, identity.name)
            if records:
                return records, 'name'

        return [], None

    def _resolve_service(self, service, identity):
        try:
            return self.lookup(service, identity)
        except (ReconcileError, requests.exceptions.RequestException) as e:
            # A failed search is reported as not found rather than aborting resolution
            logger.error(f"{service.label} lookup for {identity} failed: {str(e)}")
            return [], None
