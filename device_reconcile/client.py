"""
Uniform request wrapper over the three Graph device collections.

No business logic and no retries live here: every failure is translated into a
DeviceServiceError and handed to the caller, which decides what it means.
"""

import logging
from typing import List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import DEFAULT_BASE_URL, DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT
from .errors import translate_error, translate_transport_error
from .models import DeviceRecord, ManagementState, ServiceKind, normalize_name, normalize_serial

logger = logging.getLogger(__name__)

SERVICE_PATHS = {
    ServiceKind.REGISTRY: 'deviceManagement/windowsAutopilotDeviceIdentities',
    ServiceKind.MANAGEMENT: 'deviceManagement/managedDevices',
    ServiceKind.DIRECTORY: 'devices',
}

NAME_FIELDS = {
    ServiceKind.REGISTRY: 'displayName',
    ServiceKind.MANAGEMENT: 'deviceName',
    ServiceKind.DIRECTORY: 'displayName',
}


def create_session(retries=0):
    """Create a requests session with connection pooling.

    Graph calls use retries=0: retrying happens only at poll-loop granularity.
    The token endpoint is the one place that gets a retrying adapter.
    """
    session = requests.Session()
    if retries:
        max_retries = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504, 429],
            allowed_methods=['GET', 'POST'],
        )
    else:
        max_retries = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(
        max_retries=max_retries,
        pool_connections=10,
        pool_maxsize=20,
        pool_block=False,
    )
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    return session


def odata_quote(value):
    return str(value).replace("'", "''")


def to_record(service: ServiceKind, item: dict) -> DeviceRecord:
    """Project a native Graph payload onto a DeviceRecord"""
    if service == ServiceKind.MANAGEMENT:
        return DeviceRecord(
            service=service,
            native_id=str(item.get('id')),
            display_name=item.get('deviceName') or None,
            serial_number=item.get('serialNumber') or None,
            management_state=ManagementState.parse(item.get('managementState')),
            raw=item,
        )
    if service == ServiceKind.DIRECTORY:
        return DeviceRecord(
            service=service,
            native_id=str(item.get('id')),
            display_name=item.get('displayName') or None,
            physical_ids=tuple(item.get('physicalIds') or ()),
            raw=item,
        )
    return DeviceRecord(
        service=service,
        native_id=str(item.get('id')),
        display_name=item.get('displayName') or None,
        serial_number=item.get('serialNumber') or None,
        raw=item,
    )


class GraphDeviceClient:
    """Paginated list, filtered lookup, delete and MDM actions for each service"""

    def __init__(self, token_provider, session=None, base_url=DEFAULT_BASE_URL,
                 timeout=DEFAULT_TIMEOUT, page_size=DEFAULT_PAGE_SIZE):
        self.token_provider = token_provider
        self.session = session or create_session()
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.page_size = page_size

    @classmethod
    def from_settings(cls, settings, token_provider):
        return cls(
            token_provider,
            base_url=settings.base_url,
            timeout=settings.timeout,
            page_size=settings.page_size,
        )

    def _url(self, service, suffix=''):
        url = f"{self.base_url}/{SERVICE_PATHS[service]}"
        return f"{url}/{suffix}" if suffix else url

    def _request(self, service, method, url, **kwargs):
        headers = self.token_provider.headers()
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise translate_transport_error(service, e) from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = resp.text
            raise translate_error(service, resp.status_code, payload)
        return resp

    def list_all(self, service: ServiceKind, query_filter: Optional[str] = None) -> List[DeviceRecord]:
        """Fetch every record, following @odata.nextLink until exhausted"""
        url = self._url(service)
        params = {'$top': self.page_size}
        if query_filter:
            params['$filter'] = query_filter

        records = []
        page = 0
        while url:
            page += 1
            resp = self._request(service, 'GET', url, params=params)
            data = resp.json()
            items = data.get('value', [])
            records.extend(to_record(service, item) for item in items)
            logger.debug(f"{service.label} page {page}: {len(items)} records (total so far: {len(records)})")
            url = data.get('@odata.nextLink')
            # nextLink already carries the query string
            params = None

        logger.debug(f"Fetched {len(records)} {service.label} records")
        return records

    def find_by_serial(self, service: ServiceKind, serial: str) -> Optional[DeviceRecord]:
        """Return the record whose serial equals ``serial``, or None"""
        wanted = normalize_serial(serial)
        if not wanted:
            return None

        if service == ServiceKind.REGISTRY:
            # The Autopilot endpoint only supports contains() on serialNumber
            candidates = self.list_all(service, f"contains(serialNumber,'{odata_quote(serial.strip())}')")
        elif service == ServiceKind.MANAGEMENT:
            candidates = self.list_all(service, f"serialNumber eq '{odata_quote(serial.strip())}'")
        else:
            raise ValueError(f"{service.label} has no serial filter; look it up by name")

        matches = [record for record in candidates if normalize_serial(record.serial_number) == wanted]
        if len(matches) > 1:
            logger.warning(f"{len(matches)} {service.label} records share serial {serial}; using the first")
        return matches[0] if matches else None

    def find_by_name(self, service: ServiceKind, name: str) -> List[DeviceRecord]:
        """Return every record whose display name equals ``name``"""
        if not name or not name.strip():
            return []
        name = name.strip()

        if service == ServiceKind.REGISTRY:
            # No server-side name filter on the registry; compare client-side
            candidates = self.list_all(service)
        else:
            field = NAME_FIELDS[service]
            candidates = self.list_all(service, f"{field} eq '{odata_quote(name)}'")

        wanted = normalize_name(name)
        return [record for record in candidates if normalize_name(record.display_name) == wanted]

    def delete(self, service: ServiceKind, native_id: str):
        """Delete one record by id; raises a DeviceServiceError subclass on failure"""
        logger.debug(f"DELETE {service.label} {native_id}")
        self._request(service, 'DELETE', self._url(service, native_id))

    def invoke_wipe(self, native_id: str, keep_enrollment=False, keep_user=False):
        """Queue a remote wipe; completion is only observable by polling"""
        body = {
            'keepEnrollmentData': bool(keep_enrollment),
            'keepUserData': bool(keep_user),
        }
        logger.debug(f"POST wipe {native_id} {body}")
        self._request(ServiceKind.MANAGEMENT, 'POST', self._url(ServiceKind.MANAGEMENT, f"{native_id}/wipe"), json=body)

    def invoke_sync(self, native_id: str):
        """Ask the device to check in so queued actions are picked up sooner"""
        logger.debug(f"POST syncDevice {native_id}")
        self._request(ServiceKind.MANAGEMENT, 'POST', self._url(ServiceKind.MANAGEMENT, f"{native_id}/syncDevice"))
