"""In-memory device backend, fake clock and record builders shared by the tests.

FakeDeviceClient implements the same methods as GraphDeviceClient and records
every call in ``calls`` so tests can assert on ordering and counts.
"""

from device_reconcile.errors import NotFoundError
from device_reconcile.models import DeviceRecord, ManagementState, ServiceKind, normalize_name, normalize_serial

REGISTRY = ServiceKind.REGISTRY
MANAGEMENT = ServiceKind.MANAGEMENT
DIRECTORY = ServiceKind.DIRECTORY

MUTATING = ('delete', 'invoke_wipe', 'invoke_sync')

ENV_VARS = [
    'GRAPH_TENANT_ID', 'GRAPH_CLIENT_ID', 'GRAPH_CLIENT_SECRET', 'GRAPH_ACCESS_TOKEN',
    'GRAPH_BASE_URL', 'GRAPH_AUTHORITY', 'GRAPH_TIMEOUT', 'GRAPH_PAGE_SIZE',
    'RECONCILE_POLL_INTERVAL', 'RECONCILE_MAX_WAIT', 'RECONCILE_WIPE_TIMEOUT',
]


def registry_record(native_id, serial=None, name=None):
    return DeviceRecord(REGISTRY, native_id, display_name=name, serial_number=serial)


def management_record(native_id, serial=None, name=None, state=ManagementState.MANAGED):
    return DeviceRecord(MANAGEMENT, native_id, display_name=name, serial_number=serial, management_state=state)


def directory_record(native_id, name=None, serial=None, extra_ids=()):
    physical_ids = list(extra_ids)
    if serial:
        physical_ids.append(f'[SerialNumber]:{serial}')
    return DeviceRecord(DIRECTORY, native_id, display_name=name, physical_ids=tuple(physical_ids))


class FakeClock:
    """monotonic() and sleep() replacement; sleeping just advances time"""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeDeviceClient:
    def __init__(self, registry=(), management=(), directory=()):
        self.records = {
            REGISTRY: list(registry),
            MANAGEMENT: list(management),
            DIRECTORY: list(directory),
        }
        self.calls = []
        # (service, native_id) -> exception raised by delete
        self.delete_errors = {}
        # service -> list of exceptions raised by the next lookups, in order
        self.lookup_errors = {}
        self.wipe_errors = {}
        self.sync_errors = {}
        # (service, native_id) -> lookups left before the record disappears
        self.removal_countdown = {}
        # When False a successful delete leaves the record visible (queued server side)
        self.delete_removes = True

    # helpers

    def schedule_removal(self, service, native_id, after_lookups):
        self.removal_countdown[(service, native_id)] = after_lookups

    def mutating_calls(self):
        return [call for call in self.calls if call[0] in MUTATING]

    def _remove(self, service, native_id):
        self.records[service] = [r for r in self.records[service] if r.native_id != native_id]

    def _tick_lookup(self, service):
        errors = self.lookup_errors.get(service)
        if errors:
            raise errors.pop(0)
        for key in list(self.removal_countdown):
            if key[0] != service:
                continue
            self.removal_countdown[key] -= 1
            if self.removal_countdown[key] <= 0:
                del self.removal_countdown[key]
                self._remove(*key)

    # client contract

    def list_all(self, service, query_filter=None):
        self.calls.append(('list_all', service, query_filter))
        return list(self.records[service])

    def find_by_serial(self, service, serial):
        self.calls.append(('find_by_serial', service, serial))
        if service == DIRECTORY:
            raise ValueError('no serial filter')
        self._tick_lookup(service)
        wanted = normalize_serial(serial)
        for record in self.records[service]:
            if normalize_serial(record.serial_number) == wanted:
                return record
        return None

    def find_by_name(self, service, name):
        self.calls.append(('find_by_name', service, name))
        self._tick_lookup(service)
        wanted = normalize_name(name)
        return [r for r in self.records[service] if normalize_name(r.display_name) == wanted]

    def delete(self, service, native_id):
        self.calls.append(('delete', service, native_id))
        error = self.delete_errors.get((service, native_id))
        if error is not None:
            raise error
        if not any(r.native_id == native_id for r in self.records[service]):
            raise NotFoundError('Resource not found', service=service, status_code=404)
        if self.delete_removes:
            self._remove(service, native_id)

    def invoke_wipe(self, native_id, keep_enrollment=False, keep_user=False):
        self.calls.append(('invoke_wipe', MANAGEMENT, native_id, keep_enrollment, keep_user))
        error = self.wipe_errors.get(native_id)
        if error is not None:
            raise error

    def invoke_sync(self, native_id):
        self.calls.append(('invoke_sync', MANAGEMENT, native_id))
        error = self.sync_errors.get(native_id)
        if error is not None:
            raise error
