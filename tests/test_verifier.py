"""Unit tests for removal polling, driven by a fake clock."""

from device_reconcile.errors import AuthenticationError, TransientError
from device_reconcile.models import DeviceIdentity
from device_reconcile.verifier import RemovalVerifier
from tests.helpers import DIRECTORY, MANAGEMENT, REGISTRY, FakeDeviceClient, directory_record, management_record, registry_record


def single_management_client():
    return FakeDeviceClient(management=[management_record('md-1', serial='S1')])


class TestConvergence:
    def test_confirms_before_deadline(self, clock):
        client = single_management_client()
        client.schedule_removal(MANAGEMENT, 'md-1', after_lookups=3)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(serial='S1'), {MANAGEMENT}, max_wait=100, poll_interval=10)

        assert result.confirmed == {MANAGEMENT}
        assert not result.timed_out
        assert clock.now == 30
        assert clock.sleeps == [10, 10, 10]

    def test_times_out_when_removal_is_too_slow(self, clock):
        client = single_management_client()
        client.schedule_removal(MANAGEMENT, 'md-1', after_lookups=15)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(serial='S1'), {MANAGEMENT}, max_wait=100, poll_interval=10)

        assert result.timed_out
        assert MANAGEMENT not in result.confirmed
        assert result.pending == {MANAGEMENT}

    def test_already_absent_confirms_on_first_tick(self, clock):
        client = FakeDeviceClient()
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)
        result = verifier.await_removal(DeviceIdentity(serial='S1'), {MANAGEMENT, REGISTRY}, 100, 10)
        assert result.confirmed == {MANAGEMENT, REGISTRY}
        assert clock.now == 10

    def test_nothing_to_verify(self, clock):
        verifier = RemovalVerifier(FakeDeviceClient(), clock=clock, sleep=clock.sleep)
        result = verifier.await_removal(DeviceIdentity(serial='S1'), set(), 100, 10)
        assert result.confirmed == frozenset()
        assert not result.timed_out
        assert clock.sleeps == []


class TestLookupErrors:
    def test_error_is_not_taken_as_removal(self, clock):
        client = single_management_client()
        client.lookup_errors[MANAGEMENT] = [TransientError('timeout'), TransientError('timeout')]
        client.schedule_removal(MANAGEMENT, 'md-1', after_lookups=1)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(serial='S1'), {MANAGEMENT}, max_wait=100, poll_interval=10)

        # Two failed ticks, then the third lookup sees the record gone
        assert result.confirmed == {MANAGEMENT}
        assert clock.now == 30

    def test_persistent_errors_end_in_timeout(self, clock):
        client = FakeDeviceClient()
        client.lookup_errors[MANAGEMENT] = [TransientError('down') for _ in range(20)]
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(serial='S1'), {MANAGEMENT}, max_wait=50, poll_interval=10)

        assert result.timed_out
        assert result.confirmed == frozenset()


class TestDirectoryOrdering:
    def test_directory_checked_only_after_upstream_clear(self, clock):
        client = FakeDeviceClient(
            registry=[registry_record('ap-1', serial='S1', name='PC')],
            management=[management_record('md-1', serial='S1', name='PC')],
            directory=[directory_record('en-1', name='PC', serial='S1')],
        )
        client.schedule_removal(MANAGEMENT, 'md-1', after_lookups=2)
        client.schedule_removal(REGISTRY, 'ap-1', after_lookups=1)
        client.schedule_removal(DIRECTORY, 'en-1', after_lookups=1)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(
            DeviceIdentity(name='PC', serial='S1'), {MANAGEMENT, REGISTRY, DIRECTORY}, 100, 10)

        assert result.confirmed == {MANAGEMENT, REGISTRY, DIRECTORY}
        directory_lookups = [c for c in client.calls if c[1] == DIRECTORY]
        assert len(directory_lookups) == 1
        first_directory = client.calls.index(directory_lookups[0])
        last_management = max(i for i, c in enumerate(client.calls) if c[1] == MANAGEMENT)
        assert first_directory > last_management

    def test_directory_alone_is_checked_immediately(self, clock):
        client = FakeDeviceClient(directory=[directory_record('en-1', name='PC')])
        client.schedule_removal(DIRECTORY, 'en-1', after_lookups=1)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(name='PC'), {DIRECTORY}, 100, 10)

        assert result.confirmed == {DIRECTORY}
        assert clock.now == 10


class TestWipeAwait:
    def test_waits_for_management_only(self, clock):
        client = single_management_client()
        client.schedule_removal(MANAGEMENT, 'md-1', after_lookups=2)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_management_absent(DeviceIdentity(serial='S1'), max_wait=60, poll_interval=15)

        assert result.confirmed == {MANAGEMENT}
        assert all(c[1] == MANAGEMENT for c in client.calls)


class TestLookupKeys:
    def test_serial_miss_is_removal_even_if_name_is_reused(self, clock):
        client = FakeDeviceClient(management=[management_record('md-9', serial='S9', name='PC')])
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(name='PC', serial='S1'), {MANAGEMENT}, 100, 10)

        assert result.confirmed == {MANAGEMENT}
        assert clock.now == 10
        assert [c[0] for c in client.calls] == ['find_by_serial']

    def test_registry_poll_never_lists_by_name_when_serial_known(self, clock):
        client = FakeDeviceClient(registry=[registry_record('ap-9', serial='S9', name='PC')])
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(name='PC', serial='S1'), {REGISTRY}, 100, 10)

        assert result.confirmed == {REGISTRY}
        assert not any(c[0] == 'find_by_name' for c in client.calls)

    def test_name_used_when_no_serial_known(self, clock):
        client = FakeDeviceClient(management=[management_record('md-1', name='PC')])
        client.schedule_removal(MANAGEMENT, 'md-1', after_lookups=2)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(name='PC'), {MANAGEMENT}, 100, 10)

        assert result.confirmed == {MANAGEMENT}
        assert clock.now == 20
        assert all(c[0] == 'find_by_name' for c in client.calls)


class TestTokenFailures:
    def test_token_refresh_failure_keeps_service_pending(self, clock):
        client = single_management_client()
        client.lookup_errors[MANAGEMENT] = [AuthenticationError('Token request failed: ConnectionError')]
        client.schedule_removal(MANAGEMENT, 'md-1', after_lookups=1)
        verifier = RemovalVerifier(client, clock=clock, sleep=clock.sleep)

        result = verifier.await_removal(DeviceIdentity(serial='S1'), {MANAGEMENT}, max_wait=100, poll_interval=10)

        assert result.confirmed == {MANAGEMENT}
        assert not result.timed_out
        assert clock.now == 20
