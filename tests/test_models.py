"""Unit tests for the data model helpers."""

import pytest

from device_reconcile.errors import IdentityValidationError
from device_reconcile.models import (
    DeviceIdentity,
    DeviceReconciliationResult,
    DeviceStatus,
    ErrorClass,
    ManagementState,
    OperationOutcome,
    ResolvedDevice,
    ServiceKind,
    ServiceOutcome,
    VerificationResult,
)
from tests.helpers import directory_record, management_record, registry_record


class TestDeviceIdentity:
    def test_blank_identity_fails_validation(self):
        with pytest.raises(IdentityValidationError):
            DeviceIdentity(name='  ', serial='').validate()

    def test_values_are_trimmed(self):
        identity = DeviceIdentity(name=' LAPTOP-1 ', serial=' ABC ')
        assert identity.name == 'LAPTOP-1'
        assert identity.serial == 'ABC'

    def test_serial_only_is_valid(self):
        assert DeviceIdentity(serial='ABC').validate().serial == 'ABC'


class TestDeviceRecord:
    def test_embedded_serial_from_physical_ids(self):
        record = directory_record('en-1', name='PC', serial='XYZ', extra_ids=['[ZTDID]:1234', '[OrderId]:po'])
        assert record.embedded_serial == 'XYZ'

    def test_no_embedded_serial(self):
        record = directory_record('en-1', name='PC', extra_ids=['[ZTDID]:1234'])
        assert record.embedded_serial is None

    def test_raw_payload_not_part_of_equality(self):
        a = registry_record('ap-1', serial='S1')
        b = registry_record('ap-1', serial='S1')
        assert a == b


class TestManagementState:
    def test_parse_known_state(self):
        assert ManagementState.parse('wipePending') == ManagementState.WIPE_PENDING
        assert ManagementState.parse('wipePending').is_pending

    def test_parse_unknown_state(self):
        assert ManagementState.parse('somethingNew') == ManagementState.OTHER

    def test_parse_empty(self):
        assert ManagementState.parse(None) is None


class TestResolvedDevice:
    def test_lookup_identity_borrows_serial_and_name(self):
        resolved = ResolvedDevice(identity=DeviceIdentity(name='LAPTOP-1'))
        resolved.records[ServiceKind.MANAGEMENT] = [management_record('md-1', serial='S1', name='LAPTOP-1')]
        assert resolved.lookup_identity() == DeviceIdentity(name='LAPTOP-1', serial='S1')


def outcome(service, found=True, success=True, error_class=ErrorClass.NONE):
    return OperationOutcome(service, found=found, success=success, error_class=error_class)


def result_with(*service_outcomes, verification=None):
    result = DeviceReconciliationResult(identity=DeviceIdentity(serial='S1'))
    for service_outcome in service_outcomes:
        result.outcomes[service_outcome.service] = service_outcome
    result.verification = verification
    return result


class TestDeviceStatus:
    def test_partial_directory_set(self):
        directory = ServiceOutcome(ServiceKind.DIRECTORY, [
            outcome(ServiceKind.DIRECTORY),
            outcome(ServiceKind.DIRECTORY, success=False, error_class=ErrorClass.UNKNOWN),
        ])
        assert directory.partial
        assert result_with(directory).status == DeviceStatus.PARTIAL

    def test_not_found_everywhere(self):
        result = result_with(
            ServiceOutcome(ServiceKind.MANAGEMENT, [outcome(ServiceKind.MANAGEMENT, found=False)]),
            ServiceOutcome(ServiceKind.REGISTRY, [outcome(ServiceKind.REGISTRY, found=False)]),
        )
        assert result.status == DeviceStatus.NOT_FOUND

    def test_timed_out(self):
        result = result_with(
            ServiceOutcome(ServiceKind.MANAGEMENT, [outcome(ServiceKind.MANAGEMENT)]),
            verification=VerificationResult(timed_out=True, pending=frozenset({ServiceKind.MANAGEMENT})),
        )
        assert result.status == DeviceStatus.TIMED_OUT

    def test_single_service_failure(self):
        result = result_with(
            ServiceOutcome(ServiceKind.MANAGEMENT, [
                outcome(ServiceKind.MANAGEMENT, success=False, error_class=ErrorClass.UNKNOWN)]),
        )
        assert result.status == DeviceStatus.FAILED

    def test_aborted_wins(self):
        result = result_with()
        result.aborted = True
        assert result.status == DeviceStatus.ABORTED
