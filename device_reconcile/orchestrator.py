"""
Ordered, multi-service deletion for one device.

    Start -> [Wipe] -> [WipeAwait] -> RemoveManagementService
          -> RemoveRegistry -> RemoveDirectoryService -> Done

Intune goes first and Entra ID last: once the identity record is gone there is
no way to re-resolve the device by name in the other two services.
"""

import logging
import time
from functools import partial

from .errors import ConflictError, NotFoundError
from .models import (
    DELETION_ORDER,
    DeviceReconciliationResult,
    ErrorClass,
    OperationOutcome,
    ResolvedDevice,
    ServiceKind,
    ServiceOutcome,
    VerificationResult,
)
from .verifier import RemovalVerifier

logger = logging.getLogger(__name__)


def classify_failure(service, exc, native_id=None, queued=False) -> OperationOutcome:
    """Turn a failed call into an OperationOutcome.

    Only UNKNOWN is a hard failure. CONFLICT is treated as "probably already
    in flight" and kept with its message so an operator can check it.
    ``queued`` means the record itself already reported a pending action,
    so a conflict on it is ALREADY_QUEUED whatever the message says.
    """
    if isinstance(exc, NotFoundError):
        return OperationOutcome(service, found=True, success=True, error_class=ErrorClass.ALREADY_REMOVED,
                                message=str(exc), native_id=native_id)
    if isinstance(exc, ConflictError):
        error_class = ErrorClass.ALREADY_QUEUED if exc.pending or queued else ErrorClass.CONFLICT
        return OperationOutcome(service, found=True, success=True, error_class=error_class,
                                message=str(exc), native_id=native_id)
    return OperationOutcome(service, found=True, success=False, error_class=ErrorClass.UNKNOWN,
                            message=str(exc), native_id=native_id)


def _has_pending_action(record):
    return bool(record.management_state and record.management_state.is_pending)


def _describe_outcome(outcome: OperationOutcome):
    if not outcome.found:
        return 'not found (nothing to do)'
    if outcome.dry_run:
        return 'would be sent (dry run)'
    if outcome.error_class == ErrorClass.NONE:
        return 'sent'
    if outcome.error_class == ErrorClass.ALREADY_REMOVED:
        return 'already removed'
    if outcome.error_class == ErrorClass.ALREADY_QUEUED:
        return 'already queued'
    if outcome.error_class == ErrorClass.CONFLICT:
        return f"conflict, assuming in progress ({outcome.message})"
    return f"FAILED: {outcome.message}"


class DeletionOrchestrator:
    """Runs the destructive sequence for one device and normalizes every result"""

    def __init__(self, client, options, verifier=None, clock=time.monotonic):
        self.client = client
        self.options = options
        self.verifier = verifier or RemovalVerifier(client)
        self.clock = clock

    def process(self, resolved: ResolvedDevice, targets=None) -> DeviceReconciliationResult:
        wanted = set(targets if targets is not None else self.options.targets)
        targets = tuple(service for service in DELETION_ORDER if service in wanted)
        result = DeviceReconciliationResult(identity=resolved.identity, targets=targets)
        start = self.clock()

        if self.options.wipe and not self._wipe(resolved, result):
            result.aborted = True
            logger.error(f"Record deletion for {resolved.identity} aborted: {result.error}")
            return result.finish(elapsed=self.clock() - start)

        for service in targets:
            logger.debug(f"{resolved.identity}: state Remove{service.label.replace(' ', '')}")
            result.outcomes[service] = self._remove_service(resolved, service)

        result.verification = self._verify(resolved, result)
        return result.finish(elapsed=self.clock() - start)

    def _dispatch(self, service, record, action, call) -> OperationOutcome:
        """Every mutating call goes through here; dry run is honored in this one place"""
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would {action} {service.label} record {record.describe()}")
            return OperationOutcome(service, found=True, success=True, native_id=record.native_id, dry_run=True)
        try:
            call()
        except Exception as e:
            outcome = classify_failure(service, e, record.native_id, queued=_has_pending_action(record))
            log = logger.error if outcome.is_hard_failure else logger.info
            log(f"{service.label} {action} {record.describe()}: {_describe_outcome(outcome)}")
            return outcome
        logger.info(f"{service.label} {action} sent for {record.describe()}")
        return OperationOutcome(service, found=True, success=True, native_id=record.native_id)

    def _wipe(self, resolved, result) -> bool:
        """Send the wipe and wait for it; False means record deletion must not proceed"""
        service = ServiceKind.MANAGEMENT
        records = resolved.get(service)
        result.wipe = ServiceOutcome(service)

        if not records:
            result.error = 'No Intune record to wipe'
            result.wipe.outcomes.append(OperationOutcome(service, found=False, success=False,
                                                         error_class=ErrorClass.UNKNOWN, message=result.error))
            return False
        if service in resolved.low_confidence:
            result.error = f"{len(records)} Intune records match '{resolved.identity.name}'; refusing to wipe"
            result.wipe.outcomes.append(OperationOutcome(service, found=True, success=False,
                                                         error_class=ErrorClass.UNKNOWN, message=result.error))
            return False

        for record in records:
            wipe_call = partial(self.client.invoke_wipe, record.native_id,
                                keep_enrollment=self.options.keep_enrollment,
                                keep_user=self.options.keep_user)
            result.wipe.outcomes.append(self._dispatch(service, record, 'wipe', wipe_call))

        if not result.wipe.success:
            result.error = 'Wipe command could not be sent'
            return False

        for record in records:
            # Check-in only speeds things up; its failure changes nothing
            sync = self._dispatch(service, record, 'sync', partial(self.client.invoke_sync, record.native_id))
            if not sync.success:
                logger.warning(f"Sync after wipe failed for {record.describe()}: {sync.message}")

        if not self.options.verify:
            logger.info(f"Not waiting for wipe of {resolved.identity} ({'dry run' if self.options.dry_run else 'fast mode'})")
            result.wipe_verification = VerificationResult(skipped=True)
            return True

        logger.debug(f"{resolved.identity}: state WipeAwait")
        try:
            result.wipe_verification = self.verifier.await_management_absent(
                resolved.lookup_identity(), self.options.wipe_timeout, self.options.poll_interval)
        except Exception as e:
            result.error = f"Wipe could not be confirmed: {str(e)} - records left in place"
            return False
        if result.wipe_verification.timed_out:
            result.error = (f"Wipe not confirmed within {self.options.wipe_timeout:.0f}s; "
                            f"device may still hold data - records left in place")
            return False
        return True

    def _remove_service(self, resolved, service) -> ServiceOutcome:
        outcome = ServiceOutcome(service)
        records = resolved.get(service)

        if not records:
            logger.info(f"{service.label}: {resolved.identity} not found, nothing to delete")
            outcome.outcomes.append(OperationOutcome(service, found=False, success=True))
            return outcome

        if service in resolved.low_confidence:
            message = (f"{len(records)} {service.label} records match name '{resolved.identity.name}' "
                       f"with no serial to tell them apart; not deleted")
            logger.error(message)
            outcome.outcomes.append(OperationOutcome(service, found=True, success=False,
                                                     error_class=ErrorClass.UNKNOWN, message=message))
            return outcome

        for record in records:
            if _has_pending_action(record):
                logger.info(f"{service.label} reports {record.management_state.value} for {record.describe()}; "
                            f"deleting anyway")
            outcome.outcomes.append(
                self._dispatch(service, record, 'delete', partial(self.client.delete, service, record.native_id))
            )

        if outcome.partial:
            logger.warning(
                f"{service.label}: {len(outcome.failures)} of {len(records)} records for "
                f"{resolved.identity} could not be deleted"
            )
        return outcome

    def _verify(self, resolved, result) -> VerificationResult:
        if not self.options.verify:
            return VerificationResult(skipped=True)

        # Only poll services where something was actually sent or queued
        to_poll = [
            service for service, outcome in result.outcomes.items()
            if outcome.found and outcome.success
        ]
        if not to_poll:
            return VerificationResult()

        try:
            return self.verifier.await_removal(
                resolved.lookup_identity(), to_poll, self.options.max_wait, self.options.poll_interval)
        except Exception as e:
            # Deletes were already sent; keep their outcomes and report the device as unconfirmed
            logger.error(f"Verification for {resolved.identity} failed: {str(e)}")
            result.error = f"Verification failed: {str(e)}"
            return VerificationResult(timed_out=True, pending=frozenset(to_poll))
