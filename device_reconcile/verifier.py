"""
Poll the backing services until a device is observably gone.

Deletes against these services are queue-and-forget, so a 2xx only means the
request was accepted. Clock and sleep are injectable so tests never wait.
"""

import logging
import time
from typing import Iterable

import requests

from .errors import ReconcileError
from .models import DELETION_ORDER, DeviceIdentity, ServiceKind, VerificationResult
from .resolver import IdentityResolver

logger = logging.getLogger(__name__)

UPSTREAM = frozenset({ServiceKind.MANAGEMENT, ServiceKind.REGISTRY})


class RemovalVerifier:
    def __init__(self, client, clock=time.monotonic, sleep=time.sleep, resolver=None):
        self.client = client
        self.clock = clock
        self.sleep = sleep
        self.resolver = resolver or IdentityResolver(client)

    def await_removal(self, identity: DeviceIdentity, targets: Iterable[ServiceKind],
                      max_wait: float, poll_interval: float) -> VerificationResult:
        """Poll every pending service each tick until all are gone or max_wait passes"""
        pending = set(targets)
        confirmed = set()
        start = self.clock()
        timed_out = False
        tick = 0

        logger.info(
            f"Waiting up to {max_wait:.0f}s for {identity} to leave "
            f"{', '.join(s.label for s in DELETION_ORDER if s in pending)}"
        )

        while pending:
            self.sleep(poll_interval)
            elapsed = self.clock() - start
            if elapsed > max_wait:
                timed_out = True
                break
            tick += 1

            for service in [s for s in DELETION_ORDER if s in pending]:
                if service == ServiceKind.DIRECTORY and pending & UPSTREAM:
                    # Entra ID is only checked once Intune and Autopilot are clear
                    continue
                if self._is_absent(service, identity):
                    pending.discard(service)
                    confirmed.add(service)
                    logger.info(f"✓ {identity} confirmed removed from {service.label} after {elapsed:.0f}s")

            if pending:
                logger.debug(f"Tick {tick}: still present in {', '.join(s.label for s in pending)}")

        elapsed = self.clock() - start
        if timed_out:
            logger.warning(
                f"Timed out after {elapsed:.0f}s; {identity} may still be present in "
                f"{', '.join(s.label for s in DELETION_ORDER if s in pending)} - verify manually"
            )

        return VerificationResult(
            confirmed=frozenset(confirmed),
            timed_out=timed_out,
            pending=frozenset(pending),
            elapsed=elapsed,
        )

    def await_management_absent(self, identity: DeviceIdentity, max_wait: float,
                                poll_interval: float) -> VerificationResult:
        """Wipe completion shows up as the device leaving Intune"""
        return self.await_removal(identity, [ServiceKind.MANAGEMENT], max_wait, poll_interval)

    def _is_absent(self, service, identity):
        try:
            records, _ = self.resolver.lookup(service, identity, serial_only=True)
        except (ReconcileError, requests.exceptions.RequestException) as e:
            # An error is not evidence of removal; try again next tick
            logger.warning(f"{service.label} check for {identity} failed, retrying next interval: {str(e)}")
            return False
        return not records
