"""
provisioning/reconciler.py -- Learns container addresses after creation.

A freshly created container usually has no address yet (DHCP, agent not up).
Instead of blocking the webhook caller, the orchestrator hands the ct_id to
AddressReconciler.schedule(), which resolves it on a daemon timer thread
after a fixed delay. The HTTP request may finish or be cancelled meanwhile;
the timer does not care.

If that first attempt comes back empty, the record is not stranded in
"creating": sweep() re-attempts every creating record on a schedule (the API
lifespan runs it every RECONCILE_INTERVAL_SECONDS). Each empty or failed
attempt bumps the record's resolve_attempts counter; at max_attempts the
record is moved to "error" and left alone.

    resolve -> address     update_status(running, address)
            -> None/error  resolve_attempts += 1
                           attempts >= max_attempts -> update_status(error)

Errors inside a resolution attempt are logged and counted, never raised:
this runs on background threads with nobody to catch them.
Database errors while recording the outcome are logged too; the next
sweep tries again.
"""

import logging
import threading
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from core.hypervisor import HypervisorClient
from core.models import STATUS_CREATING, STATUS_ERROR, STATUS_RUNNING
from inventory.store import ContainerStore

logger = logging.getLogger("cardinal.reconciler")


class AddressReconciler:
    def __init__(
        self,
        hypervisor: HypervisorClient,
        store: ContainerStore,
        delay: float = 10.0,
        max_attempts: int = 10,
    ) -> None:
        self.hypervisor = hypervisor
        self.store = store
        self.delay = delay
        self.max_attempts = max_attempts
        self._pending: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Deferred follow-up
    # ------------------------------------------------------------------

    def schedule(self, ct_id: str, delay: Optional[float] = None) -> threading.Timer:
        """Resolve ct_id's address on a background timer. Returns immediately."""
        wait = self.delay if delay is None else delay
        timer = threading.Timer(wait, self._run_scheduled, args=(ct_id,))
        timer.daemon = True
        with self._lock:
            previous = self._pending.pop(ct_id, None)
            if previous is not None:
                previous.cancel()
            self._pending[ct_id] = timer
        timer.start()
        logger.info("Address resolution for container %s scheduled in %gs", ct_id, wait)
        return timer

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def shutdown(self) -> None:
        """Cancel every timer that has not fired yet."""
        with self._lock:
            timers = list(self._pending.values())
            self._pending.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            logger.info("Cancelled %d pending address resolution(s)", len(timers))

    def _run_scheduled(self, ct_id: str) -> None:
        try:
            self.resolve_once(ct_id)
        finally:
            with self._lock:
                if self._pending.get(ct_id) is threading.current_thread():
                    del self._pending[ct_id]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_once(self, ct_id: str) -> Optional[str]:
        """Try once to learn ct_id's address and record the outcome.

        Returns the address on success, None otherwise.
        """
        try:
            address = self.hypervisor.resolve_network_address(int(ct_id))
        except Exception:
            logger.exception("Error resolving address for container %s", ct_id)
            address = None

        try:
            if address:
                self.store.update_status(ct_id, STATUS_RUNNING, ip_address=address)
                logger.info("Container %s IP updated: %s", ct_id, address)
                return address
            self._record_failure(ct_id)
        except SQLAlchemyError:
            logger.exception("Could not record address resolution outcome for container %s", ct_id)
        return None

    def _record_failure(self, ct_id: str) -> None:
        attempts = self.store.record_resolve_failure(ct_id)
        if attempts >= self.max_attempts:
            self.store.update_status(ct_id, STATUS_ERROR)
            logger.error("Giving up on container %s address after %d attempts", ct_id, attempts)
        else:
            logger.warning(
                "No address yet for container %s (attempt %d/%d)", ct_id, attempts, self.max_attempts
            )

    def sweep(self) -> int:
        """Re-attempt resolution for every creating record without a pending timer.

        Returns the number of records that reached "running" in this sweep.
        """
        pending = set(self.pending())
        resolved = 0
        for record in self.store.list_by_status(STATUS_CREATING):
            if record.ct_id in pending:
                continue
            if self.resolve_once(record.ct_id):
                resolved += 1
        if resolved:
            logger.info("Reconciliation sweep resolved %d container(s)", resolved)
        return resolved
