"""
Interrogation-driven discovery.

InterrogationTracker is registered as the session's application message
handler: it follows the C_IC_NA_1 confirmation/termination and turns every
reported point into a DiscoveredPoint in the inventory.
"""

import logging
import threading
from dataclasses import dataclass

from protocols.iec104.messages import (
    TypeID, CauseOfTransmission, QualifierOfInterrogation, type_name,
)
from protocols.iec104.session import ApplicationMessage, ConnectionEvent
from ioamap.inventory import AddResult, DiscoveredPoint, Inventory


logger = logging.getLogger(__name__)

# Interrogation replies plus whatever the station reports on its own meanwhile
COLLECTED_CAUSES = {
    CauseOfTransmission.INTERROGATED_BY_STATION,
    CauseOfTransmission.SPONTANEOUS,
    CauseOfTransmission.PERIODIC,
}


class InterrogationTracker:
    """Feeds an Inventory from the notification stream of one session"""

    def __init__(self, inventory: Inventory):
        self.inventory = inventory
        self.confirmed = False
        self.rejected = False
        self.allocation_failed = False
        self.duplicates = 0
        self.ignored = 0
        self._done = threading.Event()
        self._terminated = False
        self._connection_lost = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def connection_lost(self) -> bool:
        return self._connection_lost

    def on_notification(self, message: ApplicationMessage):
        if message.type_id == TypeID.C_IC_NA_1:
            self._on_interrogation_reply(message)
            return

        if message.cause not in COLLECTED_CAUSES:
            self.ignored += 1
            return

        try:
            point = DiscoveredPoint.from_value(message.ioa, message.type_id, message.value)
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning(f"Cannot decode {type_name(message.type_id)} IOA {message.ioa}: {e}")
            self.ignored += 1
            return

        result = self.inventory.add(point)
        if result == AddResult.DUPLICATE:
            self.duplicates += 1
        elif result == AddResult.ALLOCATION_FAILED:
            logger.error(f"Inventory allocation failed at IOA {message.ioa}")
            self.allocation_failed = True
            self._done.set()

    def _on_interrogation_reply(self, message: ApplicationMessage):
        if message.cause == CauseOfTransmission.ACTIVATION_CON:
            if message.negative:
                logger.warning("[!] Interrogation REJECTED (negative ACT_CON)")
                self.rejected = True
            else:
                logger.info("[+] Interrogation accepted (ACT_CON)")
                self.confirmed = True
        elif message.cause == CauseOfTransmission.ACTIVATION_TERMINATION:
            logger.info("[+] Interrogation complete (ACT_TERM)")
            self._terminated = True
            self._done.set()
        else:
            logger.info(f"[<] C_IC_NA_1 cot={message.cause} negative={message.negative}")

    def on_connection_event(self, event: ConnectionEvent):
        if event in (ConnectionEvent.CLOSED, ConnectionEvent.FAILED):
            self._connection_lost = True
            self._done.set()

    def wait(self, timeout_s: float) -> bool:
        """Block until ACT_TERM, connection loss or allocation failure; False on timeout"""
        return self._done.wait(timeout_s)


@dataclass
class ReconResult:
    gi_sent: bool
    confirmed: bool = False
    rejected: bool = False
    terminated: bool = False
    discovered: int = 0
    duplicates: int = 0


def run_interrogation(session, tracker: InterrogationTracker, common_address: int,
                      timeout_s: float) -> ReconResult:
    """
    Send a station interrogation (QOI 20) and collect until ACT_TERM or timeout.

    The session must already be in data transfer and have
    tracker.on_notification registered.
    """
    logger.info("[>] Sending C_IC_NA_1 (General Interrogation, QOI=20)")
    sent = session.send_general_interrogation(
        CauseOfTransmission.ACTIVATION, common_address, QualifierOfInterrogation.STATION)
    if not sent:
        logger.error("[!] Failed to send interrogation command")
        return ReconResult(gi_sent=False)

    logger.info(f"[*] Collecting responses ({timeout_s:.1f}s timeout)")
    if tracker.wait(timeout_s) and tracker.terminated:
        logger.info("[+] Server signaled interrogation complete")
    elif tracker.connection_lost:
        logger.warning("[!] Connection lost while collecting, using what arrived")
    elif not tracker.allocation_failed:
        logger.info("[*] Timeout reached, proceeding with collected data")

    return ReconResult(
        gi_sent=True,
        confirmed=tracker.confirmed,
        rejected=tracker.rejected,
        terminated=tracker.terminated,
        discovered=len(tracker.inventory),
        duplicates=tracker.duplicates,
    )
