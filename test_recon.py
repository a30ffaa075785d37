#!/usr/bin/env python3
"""
Test Suite for the interrogation driver
=======================================

Tests validate:
    - C_IC_NA_1 confirmation and termination tracking
    - Which causes feed the inventory
    - Completion on ACT_TERM, connection loss and timeout
"""

import sys
import threading
import unittest
from pathlib import Path

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from protocols.iec104.messages import (
    TypeID, CauseOfTransmission, DoublePointValue, QualifierOfInterrogation,
)
from protocols.iec104.session import ApplicationMessage, ConnectionEvent
from ioamap.inventory import Category, Inventory
from ioamap.recon import InterrogationTracker, run_interrogation


def gi_reply(cause, negative=False):
    return ApplicationMessage(TypeID.C_IC_NA_1, cause, 0, negative,
                              QualifierOfInterrogation.STATION)


def report(ioa, type_id, value, cause=CauseOfTransmission.INTERROGATED_BY_STATION):
    return ApplicationMessage(type_id, cause, ioa, False, value)


class ScriptedSession:
    """Answers the interrogation with a fixed list of messages on another thread"""

    def __init__(self, tracker, messages, send_ok=True, event=None):
        self.tracker = tracker
        self.messages = messages
        self.send_ok = send_ok
        self.event = event
        self.requests = []
        self.worker = None

    def send_general_interrogation(self, cause, common_address, qualifier):
        self.requests.append((cause, common_address, qualifier))
        if not self.send_ok:
            return False
        self.worker = threading.Thread(target=self._answer)
        self.worker.start()
        return True

    def _answer(self):
        for message in self.messages:
            self.tracker.on_notification(message)
        if self.event is not None:
            self.tracker.on_connection_event(self.event)


class TestInterrogationTracker(unittest.TestCase):

    def setUp(self):
        self.inventory = Inventory()
        self.tracker = InterrogationTracker(self.inventory)

    def test_confirmation_and_termination(self):
        self.tracker.on_notification(gi_reply(CauseOfTransmission.ACTIVATION_CON))
        self.assertTrue(self.tracker.confirmed)
        self.assertFalse(self.tracker.terminated)

        self.tracker.on_notification(gi_reply(CauseOfTransmission.ACTIVATION_TERMINATION))
        self.assertTrue(self.tracker.terminated)
        self.assertTrue(self.tracker.wait(0))

    def test_negative_confirmation(self):
        with self.assertLogs("ioamap.recon", level="WARNING"):
            self.tracker.on_notification(
                gi_reply(CauseOfTransmission.ACTIVATION_CON, negative=True))
        self.assertTrue(self.tracker.rejected)
        self.assertFalse(self.tracker.confirmed)

    def test_collects_interrogated_spontaneous_and_periodic(self):
        self.tracker.on_notification(report(1, TypeID.M_SP_NA_1, True))
        self.tracker.on_notification(
            report(2, TypeID.M_DP_NA_1, DoublePointValue.ON, CauseOfTransmission.SPONTANEOUS))
        self.tracker.on_notification(
            report(3, TypeID.M_ME_NC_1, 1.5, CauseOfTransmission.PERIODIC))
        self.tracker.on_notification(
            report(4, TypeID.M_SP_NA_1, True, CauseOfTransmission.RETURN_INFO_REMOTE))

        self.assertEqual([p.ioa for p in self.inventory], [1, 2, 3])
        self.assertEqual(self.tracker.ignored, 1)
        self.assertEqual(self.inventory.get(3).category, Category.MEASURED_SHORT)

    def test_duplicates_counted(self):
        self.tracker.on_notification(report(1, TypeID.M_SP_NA_1, True))
        self.tracker.on_notification(report(1, TypeID.M_SP_NA_1, False))
        self.assertEqual(self.tracker.duplicates, 1)
        self.assertTrue(self.inventory.get(1).digital_state)

    def test_undecodable_value_skipped(self):
        with self.assertLogs("ioamap.recon", level="WARNING"):
            self.tracker.on_notification(report(1, TypeID.M_ME_NC_1, b'\x01\x02'))
        self.assertEqual(len(self.inventory), 0)

    def test_allocation_failure_latches(self):
        tracker = InterrogationTracker(Inventory(initial_capacity=1, max_capacity=1))
        tracker.on_notification(report(1, TypeID.M_SP_NA_1, True))
        with self.assertLogs("ioamap.recon", level="ERROR"):
            tracker.on_notification(report(2, TypeID.M_SP_NA_1, True))
        self.assertTrue(tracker.allocation_failed)
        self.assertTrue(tracker.wait(0))

    def test_connection_loss_ends_wait(self):
        self.tracker.on_connection_event(ConnectionEvent.OPENED)
        self.assertFalse(self.tracker.wait(0))
        self.tracker.on_connection_event(ConnectionEvent.CLOSED)
        self.assertTrue(self.tracker.connection_lost)
        self.assertTrue(self.tracker.wait(0))


class TestRunInterrogation(unittest.TestCase):

    def setUp(self):
        self.inventory = Inventory()
        self.tracker = InterrogationTracker(self.inventory)

    def run_with(self, messages, **kwargs):
        session = ScriptedSession(self.tracker, messages, **kwargs)
        result = run_interrogation(session, self.tracker, 1, timeout_s=2.0)
        if session.worker is not None:
            session.worker.join()
        return session, result

    def test_complete_interrogation(self):
        session, result = self.run_with([
            gi_reply(CauseOfTransmission.ACTIVATION_CON),
            report(100, TypeID.M_SP_NA_1, True),
            report(101, TypeID.M_SP_NA_1, False),
            report(200, TypeID.M_ME_NB_1, 42),
            gi_reply(CauseOfTransmission.ACTIVATION_TERMINATION),
        ])
        self.assertEqual(session.requests, [
            (CauseOfTransmission.ACTIVATION, 1, QualifierOfInterrogation.STATION)])
        self.assertTrue(result.gi_sent)
        self.assertTrue(result.confirmed)
        self.assertTrue(result.terminated)
        self.assertEqual(result.discovered, 3)

    def test_send_failure(self):
        with self.assertLogs("ioamap.recon", level="ERROR"):
            _, result = self.run_with([], send_ok=False)
        self.assertFalse(result.gi_sent)
        self.assertEqual(result.discovered, 0)

    def test_timeout_keeps_collected_points(self):
        session = ScriptedSession(self.tracker, [report(5, TypeID.M_SP_NA_1, True)])
        result = run_interrogation(session, self.tracker, 1, timeout_s=0.2)
        session.worker.join()
        self.assertTrue(result.gi_sent)
        self.assertFalse(result.terminated)
        self.assertEqual(len(self.inventory), 1)

    def test_connection_loss(self):
        _, result = self.run_with([report(5, TypeID.M_SP_NA_1, True)],
                                  event=ConnectionEvent.CLOSED)
        self.assertFalse(result.terminated)
        self.assertTrue(self.tracker.connection_lost)
        self.assertEqual(result.discovered, 1)


if __name__ == '__main__':
    unittest.main(verbosity=2)
