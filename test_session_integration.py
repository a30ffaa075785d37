#!/usr/bin/env python3
"""
End-to-end tests against the lab outstation
===========================================

The outstation runs on its own event loop thread on an ephemeral port; the
real IEC104Session, the drivers and the command line entry points connect
to it over loopback.
"""

import asyncio
import logging
import socket
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

import ioa_multi
import ioa_poc
import ioa_recon
from protocols.iec104.messages import TypeID, CauseOfTransmission, DoublePointValue
from protocols.iec104.server import IEC104Server, CommandPolicy
from protocols.iec104.session import IEC104Session, ConnectionEvent
from ioamap.config import SessionSettings
from ioamap.dispatcher import Dispatcher, ResponseTracker, RunOutcome
from ioamap.inventory import Inventory
from ioamap.recon import InterrogationTracker, run_interrogation
from ioamap.runtime import open_session
from ioamap.target_map import DesiredState, TargetEntry, load_target_map


class OutstationThread:
    """IEC104Server running on a private event loop thread"""

    def __init__(self, server: IEC104Server):
        self.server = server
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever,
                                       name="outstation", daemon=True)

    @property
    def port(self) -> int:
        return self.server.port

    def start(self):
        self.thread.start()
        asyncio.run_coroutine_threadsafe(self.server.start(), self.loop).result(5)

    def stop(self):
        asyncio.run_coroutine_threadsafe(self._shutdown(), self.loop).result(5)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(5)
        self.loop.close()

    async def _shutdown(self):
        await self.server.stop()
        current = asyncio.current_task()
        tasks = [t for t in asyncio.all_tasks() if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def build_station() -> IEC104Server:
    server = IEC104Server(host='127.0.0.1', port=0, common_address=1,
                          name='lab', log_level=logging.WARNING)
    server.add_point(100, TypeID.M_SP_NA_1, True)
    server.add_point(101, TypeID.M_SP_NA_1, False)
    server.add_point(200, TypeID.M_DP_NA_1, DoublePointValue.ON)
    server.add_point(300, TypeID.M_ME_NC_1, 230.5)
    server.add_point(301, TypeID.M_ME_NB_1, -42)
    server.add_point(400, TypeID.M_BO_NA_1, 0xBEEF)
    server.add_command_point(100, CommandPolicy.ACCEPT)
    server.add_command_point(101, CommandPolicy.REJECT)
    server.add_command_point(102, CommandPolicy.SILENT)
    return server


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class OutstationTestCase(unittest.TestCase):

    def setUp(self):
        self.station = OutstationThread(build_station())
        self.station.start()
        self.addCleanup(self.station.stop)

    def settings(self, **overrides) -> SessionSettings:
        values = dict(host='127.0.0.1', port=self.station.port, common_address=1,
                      connect_timeout_s=2.0, startdt_settle_s=0)
        values.update(overrides)
        return SessionSettings(**values)


class TestSession(OutstationTestCase):

    def test_connect_start_and_close_events(self):
        events = []
        session = IEC104Session('127.0.0.1', self.station.port)
        session.configure(originator_address=3, common_address=1, connect_timeout_s=2.0)
        session.register_handlers(on_connection_event=events.append)

        self.assertTrue(session.connect())
        self.assertFalse(session.is_active)
        self.assertTrue(session.start_data_transfer())
        self.assertTrue(session.is_active)
        session.destroy()

        self.assertEqual(events, [ConnectionEvent.OPENED,
                                  ConnectionEvent.STARTDT_CON_RECEIVED,
                                  ConnectionEvent.CLOSED])

    def test_command_refused_before_startdt(self):
        session = IEC104Session('127.0.0.1', self.station.port)
        session.configure(originator_address=3, common_address=1, connect_timeout_s=2.0)
        self.assertTrue(session.connect())
        try:
            with self.assertLogs("protocols.iec104.session", level="WARNING"):
                sent = session.send_single_command(CauseOfTransmission.ACTIVATION, 1, 100, True)
            self.assertFalse(sent)
        finally:
            session.destroy()

    def test_connection_refused(self):
        events = []
        session = IEC104Session('127.0.0.1', free_port())
        session.configure(originator_address=3, common_address=1, connect_timeout_s=1.0)
        session.register_handlers(on_connection_event=events.append)
        with self.assertLogs("protocols.iec104.session", level="ERROR"):
            self.assertFalse(session.connect())
        session.destroy()
        self.assertEqual(events, [ConnectionEvent.FAILED])

    def test_raw_frames_reported(self):
        frames = []
        session = IEC104Session('127.0.0.1', self.station.port)
        session.configure(originator_address=3, common_address=1, connect_timeout_s=2.0)
        session.register_handlers(on_raw_frame=lambda data, sent: frames.append((data, sent)))
        self.assertTrue(session.connect())
        self.assertTrue(session.start_data_transfer())
        session.destroy()

        self.assertEqual(frames[0], (b'\x68\x04\x07\x00\x00\x00', True))
        self.assertEqual(frames[1], (b'\x68\x04\x0b\x00\x00\x00', False))


class TestReconAgainstOutstation(OutstationTestCase):

    def test_interrogation_fills_inventory(self):
        inventory = Inventory()
        tracker = InterrogationTracker(inventory)
        session = open_session(self.settings(), tracker.on_notification,
                               tracker.on_connection_event)
        self.assertIsNotNone(session)
        try:
            result = run_interrogation(session, tracker, 1, timeout_s=3.0)
        finally:
            session.destroy()

        self.assertTrue(result.gi_sent)
        self.assertTrue(result.confirmed)
        self.assertTrue(result.terminated)
        self.assertEqual([p.ioa for p in inventory], [100, 101, 200, 300, 301, 400])
        self.assertTrue(inventory.get(200).digital_state)
        self.assertEqual(inventory.get(300).analog_value, 230.5)
        self.assertEqual(inventory.get(301).analog_value, -42.0)
        self.assertEqual(inventory.get(400).raw_bits, 0xBEEF)

    def test_spontaneous_report_collected(self):
        inventory = Inventory()
        tracker = InterrogationTracker(inventory)
        session = open_session(self.settings(), tracker.on_notification,
                               tracker.on_connection_event)
        try:
            asyncio.run_coroutine_threadsafe(
                self.station.server.send_spontaneous(500, TypeID.M_SP_NA_1, True),
                self.station.loop).result(2)
            deadline = time.monotonic() + 2.0
            while inventory.get(500) is None and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            session.destroy()
        self.assertTrue(inventory.get(500).digital_state)

    def test_wrong_common_address_is_rejected(self):
        tracker = InterrogationTracker(Inventory())
        session = open_session(self.settings(common_address=9), tracker.on_notification,
                               tracker.on_connection_event)
        try:
            result = run_interrogation(session, tracker, 9, timeout_s=0.5)
        finally:
            session.destroy()
        self.assertFalse(result.confirmed)
        self.assertFalse(result.terminated)
        self.assertEqual(result.discovered, 0)


class TestDispatchAgainstOutstation(OutstationTestCase):

    def test_accept_reject_silent(self):
        tracker = ResponseTracker()
        session = open_session(self.settings(), tracker.on_notification)
        self.assertIsNotNone(session)
        try:
            dispatcher = Dispatcher(session, common_address=1, inter_command_delay_s=0.01)
            run = dispatcher.dispatch([TargetEntry(100, "A", DesiredState.ON),
                                       TargetEntry(101, "B", DesiredState.OFF),
                                       TargetEntry(102, "C", DesiredState.OFF)], tracker)
            outcome = dispatcher.collect(run, 0.5)
        finally:
            session.destroy()

        self.assertEqual((run.sent, run.send_failed), (3, 0))
        self.assertEqual((run.confirmed, run.rejected), (1, 1))
        self.assertEqual(tracker.terminated, 1)
        self.assertEqual(outcome, RunOutcome.PARTIAL)
        self.assertEqual(self.station.server.commands_received,
                         [(100, True), (101, False), (102, False)])

    def test_unknown_ioa(self):
        tracker = ResponseTracker()
        session = open_session(self.settings(), tracker.on_notification)
        try:
            dispatcher = Dispatcher(session, common_address=1, inter_command_delay_s=0)
            run = dispatcher.dispatch([TargetEntry(9999, "X")], tracker)
            self.assertTrue(tracker.wait_for_verdict(2.0))
        finally:
            session.destroy()
        self.assertEqual(run.rejected, 1)


class TestCommandLineTools(OutstationTestCase):
    """Entry points end to end, logging setup left to the test runner"""

    def setUp(self):
        super().setUp()
        for module in (ioa_recon, ioa_multi, ioa_poc):
            patcher = mock.patch.object(module, "setup_logging")
            patcher.start()
            self.addCleanup(patcher.stop)
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)

    def test_recon_writes_map(self):
        output = self.tmp / "discovered.txt"
        code = ioa_recon.main(['127.0.0.1', str(self.station.port), str(output),
                               '--timeout', '3'])
        self.assertEqual(code, 0)

        entries = load_target_map(output)
        self.assertEqual([(e.ioa, e.name, e.desired_state) for e in entries], [
            (100, "SP_IOA_100", DesiredState.ON),
            (101, "SP_IOA_101", DesiredState.OFF),
            (200, "DP_IOA_200", DesiredState.ON),
            (300, "MF_IOA_300", DesiredState.OFF),
            (301, "MS_IOA_301", DesiredState.OFF),
            (400, "BS_IOA_400", DesiredState.OFF),
        ])
        header = output.read_text(encoding="utf-8").splitlines()[0]
        self.assertIn(f"127.0.0.1:{self.station.port}", header)

    def test_recon_without_points_writes_nothing(self):
        self.station.server.points.clear()
        output = self.tmp / "empty.txt"
        code = ioa_recon.main(['127.0.0.1', str(self.station.port), str(output),
                               '--timeout', '3'])
        self.assertEqual(code, 0)
        self.assertFalse(output.exists())

    def test_recon_unreachable(self):
        code = ioa_recon.main(['127.0.0.1', str(free_port()), str(self.tmp / "x.txt")])
        self.assertEqual(code, 1)

    def test_multi_partial(self):
        config = self.tmp / "targets.txt"
        config.write_text("100 A ON\n101 B OFF\n", encoding="utf-8")
        code = ioa_multi.main(['127.0.0.1', str(self.station.port), str(config),
                               '--delay', '10', '--wait', '500'])
        self.assertEqual(code, 2)

    def test_multi_success(self):
        config = self.tmp / "targets.txt"
        config.write_text("100 A OFF\n", encoding="utf-8")
        code = ioa_multi.main(['127.0.0.1', str(self.station.port), str(config),
                               '--delay', '0', '--wait', '500'])
        self.assertEqual(code, 0)

    def test_poc_exit_codes(self):
        port = str(self.station.port)
        self.assertEqual(ioa_poc.main(['127.0.0.1', port, '100', 'ON']), 0)
        self.assertEqual(ioa_poc.main(['127.0.0.1', port, '101', '0']), 2)
        self.assertEqual(ioa_poc.main(['127.0.0.1', port, '102', 'off', '--wait', '300']), 3)


if __name__ == '__main__':
    unittest.main(verbosity=2)
