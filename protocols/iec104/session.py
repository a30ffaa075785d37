"""
IEC 104 Controlling Station Session
===================================

Blocking facade over an asyncio IEC 104 client. The event loop runs in its
own daemon thread ("iec104-session"); every registered handler is invoked
from that thread, never from the caller's.

Features:
    - Connection management with STARTDT handshake
    - k/w flow control (send refused while the k window is full)
    - TESTFR keep-alive and TESTFR_ACT echo
    - One application message callback per decoded information object
    - Raw frame callback for hex dumps

Usage:
    session = IEC104Session("10.10.10.10", 2404)
    session.configure(originator_address=3, common_address=1, connect_timeout_s=5)
    session.register_handlers(on_application_message=tracker.on_notification)
    if session.connect() and session.start_data_transfer():
        session.send_single_command(CauseOfTransmission.ACTIVATION, 1, 5000, False)
    session.destroy()
"""

import asyncio
import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from protocols.iec104.messages import (
    APCI, APDU, APDUType, ASDU, IncompleteFrame, UFrameFunction, complete_frame_length,
    interrogation_asdu, single_command_asdu, type_name, cause_name,
)
from protocols.iec104.connection import ConnectionStateMachine


logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Transport level failure inside the session"""


class ConnectionEvent(Enum):
    OPENED = "opened"
    CLOSED = "closed"
    FAILED = "failed"
    STARTDT_CON_RECEIVED = "startdt_con"
    STOPDT_CON_RECEIVED = "stopdt_con"


@dataclass(frozen=True)
class ApplicationMessage:
    """One decoded information object with the header of its ASDU"""
    type_id: int
    cause: int
    ioa: int
    negative: bool
    value: Any
    common_address: int = 0
    quality: int = 0

    def __str__(self):
        flag = " NEG" if self.negative else ""
        return (f"{type_name(self.type_id)} cot={cause_name(self.cause)}{flag} "
                f"ca={self.common_address} ioa={self.ioa} value={self.value!r}")


ConnectionHandler = Callable[[ConnectionEvent], None]
MessageHandler = Callable[[ApplicationMessage], None]
RawFrameHandler = Callable[[bytes, bool], None]


class IEC104Session:
    """
    IEC 104 controlling station connection.

    All public methods are blocking and thread-safe; protocol work is
    scheduled on the session's event loop.
    """

    def __init__(self, host: str, port: int = 2404):
        self.host = host
        self.port = port

        # Application layer parameters
        self.originator_address = 0
        self.common_address = 1
        self.connect_timeout_s = 5.0

        # APCI parameters
        self.k = 12
        self.w = 8
        self.t3_s = 20.0

        self._on_connection_event: Optional[ConnectionHandler] = None
        self._on_application_message: Optional[MessageHandler] = None
        self._on_raw_frame: Optional[RawFrameHandler] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._tasks = []
        self._conn = ConnectionStateMachine(f"{host}:{port}")
        self._rx_buffer = bytearray()
        self._startdt_confirmed = threading.Event()
        self._closed_reported = False

        self.stats = {
            'frames_sent': 0,
            'frames_received': 0,
            'commands_sent': 0,
            'interrogations': 0,
            'send_refused': 0,
            'errors': 0,
        }

    # ------------------------------------------------------------ setup

    def configure(self, originator_address: int, common_address: int,
                  connect_timeout_s: float):
        self.originator_address = originator_address
        self.common_address = common_address
        self.connect_timeout_s = connect_timeout_s

    def register_handlers(self, on_connection_event: Optional[ConnectionHandler] = None,
                          on_application_message: Optional[MessageHandler] = None,
                          on_raw_frame: Optional[RawFrameHandler] = None):
        self._on_connection_event = on_connection_event
        self._on_application_message = on_application_message
        self._on_raw_frame = on_raw_frame

    @property
    def is_active(self) -> bool:
        return self._conn.is_active()

    # ------------------------------------------------------ public API

    def connect(self) -> bool:
        """
        Open the TCP connection.

        Returns:
            True if connected within connect_timeout_s
        """
        self._start_loop()
        return self._call(self._open(), self.connect_timeout_s + 1.0)

    def start_data_transfer(self) -> bool:
        """
        Send STARTDT_ACT.

        Returns:
            True once STARTDT_CON was received within connect_timeout_s
        """
        self._startdt_confirmed.clear()
        if not self._call(self._send_u(UFrameFunction.STARTDT_ACT), self.connect_timeout_s):
            return False
        if not self._startdt_confirmed.wait(self.connect_timeout_s):
            logger.warning(f"No STARTDT_CON from {self.host}:{self.port} "
                           f"within {self.connect_timeout_s}s")
            return False
        return True

    def send_single_command(self, cause: int, common_address: int, ioa: int,
                            state: bool, select: bool = False) -> bool:
        """
        Queue a C_SC_NA_1.

        Returns:
            True if the frame was written, False if data transfer is not
            active or the k window is saturated
        """
        asdu = single_command_asdu(cause, common_address, ioa, state,
                                   originator=self.originator_address, select=select)
        sent = self._call(self._send_asdu(asdu), self.connect_timeout_s)
        if sent:
            self.stats['commands_sent'] += 1
        return sent

    def send_general_interrogation(self, cause: int, common_address: int,
                                   qualifier: int) -> bool:
        """Queue a C_IC_NA_1 with the given QOI"""
        asdu = interrogation_asdu(cause, common_address, qualifier,
                                  originator=self.originator_address)
        sent = self._call(self._send_asdu(asdu), self.connect_timeout_s)
        if sent:
            self.stats['interrogations'] += 1
        return sent

    def destroy(self):
        """Close the connection and stop the session thread"""
        if self._loop is None:
            return
        if self._loop.is_running():
            self._call(self._close(), self.connect_timeout_s)
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=self.connect_timeout_s)
        self._loop = None
        self._thread = None

    # -------------------------------------------------- loop plumbing

    def _start_loop(self):
        if self._loop is not None:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, args=(self._loop,),
                                        name="iec104-session", daemon=True)
        self._thread.start()

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop):
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    def _call(self, coro, timeout: float) -> bool:
        """Run a coroutine on the session loop and wait for its bool result"""
        if self._loop is None or not self._loop.is_running():
            coro.close()
            logger.error("IEC 104 session is not running")
            return False
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.error(f"IEC 104 session call timed out after {timeout}s")
        except SessionError as e:
            logger.error(f"IEC 104 session error: {e}")
        self.stats['errors'] += 1
        return False

    # ------------------------------------------------- protocol side

    async def _open(self) -> bool:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout_s
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"IEC 104 connection failed to {self.host}:{self.port}: {e!r}")
            self._conn.on_error(repr(e))
            self._emit_event(ConnectionEvent.FAILED)
            return False

        self._conn.on_connected()
        self._closed_reported = False
        logger.info(f"IEC 104 connected to {self.host}:{self.port}")
        self._emit_event(ConnectionEvent.OPENED)

        self._tasks = [
            asyncio.ensure_future(self._receive_loop()),
            asyncio.ensure_future(self._keep_alive_loop()),
        ]
        return True

    async def _close(self) -> bool:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing socket: {e!r}")
            self._writer = None
            self._report_closed()
        self._conn.disconnect()
        return True

    def _report_closed(self):
        if not self._closed_reported:
            self._closed_reported = True
            logger.info(f"IEC 104 disconnected from {self.host}:{self.port}")
            self._emit_event(ConnectionEvent.CLOSED)

    async def _write_apdu(self, apdu: APDU):
        if self._writer is None:
            raise SessionError("Not connected")
        data = apdu.encode()
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            self._conn.on_error(repr(e))
            raise SessionError(f"Write failed: {e!r}") from e
        self.stats['frames_sent'] += 1
        self._emit_raw(data, True)

    async def _send_u(self, function: UFrameFunction) -> bool:
        await self._write_apdu(APDU.create_u(function))
        self._conn.on_frame_sent()
        return True

    async def _send_asdu(self, asdu: ASDU) -> bool:
        if not self._conn.can_send():
            self.stats['send_refused'] += 1
            logger.warning(f"Send refused: {self._conn}")
            return False
        apdu = APDU.create_data(self._conn.send_sequence, self._conn.recv_sequence, asdu)
        await self._write_apdu(apdu)
        self._conn.on_i_frame_sent()
        return True

    async def _receive_loop(self):
        try:
            while True:
                chunk = await self._reader.read(1024)
                if not chunk:
                    break
                self._rx_buffer.extend(chunk)
                await self._drain_rx_buffer()
        except asyncio.CancelledError:
            raise
        except (OSError, SessionError) as e:
            self.stats['errors'] += 1
            logger.error(f"Receive error from {self.host}:{self.port}: {e!r}")
            self._conn.on_error(repr(e))
        self._conn.disconnect()
        self._report_closed()

    async def _drain_rx_buffer(self):
        while self._rx_buffer:
            try:
                apdu, consumed = APDU.decode(bytes(self._rx_buffer))
            except IncompleteFrame:
                return
            except ValueError as e:
                size = complete_frame_length(self._rx_buffer)
                if size is None:
                    # Not framed: skip one byte and resync on the next 0x68
                    logger.warning(f"Invalid APDU from {self.host}: {e}")
                    self._rx_buffer.pop(0)
                    continue
                frame = bytes(self._rx_buffer[:size])
                del self._rx_buffer[:size]
                self.stats['errors'] += 1
                logger.warning(f"Dropped undecodable {size} byte APDU from {self.host}: {e}")
                self._emit_raw(frame, False)
                await self._account_dropped_frame(frame)
                continue

            frame = bytes(self._rx_buffer[:consumed])
            del self._rx_buffer[:consumed]
            self.stats['frames_received'] += 1
            self._emit_raw(frame, False)
            await self._handle_apdu(apdu)

    async def _account_dropped_frame(self, frame: bytes):
        """Keep N(S)/N(R) in step for an I frame whose ASDU was discarded"""
        try:
            apci = APCI.decode(frame[2:6])
        except ValueError:
            return
        if apci.frame_type == APDUType.I_FRAME:
            await self._handle_apdu(APDU(apci))

    async def _handle_apdu(self, apdu: APDU):
        apci = apdu.apci
        if apci.frame_type == APDUType.U_FRAME:
            if apci.u_function == UFrameFunction.STARTDT_CON:
                self._conn.on_startdt()
                self._startdt_confirmed.set()
                self._emit_event(ConnectionEvent.STARTDT_CON_RECEIVED)
            elif apci.u_function == UFrameFunction.STOPDT_CON:
                self._conn.on_stopdt()
                self._emit_event(ConnectionEvent.STOPDT_CON_RECEIVED)
            elif apci.u_function == UFrameFunction.TESTFR_ACT:
                self._conn.on_testfr_act()
                await self._send_u(UFrameFunction.TESTFR_CON)
            elif apci.u_function == UFrameFunction.TESTFR_CON:
                self._conn.on_testfr_con()

        elif apci.frame_type == APDUType.S_FRAME:
            self._conn.on_ack(apci.receive_sequence)

        else:
            ack_due = self._conn.on_i_frame_received(apci.send_sequence,
                                                     apci.receive_sequence)
            if ack_due:
                await self._write_apdu(APDU.create_supervisory(self._conn.recv_sequence))
                self._conn.on_acknowledge_sent()
            if apdu.asdu is not None:
                self._dispatch_asdu(apdu.asdu)

    def _dispatch_asdu(self, asdu: ASDU):
        logger.debug(f"ASDU {type_name(asdu.type_id)} cot={cause_name(asdu.cause)} "
                     f"objects={len(asdu.objects)}")
        if self._on_application_message is None:
            return
        for obj in asdu.objects:
            message = ApplicationMessage(asdu.type_id, asdu.cause, obj.ioa,
                                         asdu.negative, obj.value,
                                         asdu.common_address, obj.quality)
            try:
                self._on_application_message(message)
            except Exception:
                logger.exception(f"Application message handler failed for {message}")

    async def _keep_alive_loop(self):
        try:
            while self._writer is not None:
                await asyncio.sleep(1.0)
                if self._conn.need_testfr(self.t3_s):
                    await self._send_u(UFrameFunction.TESTFR_ACT)
                # Flush a pending acknowledgement when the peer went quiet
                if self._conn.unacked_received and self._conn.is_active():
                    await self._write_apdu(APDU.create_supervisory(self._conn.recv_sequence))
                    self._conn.on_acknowledge_sent()
        except SessionError as e:
            logger.error(f"Keep-alive stopped: {e}")

    # ------------------------------------------------------- callbacks

    def _emit_event(self, event: ConnectionEvent):
        if self._on_connection_event is None:
            return
        try:
            self._on_connection_event(event)
        except Exception:
            logger.exception(f"Connection handler failed for {event}")

    def _emit_raw(self, data: bytes, sent: bool):
        if self._on_raw_frame is None:
            return
        try:
            self._on_raw_frame(data, sent)
        except Exception:
            logger.exception("Raw frame handler failed")
