"""
IEC 60870-5-104 Lab Outstation
==============================

Asynchronous TCP outstation used to exercise the reconnaissance and command
tools against a known point list (integration tests, bench rehearsals).

Features:
    - Multi-client support with one state machine per connection
    - STARTDT/STOPDT/TESTFR handling
    - General interrogation: ACT_CON, point reports (COT 20), ACT_TERM
    - Single commands with per-IOA policy (accept, reject, no answer)
    - Unknown type / cause / common address / IOA answered negatively
    - Spontaneous reports to every started client

Usage:
    server = IEC104Server(host='127.0.0.1', port=0)
    server.add_point(100, TypeID.M_SP_NA_1, True)
    server.add_command_point(100)
    await server.start()
    ...
    await server.stop()

Standard IEC 104 port: 2404/TCP
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from protocols.iec104.messages import (
    APDU, ASDU, APDUType, TypeID, CauseOfTransmission, InformationObject,
    UFrameFunction, IncompleteFrame, complete_frame_length, type_name,
)
from protocols.iec104.connection import ConnectionStateMachine


logger = logging.getLogger(__name__)

MAX_OBJECTS_PER_ASDU = 20


@dataclass
class StationPoint:
    """One monitored point reported on interrogation"""
    ioa: int
    type_id: TypeID
    value: Any
    quality: int = 0x00


class CommandPolicy(Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    SILENT = "silent"


@dataclass
class _Client:
    conn: ConnectionStateMachine
    writer: asyncio.StreamWriter
    rx_buffer: bytearray = field(default_factory=bytearray)


class IEC104Server:
    """
    IEC 60870-5-104 outstation

    Answers interrogation and single commands for the configured points.
    """

    def __init__(self, host: str = '127.0.0.1', port: int = 2404,
                 common_address: int = 1, name: str = 'outstation',
                 log_level=logging.INFO):
        """
        Args:
            host: Bind address
            port: TCP port (0 picks a free one, see self.port after start)
            common_address: Station common address
            name: Label for log records
            log_level: Logging level
        """
        self.host = host
        self.port = port
        self.common_address = common_address
        self.name = name

        self.logger = logging.getLogger(f"IEC104[{name}]")
        self.logger.setLevel(log_level)

        self.server: Optional[asyncio.AbstractServer] = None
        self.running = False
        self.connections: Dict[str, _Client] = {}

        # Station database
        self.points: List[StationPoint] = []
        self.command_points: Dict[int, CommandPolicy] = {}
        self.control_callbacks: Dict[int, Callable] = {}
        self.terminate_interrogation = True

        # Observations
        self.commands_received: List[Tuple[int, bool]] = []
        self.interrogations = 0

        self.keep_alive_s = 20
        self.max_clients = 5

    # ------------------------------------------------- configuration

    def add_point(self, ioa: int, type_id: TypeID, value: Any, quality: int = 0x00):
        """Add a point to the interrogation response (order preserved)"""
        self.points.append(StationPoint(ioa, type_id, value, quality))

    def add_command_point(self, ioa: int, policy: CommandPolicy = CommandPolicy.ACCEPT):
        self.command_points[ioa] = policy

    def register_control_callback(self, ioa: int, callback: Callable):
        """Callback invoked with the commanded state after a positive ACT_CON"""
        self.control_callbacks[ioa] = callback

    # ---------------------------------------------------- lifecycle

    async def start(self):
        self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.running = True
        addr = self.server.sockets[0].getsockname()
        self.port = addr[1]
        self.logger.info(f"IEC 104 outstation listening on {addr[0]}:{addr[1]}")

    async def stop(self):
        self.running = False
        for client in list(self.connections.values()):
            client.conn.disconnect()
            client.writer.close()
        if self.server:
            self.server.close()
            await self.server.wait_closed()
        self.logger.info("IEC 104 outstation stopped")

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter):
        addr = writer.get_extra_info('peername')
        addr_str = f"{addr[0]}:{addr[1]}"

        if len(self.connections) >= self.max_clients:
            self.logger.warning(f"Connection rejected from {addr_str}: max clients reached")
            writer.close()
            return

        self.logger.info(f"Client connected: {addr_str}")
        client = _Client(ConnectionStateMachine(addr_str), writer)
        client.conn.on_connected()
        self.connections[addr_str] = client

        try:
            while self.running and client.conn.is_connected():
                try:
                    data = await asyncio.wait_for(reader.read(1024), timeout=self.keep_alive_s)
                except asyncio.TimeoutError:
                    if client.conn.need_testfr(self.keep_alive_s):
                        await self._send(client, APDU.create_testfr_act())
                    continue
                if not data:
                    break
                client.rx_buffer.extend(data)
                await self._process_buffer(client)
        except (OSError, ValueError) as e:
            client.conn.on_error(str(e))
        finally:
            self.logger.info(f"Client disconnected: {addr_str}")
            client.conn.disconnect()
            self.connections.pop(addr_str, None)
            writer.close()

    async def _process_buffer(self, client: _Client):
        while client.rx_buffer:
            try:
                apdu, consumed = APDU.decode(bytes(client.rx_buffer))
            except IncompleteFrame:
                return
            except ValueError as e:
                self.logger.warning(f"Invalid APDU from {client.conn.remote_address}: {e}")
                size = complete_frame_length(client.rx_buffer)
                del client.rx_buffer[:size or 1]
                continue
            del client.rx_buffer[:consumed]
            await self._handle_apdu(client, apdu)

    async def _handle_apdu(self, client: _Client, apdu: APDU):
        conn = client.conn
        apci = apdu.apci

        if apci.frame_type == APDUType.U_FRAME:
            if apci.u_function == UFrameFunction.STARTDT_ACT:
                conn.on_startdt()
                await self._send(client, APDU.create_startdt_con())
                self.logger.info(f"Client {conn.remote_address} started data transfer")
            elif apci.u_function == UFrameFunction.STOPDT_ACT:
                conn.on_stopdt()
                await self._send(client, APDU.create_stopdt_con())
            elif apci.u_function == UFrameFunction.TESTFR_ACT:
                conn.on_testfr_act()
                await self._send(client, APDU.create_testfr_con())
            elif apci.u_function == UFrameFunction.TESTFR_CON:
                conn.on_testfr_con()

        elif apci.frame_type == APDUType.S_FRAME:
            conn.on_ack(apci.receive_sequence)

        else:
            conn.on_i_frame_received(apci.send_sequence, apci.receive_sequence)
            # Acknowledge every I frame
            await self._send(client, APDU.create_supervisory(conn.recv_sequence))
            conn.on_acknowledge_sent()
            if apdu.asdu is not None and conn.is_active():
                await self._handle_asdu(client, apdu.asdu)

    async def _handle_asdu(self, client: _Client, asdu: ASDU):
        if asdu.common_address != self.common_address:
            await self._mirror(client, asdu, CauseOfTransmission.UNKNOWN_CA)
        elif asdu.type_id == TypeID.C_IC_NA_1:
            await self._interrogation(client, asdu)
        elif asdu.type_id == TypeID.C_SC_NA_1:
            await self._single_command(client, asdu)
        else:
            self.logger.info(f"Unsupported {type_name(asdu.type_id)} from {client.conn.remote_address}")
            await self._mirror(client, asdu, CauseOfTransmission.UNKNOWN_TYPE_ID)

    async def _interrogation(self, client: _Client, asdu: ASDU):
        if asdu.cause != CauseOfTransmission.ACTIVATION:
            await self._mirror(client, asdu, CauseOfTransmission.UNKNOWN_COT)
            return

        self.interrogations += 1
        self.logger.info(f"Interrogation from {client.conn.remote_address}")
        await self._mirror(client, asdu, CauseOfTransmission.ACTIVATION_CON, negative=False)

        # Group consecutive points of the same type into one ASDU
        batch: List[StationPoint] = []
        for point in self.points:
            if batch and (point.type_id != batch[0].type_id
                          or len(batch) >= MAX_OBJECTS_PER_ASDU):
                await self._report(client, batch)
                batch = []
            batch.append(point)
        if batch:
            await self._report(client, batch)

        if self.terminate_interrogation:
            await self._mirror(client, asdu, CauseOfTransmission.ACTIVATION_TERMINATION,
                               negative=False)

    async def _report(self, client: _Client, batch: List[StationPoint]):
        objects = [InformationObject(p.ioa, p.value, p.quality) for p in batch]
        report = ASDU(batch[0].type_id, CauseOfTransmission.INTERROGATED_BY_STATION,
                      common_address=self.common_address, objects=objects)
        await self._send_asdu(client, report)

    async def _single_command(self, client: _Client, asdu: ASDU):
        if asdu.cause != CauseOfTransmission.ACTIVATION:
            await self._mirror(client, asdu, CauseOfTransmission.UNKNOWN_COT)
            return

        for obj in asdu.objects:
            state = bool(obj.value)
            self.commands_received.append((obj.ioa, state))
            reply = ASDU(TypeID.C_SC_NA_1, CauseOfTransmission.ACTIVATION_CON,
                         originator=asdu.originator, common_address=self.common_address,
                         objects=[InformationObject(obj.ioa, state, obj.quality)])

            policy = self.command_points.get(obj.ioa)
            if policy is None:
                reply.cause = CauseOfTransmission.UNKNOWN_IOA
                reply.negative = True
                await self._send_asdu(client, reply)
                continue
            if policy == CommandPolicy.SILENT:
                continue
            if policy == CommandPolicy.REJECT:
                reply.negative = True
                await self._send_asdu(client, reply)
                continue

            await self._send_asdu(client, reply)
            await self._execute_control(obj.ioa, state)
            reply.cause = CauseOfTransmission.ACTIVATION_TERMINATION
            await self._send_asdu(client, reply)

    async def _execute_control(self, ioa: int, state: bool):
        callback = self.control_callbacks.get(ioa)
        if callback is None:
            return
        if inspect.iscoroutinefunction(callback):
            await callback(state)
        else:
            callback(state)
        self.logger.info(f"Control executed: IOA={ioa} state={'ON' if state else 'OFF'}")

    async def _mirror(self, client: _Client, asdu: ASDU, cause: int, negative: bool = True):
        objects = []
        if asdu.type_id in (TypeID.C_IC_NA_1, TypeID.C_SC_NA_1):
            objects = list(asdu.objects)
        reply = ASDU(asdu.type_id, cause, negative=negative, originator=asdu.originator,
                     common_address=asdu.common_address, objects=objects)
        await self._send_asdu(client, reply)

    async def _send_asdu(self, client: _Client, asdu: ASDU):
        conn = client.conn
        apdu = APDU.create_data(conn.send_sequence, conn.recv_sequence, asdu)
        await self._send(client, apdu)
        conn.on_i_frame_sent()

    async def _send(self, client: _Client, apdu: APDU):
        client.writer.write(apdu.encode())
        await client.writer.drain()
        client.conn.on_frame_sent()

    async def send_spontaneous(self, ioa: int, type_id: TypeID, value: Any,
                               quality: int = 0x00):
        """Report a value change (COT 3) to every started client"""
        asdu = ASDU(type_id, CauseOfTransmission.SPONTANEOUS,
                    common_address=self.common_address,
                    objects=[InformationObject(ioa, value, quality)])
        for client in list(self.connections.values()):
            if client.conn.is_active():
                await self._send_asdu(client, asdu)

    def get_status(self) -> dict:
        return {
            'running': self.running,
            'connections': len(self.connections),
            'points': len(self.points),
            'interrogations': self.interrogations,
            'commands': len(self.commands_received),
            'clients': [
                {
                    'address': addr,
                    'state': client.conn.state.name,
                    'send_seq': client.conn.send_sequence,
                    'recv_seq': client.conn.recv_sequence,
                }
                for addr, client in self.connections.items()
            ],
        }

    def __str__(self):
        return (f"IEC104Server[{self.name}]({self.host}:{self.port}) "
                f"clients={len(self.connections)} points={len(self.points)}")
