"""
IEC 60870-5-104 Connection State Machine
========================================

Tracks the lifecycle and flow control of one IEC 104 link. Used by the
controlling station session and by the lab outstation.

Connection states:
    IDLE - No TCP connection
    CONNECTED - TCP connected, data transfer not started
    STARTED - Data transfer active (STARTDT confirmed)
    STOPPED - STOPDT confirmed
    ERROR - Connection error

Flow control:
    - k: maximum number of sent I frames not yet acknowledged by the peer
    - w: acknowledge at the latest after receiving w I frames
    - Sequence numbers are 15 bit and wrap at 32768

Keep-alive:
    - Send TESTFR_ACT when nothing was sent for t3 seconds
    - Expect TESTFR_CON before the next keep-alive
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
import logging


logger = logging.getLogger(__name__)

SEQUENCE_MODULO = 0x8000


class ConnectionState(Enum):
    """IEC 104 connection states"""
    IDLE = 0
    CONNECTED = 1
    STARTED = 2
    STOPPED = 3
    ERROR = 4


@dataclass
class ConnectionStateMachine:
    """
    IEC 104 link state

    Attributes:
        remote_address: Peer TCP address, for logging
        k: Maximum unacknowledged sent I frames
        w: Received I frames after which an S frame is due
        send_sequence: Next outgoing N(S)
        recv_sequence: Next expected N(S) from peer, sent back as N(R)
        acked_sequence: Last N(R) received from peer
        unacked_received: I frames received since our last acknowledgement
    """

    remote_address: str
    k: int = 12
    w: int = 8
    state: ConnectionState = ConnectionState.IDLE
    send_sequence: int = 0
    recv_sequence: int = 0
    acked_sequence: int = 0
    unacked_received: int = 0
    testfr_active: bool = False
    last_send_time: datetime = field(default_factory=datetime.now)
    last_recv_time: datetime = field(default_factory=datetime.now)

    def on_connected(self) -> bool:
        """Handle TCP connection established"""
        if self.state in (ConnectionState.IDLE, ConnectionState.ERROR):
            self.state = ConnectionState.CONNECTED
            self.send_sequence = 0
            self.recv_sequence = 0
            self.acked_sequence = 0
            self.unacked_received = 0
            self.last_recv_time = datetime.now()
            return True
        return False

    def on_startdt(self) -> bool:
        """STARTDT_ACT accepted (outstation) or STARTDT_CON received (master)"""
        if self.state in (ConnectionState.CONNECTED, ConnectionState.STOPPED):
            self.state = ConnectionState.STARTED
            self.last_recv_time = datetime.now()
            return True
        return False

    def on_stopdt(self) -> bool:
        if self.state == ConnectionState.STARTED:
            self.state = ConnectionState.STOPPED
            self.last_recv_time = datetime.now()
            return True
        return False

    def on_testfr_act(self) -> bool:
        self.last_recv_time = datetime.now()
        return True

    def on_testfr_con(self) -> bool:
        if self.testfr_active:
            self.testfr_active = False
            self.last_recv_time = datetime.now()
            return True
        return False

    def on_ack(self, recv_sequence: int):
        """Peer acknowledged our I frames up to N(R) - 1"""
        self.acked_sequence = recv_sequence & 0x7FFF
        self.last_recv_time = datetime.now()

    def on_i_frame_received(self, send_sequence: int, recv_sequence: int) -> bool:
        """
        Account for a received I frame.

        Returns:
            True if an S frame acknowledgement is due (w reached)
        """
        if send_sequence != self.recv_sequence:
            logger.warning(f"IEC104[{self.remote_address}] sequence gap: "
                           f"expected N(S)={self.recv_sequence} got {send_sequence}")
        self.recv_sequence = (send_sequence + 1) % SEQUENCE_MODULO
        self.on_ack(recv_sequence)
        self.unacked_received += 1
        return self.unacked_received >= self.w

    def on_acknowledge_sent(self):
        """Our N(R) went out in an S or I frame"""
        self.unacked_received = 0

    def on_i_frame_sent(self):
        self.send_sequence = (self.send_sequence + 1) % SEQUENCE_MODULO
        self.unacked_received = 0
        self.last_send_time = datetime.now()

    def on_frame_sent(self):
        self.last_send_time = datetime.now()

    def outstanding(self) -> int:
        """Sent I frames the peer has not acknowledged yet"""
        return (self.send_sequence - self.acked_sequence) % SEQUENCE_MODULO

    def can_send(self) -> bool:
        """I frame may be sent now (data transfer active, k window open)"""
        return self.is_active() and self.outstanding() < self.k

    def is_active(self) -> bool:
        return self.state == ConnectionState.STARTED

    def is_connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.STARTED,
                              ConnectionState.STOPPED)

    def need_testfr(self, keep_alive_s: float = 20) -> bool:
        """Check (and arm) TESTFR_ACT if the link was idle for t3"""
        if not self.is_connected() or self.testfr_active:
            return False
        elapsed = (datetime.now() - self.last_send_time).total_seconds()
        if elapsed > keep_alive_s:
            self.testfr_active = True
            return True
        return False

    def on_error(self, error: str):
        self.state = ConnectionState.ERROR
        logger.error(f"IEC104[{self.remote_address}] connection error: {error}")

    def disconnect(self):
        self.state = ConnectionState.IDLE
        self.testfr_active = False

    def __str__(self):
        return (f"IEC104[{self.remote_address}] state={self.state.name} "
                f"tx={self.send_sequence} rx={self.recv_sequence} "
                f"outstanding={self.outstanding()} testfr={self.testfr_active}")
