"""
IEC 60870-5-104 Protocol Implementation
========================================

IEC 60870-5-104 is the international standard for telecontrol over TCP/IP,
used by power utilities to reach substation RTUs and outstations.

This package implements:
    - APCI framing (I, S and U frames) and ASDU encoding/decoding
    - Type identifications and Causes of Transmission
    - Connection state machine with k/w flow control
    - A blocking controlling-station session running its own event loop
    - A lab outstation for rehearsals and integration tests

The session delivers every decoded information object to a single
application message handler, on the session thread.
"""

from protocols.iec104.messages import (
    APDU, ASDU, TypeID, CauseOfTransmission, DoublePointValue,
    InformationObject, QualifierOfInterrogation,
)
from protocols.iec104.session import (
    IEC104Session, ApplicationMessage, ConnectionEvent, SessionError,
)
from protocols.iec104.server import IEC104Server, CommandPolicy

__all__ = [
    'APDU',
    'ASDU',
    'TypeID',
    'CauseOfTransmission',
    'DoublePointValue',
    'InformationObject',
    'QualifierOfInterrogation',
    'IEC104Session',
    'ApplicationMessage',
    'ConnectionEvent',
    'SessionError',
    'IEC104Server',
    'CommandPolicy',
]
