"""
IEC 60870-5-104 Message Structures and Type Codes
==================================================

APDU (Application Protocol Data Unit): IEC 104 message frame
    - Start byte 0x68 and length octet
    - APCI (4 control octets): frame format and sequence numbers
    - ASDU (payload, I frames only): type, cause, addresses, objects

APCI control octets:
    - I frame (Information): bit 0 of octet 1 = 0, SSN and RSN present
    - S frame (Supervisory): octet 1 = 0x01, only RSN (acknowledgement)
    - U frame (Unnumbered): octet 1 bits 0-1 = 11, STARTDT/STOPDT/TESTFR

ASDU header (CS104 default sizes):
    Type ID (1) | VSQ (1) | COT (1) + originator (1) | Common address (2)
    followed by information objects with a 3 octet IOA each.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple
import struct


START_BYTE = 0x68
MAX_APDU_LENGTH = 253
IOA_MAX = 0xFFFFFF


class TypeID(IntEnum):
    """IEC 60870-5-101/104 type identification"""

    # Process information in monitor direction
    M_SP_NA_1 = 1      # Single point information
    M_DP_NA_1 = 3      # Double point information
    M_ST_NA_1 = 5      # Step position information
    M_BO_NA_1 = 7      # Bitstring of 32 bits
    M_ME_NA_1 = 9      # Measured value, normalized
    M_ME_NB_1 = 11     # Measured value, scaled
    M_ME_NC_1 = 13     # Measured value, short floating point
    M_IT_NA_1 = 15     # Integrated totals
    M_PS_NA_1 = 20     # Packed single point with status change detection
    M_ME_ND_1 = 21     # Measured value, normalized without quality

    # Same with CP56Time2a time tag
    M_SP_TB_1 = 30
    M_DP_TB_1 = 31
    M_ST_TB_1 = 32
    M_BO_TB_1 = 33
    M_ME_TD_1 = 34
    M_ME_TE_1 = 35
    M_ME_TF_1 = 36
    M_IT_TB_1 = 37

    # Process information in control direction
    C_SC_NA_1 = 45     # Single command
    C_DC_NA_1 = 46     # Double command
    C_RC_NA_1 = 47     # Regulating step command
    C_SE_NA_1 = 48     # Set point, normalized
    C_SE_NB_1 = 49     # Set point, scaled
    C_SE_NC_1 = 50     # Set point, short floating point
    C_BO_NA_1 = 51     # Bitstring command
    C_SC_TA_1 = 58     # Single command with time tag

    # System information
    M_EI_NA_1 = 70     # End of initialization
    C_IC_NA_1 = 100    # (General) interrogation command
    C_CI_NA_1 = 101    # Counter interrogation
    C_RD_NA_1 = 102    # Read command
    C_CS_NA_1 = 103    # Clock synchronization command
    C_RP_NA_1 = 105    # Reset process command


class CauseOfTransmission(IntEnum):
    """Cause Of Transmission codes (6 bit)"""

    PERIODIC = 1
    BACKGROUND_SCAN = 2
    SPONTANEOUS = 3
    INITIALIZED = 4
    REQUEST = 5
    ACTIVATION = 6
    ACTIVATION_CON = 7
    DEACTIVATION = 8
    DEACTIVATION_CON = 9
    ACTIVATION_TERMINATION = 10
    RETURN_INFO_REMOTE = 11
    RETURN_INFO_LOCAL = 12
    FILE_TRANSFER = 13
    INTERROGATED_BY_STATION = 20
    UNKNOWN_TYPE_ID = 44
    UNKNOWN_COT = 45
    UNKNOWN_CA = 46
    UNKNOWN_IOA = 47


class QualifierOfInterrogation(IntEnum):
    STATION = 20


class DoublePointValue(IntEnum):
    """Decoded DIQ state"""
    INTERMEDIATE = 0
    OFF = 1
    ON = 2
    INDETERMINATE = 3


# Octets per information element, IOA excluded
ELEMENT_SIZES: Dict[int, int] = {
    TypeID.M_SP_NA_1: 1,
    TypeID.M_DP_NA_1: 1,
    TypeID.M_ST_NA_1: 2,
    TypeID.M_BO_NA_1: 5,
    TypeID.M_ME_NA_1: 3,
    TypeID.M_ME_NB_1: 3,
    TypeID.M_ME_NC_1: 5,
    TypeID.M_IT_NA_1: 5,
    TypeID.M_PS_NA_1: 5,
    TypeID.M_ME_ND_1: 2,
    TypeID.M_SP_TB_1: 8,
    TypeID.M_DP_TB_1: 8,
    TypeID.M_ST_TB_1: 9,
    TypeID.M_BO_TB_1: 12,
    TypeID.M_ME_TD_1: 10,
    TypeID.M_ME_TE_1: 10,
    TypeID.M_ME_TF_1: 12,
    TypeID.M_IT_TB_1: 12,
    TypeID.C_SC_NA_1: 1,
    TypeID.C_DC_NA_1: 1,
    TypeID.C_RC_NA_1: 1,
    TypeID.C_SE_NA_1: 3,
    TypeID.C_SE_NB_1: 3,
    TypeID.C_SE_NC_1: 5,
    TypeID.C_BO_NA_1: 4,
    TypeID.C_SC_TA_1: 8,
    TypeID.M_EI_NA_1: 1,
    TypeID.C_IC_NA_1: 1,
    TypeID.C_CI_NA_1: 1,
    TypeID.C_RD_NA_1: 0,
    TypeID.C_CS_NA_1: 7,
    TypeID.C_RP_NA_1: 1,
}

TIME_TAGGED = {
    TypeID.M_SP_TB_1, TypeID.M_DP_TB_1, TypeID.M_ST_TB_1, TypeID.M_BO_TB_1,
    TypeID.M_ME_TD_1, TypeID.M_ME_TE_1, TypeID.M_ME_TF_1, TypeID.M_IT_TB_1,
    TypeID.C_SC_TA_1,
}


class IncompleteFrame(ValueError):
    """Raised when the buffer does not yet hold a whole APDU"""


def type_name(type_id: int) -> str:
    try:
        return TypeID(type_id).name
    except ValueError:
        return f"TYPE_{type_id}"


def cause_name(cause: int) -> str:
    try:
        return CauseOfTransmission(cause).name
    except ValueError:
        return f"COT_{cause}"


@dataclass
class InformationObject:
    """One information object: address, decoded value and quality octet"""
    ioa: int
    value: Any = None
    quality: int = 0x00  # IV/NT/SB/BL bits, 0x00 = good
    timestamp: Optional[datetime] = None


def decode_cp56time2a(data: bytes) -> Optional[datetime]:
    """Decode a 7 octet CP56Time2a, None if the fields are out of range"""
    millis = data[0] | (data[1] << 8)
    try:
        return datetime(
            2000 + (data[6] & 0x7F),
            data[5] & 0x0F,
            data[4] & 0x1F,
            data[3] & 0x1F,
            data[2] & 0x3F,
            millis // 1000,
            (millis % 1000) * 1000,
        )
    except ValueError:
        return None


def _decode_element(type_id: int, data: bytes) -> Tuple[Any, int]:
    """Decode the value part of one element. Returns (value, quality)."""
    base = type_id
    if type_id in TIME_TAGGED:
        data = data[:-7]
        base = {
            TypeID.M_SP_TB_1: TypeID.M_SP_NA_1,
            TypeID.M_DP_TB_1: TypeID.M_DP_NA_1,
            TypeID.M_ST_TB_1: TypeID.M_ST_NA_1,
            TypeID.M_BO_TB_1: TypeID.M_BO_NA_1,
            TypeID.M_ME_TD_1: TypeID.M_ME_NA_1,
            TypeID.M_ME_TE_1: TypeID.M_ME_NB_1,
            TypeID.M_ME_TF_1: TypeID.M_ME_NC_1,
            TypeID.M_IT_TB_1: TypeID.M_IT_NA_1,
            TypeID.C_SC_TA_1: TypeID.C_SC_NA_1,
        }[type_id]

    if base == TypeID.M_SP_NA_1:
        return bool(data[0] & 0x01), data[0] & 0xF0
    if base == TypeID.M_DP_NA_1:
        return DoublePointValue(data[0] & 0x03), data[0] & 0xF0
    if base == TypeID.M_ST_NA_1:
        step = data[0] & 0x7F
        if step & 0x40:
            step -= 0x80
        return step, data[1]
    if base in (TypeID.M_BO_NA_1, TypeID.M_PS_NA_1):
        return struct.unpack('<I', data[0:4])[0], data[4]
    if base == TypeID.M_ME_NA_1:
        return struct.unpack('<h', data[0:2])[0] / 32768.0, data[2]
    if base == TypeID.M_ME_ND_1:
        return struct.unpack('<h', data[0:2])[0] / 32768.0, 0
    if base == TypeID.M_ME_NB_1:
        return struct.unpack('<h', data[0:2])[0], data[2]
    if base == TypeID.M_ME_NC_1:
        return struct.unpack('<f', data[0:4])[0], data[4]
    if base == TypeID.M_IT_NA_1:
        return struct.unpack('<i', data[0:4])[0], data[4]
    if base == TypeID.C_SC_NA_1:
        # SCO: bit 0 state, bits 2-6 qualifier, bit 7 select
        return bool(data[0] & 0x01), data[0] & 0xFE
    if base in (TypeID.C_DC_NA_1, TypeID.C_RC_NA_1):
        return data[0] & 0x03, data[0] & 0xFC
    if base in (TypeID.C_IC_NA_1, TypeID.C_CI_NA_1, TypeID.M_EI_NA_1,
                TypeID.C_RP_NA_1):
        return data[0], 0
    return bytes(data), 0


def _encode_element(type_id: int, obj: InformationObject) -> bytes:
    """Encode the value part of one element (non time-tagged types only)"""
    if type_id == TypeID.M_SP_NA_1:
        return bytes([(obj.quality & 0xF0) | (1 if obj.value else 0)])
    if type_id == TypeID.M_DP_NA_1:
        return bytes([(obj.quality & 0xF0) | (int(obj.value) & 0x03)])
    if type_id == TypeID.M_BO_NA_1:
        return struct.pack('<IB', int(obj.value) & 0xFFFFFFFF, obj.quality)
    if type_id == TypeID.M_ME_NA_1:
        raw = max(-32768, min(32767, int(round(float(obj.value) * 32768.0))))
        return struct.pack('<hB', raw, obj.quality)
    if type_id == TypeID.M_ME_NB_1:
        return struct.pack('<hB', int(obj.value), obj.quality)
    if type_id == TypeID.M_ME_NC_1:
        return struct.pack('<fB', float(obj.value), obj.quality)
    if type_id == TypeID.C_SC_NA_1:
        # quality carries the select bit and qualifier for commands
        return bytes([(obj.quality & 0xFE) | (1 if obj.value else 0)])
    if type_id in (TypeID.C_IC_NA_1, TypeID.M_EI_NA_1):
        return bytes([int(obj.value) & 0xFF])
    raise ValueError(f"Encoding not supported for {type_name(type_id)}")


@dataclass
class ASDU:
    """Application Service Data Unit"""
    type_id: int
    cause: int
    negative: bool = False
    test: bool = False
    originator: int = 0
    common_address: int = 1
    objects: List[InformationObject] = field(default_factory=list)

    def encode(self) -> bytes:
        """Encode ASDU to bytes (one IOA per object, SQ=0)"""
        if len(self.objects) > 0x7F:
            raise ValueError("Too many information objects for one ASDU")

        result = bytearray()
        result.append(int(self.type_id))
        result.append(len(self.objects) & 0x7F)

        # COT octet: bits 0-5 cause, bit 6 P/N, bit 7 test
        cot = int(self.cause) & 0x3F
        if self.negative:
            cot |= 0x40
        if self.test:
            cot |= 0x80
        result.append(cot)
        result.append(self.originator & 0xFF)
        result.extend(struct.pack('<H', self.common_address & 0xFFFF))

        for obj in self.objects:
            if not 0 <= obj.ioa <= IOA_MAX:
                raise ValueError(f"IOA {obj.ioa} outside 24-bit range")
            result.extend(obj.ioa.to_bytes(3, 'little'))
            result.extend(_encode_element(self.type_id, obj))

        return bytes(result)

    @staticmethod
    def decode(data: bytes) -> 'ASDU':
        """Decode ASDU from bytes"""
        if len(data) < 6:
            raise ValueError("ASDU too short")

        type_id = data[0]
        vsq = data[1]
        count = vsq & 0x7F
        sequence = bool(vsq & 0x80)
        cot = data[2]
        asdu = ASDU(
            type_id=type_id,
            cause=cot & 0x3F,
            negative=bool(cot & 0x40),
            test=bool(cot & 0x80),
            originator=data[3],
            common_address=data[4] | (data[5] << 8),
        )
        if count == 0:
            return asdu

        payload = data[6:]
        size = ELEMENT_SIZES.get(type_id)
        if size is None:
            # Unknown type: derive the element size from the frame length
            if sequence:
                size = (len(payload) - 3) // count
            else:
                size = len(payload) // count - 3
            if size < 0:
                raise ValueError(f"Cannot split {type_name(type_id)} payload")

        needed = 3 + size * count if sequence else (3 + size) * count
        if len(payload) < needed:
            raise ValueError(f"ASDU payload truncated ({len(payload)} < {needed})")

        pos = 0
        base_ioa = 0
        for i in range(count):
            if sequence:
                if i == 0:
                    base_ioa = int.from_bytes(payload[0:3], 'little')
                    pos = 3
                ioa = (base_ioa + i) & IOA_MAX
            else:
                ioa = int.from_bytes(payload[pos:pos + 3], 'little')
                pos += 3

            element = payload[pos:pos + size]
            pos += size

            if type_id in ELEMENT_SIZES:
                value, quality = _decode_element(type_id, element)
            else:
                value, quality = bytes(element), 0
            timestamp = None
            if type_id in TIME_TAGGED:
                timestamp = decode_cp56time2a(element[-7:])
            asdu.objects.append(InformationObject(ioa, value, quality, timestamp))

        return asdu


class APDUType(IntEnum):
    """APDU frame format"""
    I_FRAME = 0
    S_FRAME = 1
    U_FRAME = 2


class UFrameFunction(IntEnum):
    """U frame control octet values"""
    STARTDT_ACT = 0x07
    STARTDT_CON = 0x0B
    STOPDT_ACT = 0x13
    STOPDT_CON = 0x23
    TESTFR_ACT = 0x43
    TESTFR_CON = 0x83


@dataclass
class APCI:
    """Application Protocol Control Information (4 control octets)"""
    frame_type: APDUType
    send_sequence: int = 0      # I frames (15 bits)
    receive_sequence: int = 0   # I, S frames (15 bits)
    u_function: Optional[UFrameFunction] = None

    def encode(self) -> bytes:
        if self.frame_type == APDUType.I_FRAME:
            ssn = (self.send_sequence & 0x7FFF) << 1
            rsn = (self.receive_sequence & 0x7FFF) << 1
            return struct.pack('<HH', ssn, rsn)

        if self.frame_type == APDUType.S_FRAME:
            rsn = (self.receive_sequence & 0x7FFF) << 1
            return struct.pack('<BBH', 0x01, 0x00, rsn)

        if self.frame_type == APDUType.U_FRAME:
            return bytes([int(self.u_function), 0x00, 0x00, 0x00])

        raise ValueError(f"Unknown frame type {self.frame_type}")

    @staticmethod
    def decode(data: bytes) -> 'APCI':
        if len(data) < 4:
            raise ValueError("APCI too short")

        b0 = data[0]
        if b0 & 0x01 == 0:
            ssn, rsn = struct.unpack('<HH', data[0:4])
            return APCI(APDUType.I_FRAME, ssn >> 1, rsn >> 1)

        if b0 & 0x03 == 0x01:
            rsn = struct.unpack('<H', data[2:4])[0]
            return APCI(APDUType.S_FRAME, 0, rsn >> 1)

        try:
            function = UFrameFunction(b0)
        except ValueError:
            raise ValueError(f"Invalid U frame control octet: 0x{b0:02x}")
        return APCI(APDUType.U_FRAME, u_function=function)


def complete_frame_length(data: bytes) -> Optional[int]:
    """Size of the well-framed APDU fully buffered at the head of data, else None"""
    if len(data) < 6 or data[0] != START_BYTE or data[1] < 4:
        return None
    if len(data) < 2 + data[1]:
        return None
    return 2 + data[1]


@dataclass
class APDU:
    """Application Protocol Data Unit (complete message)"""
    apci: APCI
    asdu: Optional[ASDU] = None

    def encode(self) -> bytes:
        asdu_bytes = self.asdu.encode() if self.asdu else b''
        length = len(asdu_bytes) + 4
        if length > MAX_APDU_LENGTH:
            raise ValueError(f"APDU too long ({length} > {MAX_APDU_LENGTH})")

        return bytes([START_BYTE, length]) + self.apci.encode() + asdu_bytes

    @staticmethod
    def decode(data: bytes) -> Tuple['APDU', int]:
        """Decode one APDU from the head of data, return it and consumed bytes"""
        if len(data) < 2:
            raise IncompleteFrame("APDU too short")

        if data[0] != START_BYTE:
            raise ValueError(f"Invalid start byte: 0x{data[0]:02x}")

        length = data[1]
        if length < 4:
            raise ValueError(f"Invalid APDU length: {length}")
        if len(data) < 2 + length:
            raise IncompleteFrame("Incomplete APDU")

        apci = APCI.decode(data[2:6])
        asdu = None
        if length > 4:
            if apci.frame_type != APDUType.I_FRAME:
                raise ValueError("ASDU attached to a non-I frame")
            asdu = ASDU.decode(data[6:2 + length])

        return APDU(apci, asdu), 2 + length

    @staticmethod
    def create_u(function: UFrameFunction) -> 'APDU':
        return APDU(APCI(APDUType.U_FRAME, u_function=function))

    @staticmethod
    def create_startdt_act() -> 'APDU':
        return APDU.create_u(UFrameFunction.STARTDT_ACT)

    @staticmethod
    def create_startdt_con() -> 'APDU':
        return APDU.create_u(UFrameFunction.STARTDT_CON)

    @staticmethod
    def create_stopdt_con() -> 'APDU':
        return APDU.create_u(UFrameFunction.STOPDT_CON)

    @staticmethod
    def create_testfr_act() -> 'APDU':
        return APDU.create_u(UFrameFunction.TESTFR_ACT)

    @staticmethod
    def create_testfr_con() -> 'APDU':
        return APDU.create_u(UFrameFunction.TESTFR_CON)

    @staticmethod
    def create_data(send_seq: int, recv_seq: int, asdu: ASDU) -> 'APDU':
        """Create I frame with data"""
        return APDU(APCI(APDUType.I_FRAME, send_seq, recv_seq), asdu)

    @staticmethod
    def create_supervisory(recv_seq: int) -> 'APDU':
        """Create S frame (acknowledgement)"""
        return APDU(APCI(APDUType.S_FRAME, 0, recv_seq))


def single_command_asdu(cause: int, common_address: int, ioa: int, state: bool,
                        originator: int = 0, select: bool = False,
                        qualifier: int = 0) -> ASDU:
    """C_SC_NA_1 with one object"""
    sco_flags = (0x80 if select else 0x00) | ((qualifier & 0x1F) << 2)
    return ASDU(
        TypeID.C_SC_NA_1, cause,
        originator=originator,
        common_address=common_address,
        objects=[InformationObject(ioa, bool(state), sco_flags)],
    )


def interrogation_asdu(cause: int, common_address: int,
                       qualifier: int = QualifierOfInterrogation.STATION,
                       originator: int = 0) -> ASDU:
    """C_IC_NA_1, IOA 0"""
    return ASDU(
        TypeID.C_IC_NA_1, cause,
        originator=originator,
        common_address=common_address,
        objects=[InformationObject(0, qualifier)],
    )
