"""
Session bring-up shared by the command line tools.
"""

import logging
import time
from typing import Callable, Optional

from protocols.iec104.session import (
    IEC104Session, ApplicationMessage, ConnectionEvent,
)
from ioamap.config import SessionSettings
from ioamap.report import format_raw_frame


logger = logging.getLogger(__name__)

_EVENT_MESSAGES = {
    ConnectionEvent.OPENED: (logging.INFO, "[+] TCP connected"),
    ConnectionEvent.CLOSED: (logging.INFO, "[*] Connection closed"),
    ConnectionEvent.FAILED: (logging.ERROR, "[!] Connection FAILED"),
    ConnectionEvent.STARTDT_CON_RECEIVED: (logging.INFO,
                                           "[+] STARTDT_CON received, data transfer ACTIVE"),
    ConnectionEvent.STOPDT_CON_RECEIVED: (logging.INFO, "[+] STOPDT_CON received"),
}


def log_connection_event(event: ConnectionEvent):
    level, text = _EVENT_MESSAGES[event]
    logger.log(level, text)


def log_raw_frame(data: bytes, sent: bool):
    logger.debug(format_raw_frame(data, sent))


def open_session(settings: SessionSettings,
                 on_application_message: Callable[[ApplicationMessage], None],
                 on_connection_event: Optional[Callable[[ConnectionEvent], None]] = None
                 ) -> Optional[IEC104Session]:
    """
    Connect and activate data transfer.

    Connection events are always logged, then forwarded to
    on_connection_event. Raw frames are dumped only in debug mode.

    Returns:
        Active session, or None after cleaning up a failed one
    """
    def connection_event(event: ConnectionEvent):
        log_connection_event(event)
        if on_connection_event is not None:
            on_connection_event(event)

    session = IEC104Session(settings.host, settings.port)
    session.configure(originator_address=settings.originator_address,
                      common_address=settings.common_address,
                      connect_timeout_s=settings.connect_timeout_s)
    session.register_handlers(
        on_connection_event=connection_event,
        on_application_message=on_application_message,
        on_raw_frame=log_raw_frame if settings.debug else None,
    )

    logger.info(f"[*] Connecting to {settings.target} ...")
    if not session.connect():
        logger.error(f"[!] TCP connection failed (timeout after {settings.connect_timeout_s}s)")
        session.destroy()
        return None

    logger.info("[>] Sending STARTDT_ACT ...")
    if not session.start_data_transfer():
        logger.error("[!] Data transfer could not be activated")
        session.destroy()
        return None

    if settings.startdt_settle_s > 0:
        time.sleep(settings.startdt_settle_s)
    return session
