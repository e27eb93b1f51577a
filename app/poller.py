"""
SMS ingestion loop.

Each poll cycle walks every modem, and every message on it, one at a time:

    exists? -> yes: delete from modem
            -> no:  insert, then delete from modem

The existence check comes first and the modem deletion comes last, so a
failure at any step leaves the message either on the modem (retried next
cycle) or stored and still on the modem (next cycle sees it as a duplicate
and only deletes it). A message is never deleted before it is stored and
never stored twice.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from app.errors import SourceError, StoreError
from app.logging_utils import poll_cycle_context
from app.metrics import record_deletion, record_message_outcome, record_poll_cycle
from app.modem import ModemIdentity, ModemSource, TransientMessage
from app.models import MessageCandidate
from app.storage import MessageStore
from app.utils import utc_now

logger = logging.getLogger(__name__)


class MessageOutcome(str, enum.Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


@dataclass
class CycleReport:
    """What one poll cycle did."""
    started_at: datetime = field(default_factory=utc_now)
    cycle_id: Optional[str] = None
    modems: int = 0
    failed_modems: int = 0
    stored: int = 0
    duplicates: int = 0
    skipped: int = 0
    # Stored (or duplicate) messages left on the modem; retried next cycle
    deletions_failed: int = 0
    aborted: bool = False

    def add(self, outcome: MessageOutcome) -> None:
        if outcome is MessageOutcome.STORED:
            self.stored += 1
        elif outcome is MessageOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.skipped += 1


class SmsPoller:
    """
    Moves SMS messages from modems into the message store.

    Store calls run in a worker thread so the store lock never blocks the
    event loop. Modem calls are awaited outside of it.
    """

    def __init__(self, source: ModemSource, store: MessageStore, poll_interval: float):
        self.source = source
        self.store = store
        self.poll_interval = poll_interval
        self.last_report: Optional[CycleReport] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start(self) -> asyncio.Task:
        """Spawn the poll loop as a background task."""
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="sms-poller")
        return self._task

    async def stop(self) -> None:
        """Stop the loop after the in-flight cycle finishes."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run(self) -> None:
        logger.info(f"Starting SMS polling service (interval={self.poll_interval}s)")

        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception:
                # Never let one bad cycle end the loop
                logger.exception("Error polling modems")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("SMS polling service stopped")

    # =========================================================================
    # Poll cycle
    # =========================================================================

    async def poll_once(self) -> CycleReport:
        """Run a single poll cycle over every visible modem."""
        report = CycleReport()
        self.last_report = report

        with poll_cycle_context() as cycle_id:
            report.cycle_id = cycle_id
            await self._run_cycle(report)
        return report

    async def _run_cycle(self, report: CycleReport) -> None:
        try:
            modems = await self.source.list_modems()
        except SourceError as e:
            logger.error(f"Failed to get modems list: {e}")
            report.aborted = True
            record_poll_cycle("failed")
            return

        report.modems = len(modems)
        logger.debug("Polling modems", extra={"modem_count": len(modems)})

        for modem in modems:
            await self._poll_modem(modem, report)

        record_poll_cycle("ok")
        if report.stored or report.duplicates or report.skipped or report.failed_modems or report.deletions_failed:
            logger.info(
                "Poll cycle finished",
                extra={
                    "modem_count": report.modems,
                    "failed_modems": report.failed_modems,
                    "stored": report.stored,
                    "duplicates": report.duplicates,
                    "skipped": report.skipped,
                    "deletions_failed": report.deletions_failed,
                },
            )

    async def _poll_modem(self, modem: ModemIdentity, report: CycleReport) -> None:
        log_extra = {"imei": modem.imei, "modem_path": modem.connection_path}
        logger.debug("Checking modem", extra=log_extra)

        try:
            messages = await self.source.list_pending_messages(modem)
        except SourceError as e:
            logger.error(f"Failed to get messages from modem: {e}", extra=log_extra)
            report.failed_modems += 1
            return
        except Exception:
            logger.exception("Unexpected error listing messages on modem", extra=log_extra)
            report.failed_modems += 1
            return

        if not messages:
            return

        logger.info(f"Found {len(messages)} messages on modem", extra=log_extra)

        for sms in messages:
            try:
                outcome = await self.process_message(modem, sms, report)
            except Exception:
                logger.exception(
                    "Failed to process message",
                    extra={**log_extra, "message_path": sms.source_message_path},
                )
                outcome = MessageOutcome.SKIPPED
                record_message_outcome(outcome.value)
            report.add(outcome)

    async def process_message(
        self,
        modem: ModemIdentity,
        sms: TransientMessage,
        report: Optional[CycleReport] = None,
    ) -> MessageOutcome:
        """
        Store one pending SMS if new, then remove it from the modem.

        A failed modem deletion does not change the outcome; it is counted in
        `report.deletions_failed` when a report is given.

        Returns:
            STORED if a new row was written, DUPLICATE if an identical
            message was already stored, SKIPPED if the store failed and the
            message was left on the modem for the next cycle.
        """
        candidate = MessageCandidate(
            device_identity=modem.imei,
            sender=sms.sender,
            text=sms.text,
            timestamp=sms.timestamp,
        )
        log_extra = {
            "imei": modem.imei,
            "sender": sms.sender,
            "message_path": sms.source_message_path,
        }

        try:
            already_stored = await asyncio.to_thread(self.store.exists, candidate)
        except StoreError as e:
            logger.error(f"Failed to check for existing message, will retry next poll: {e}", extra=log_extra)
            record_message_outcome(MessageOutcome.SKIPPED.value)
            return MessageOutcome.SKIPPED

        if already_stored:
            logger.info(
                f"Message from {sms.sender} already exists, deleting duplicate from modem",
                extra=log_extra,
            )
            deleted = await self._delete_from_modem(modem, sms)
            if not deleted and report is not None:
                report.deletions_failed += 1
            record_message_outcome(MessageOutcome.DUPLICATE.value)
            return MessageOutcome.DUPLICATE

        try:
            await asyncio.to_thread(self.store.insert, candidate)
        except StoreError as e:
            # Deleting now would lose the message
            logger.error(f"Failed to save message, leaving it on modem: {e}", extra=log_extra)
            record_message_outcome(MessageOutcome.SKIPPED.value)
            return MessageOutcome.SKIPPED

        logger.info(f"Saved message from {sms.sender} to database", extra=log_extra)
        record_message_outcome(MessageOutcome.STORED.value)

        # Only delete from modem after successful database insert
        deleted = await self._delete_from_modem(modem, sms)
        if not deleted and report is not None:
            report.deletions_failed += 1
        return MessageOutcome.STORED

    async def _delete_from_modem(self, modem: ModemIdentity, sms: TransientMessage) -> bool:
        try:
            await self.source.delete_message(modem, sms.source_message_path)
        except SourceError as e:
            logger.error(
                f"Failed to delete message from modem: {e} - message will be reprocessed next poll",
                extra={"imei": modem.imei, "message_path": sms.source_message_path},
            )
            record_deletion(False)
            return False

        record_deletion(True)
        return True
