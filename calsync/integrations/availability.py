"""Publication of busy mirrored events as availability blocks."""
import logging

from sqlmodel import Session, select

from calsync.core.timeutil import Clock, utcnow
from calsync.models import BusyBlock, CalendarEvent
from calsync.models.availability import BLOCK_BUSY, BLOCK_RELEASED

logger = logging.getLogger(__name__)


def source_id_for(event: CalendarEvent) -> str:
    return f"{event.provider}_{event.calendar_id}_{event.external_event_id}"


class BusyBlockPublisher:
    """Keeps one busy block per busy mirrored event.

    Writes go through the caller's session; the caller commits.
    """

    def __init__(self, session: Session, now: Clock = utcnow):
        self.session = session
        self.now = now

    def _find(self, event: CalendarEvent) -> BusyBlock | None:
        return self.session.exec(
            select(BusyBlock).where(BusyBlock.source_id == source_id_for(event))
        ).first()

    def apply(self, event: CalendarEvent) -> BusyBlock | None:
        """Publish or release the block depending on whether the event is busy."""
        if event.is_busy:
            return self.publish(event)
        return self.release(event)

    def publish(self, event: CalendarEvent) -> BusyBlock:
        block = self._find(event)
        if block is None:
            block = BusyBlock(
                user_id=event.user_id,
                provider=event.provider,
                source_id=source_id_for(event),
                title=event.title,
                start_time=event.start_time,
                end_time=event.end_time,
            )
        block.title = event.title
        block.description = event.description
        block.start_time = event.start_time
        block.end_time = event.end_time
        block.status = BLOCK_BUSY
        block.updated = self.now()
        self.session.add(block)
        return block

    def release(self, event: CalendarEvent) -> BusyBlock | None:
        block = self._find(event)
        if block is None or block.status == BLOCK_RELEASED:
            return block
        block.status = BLOCK_RELEASED
        block.updated = self.now()
        self.session.add(block)
        logger.debug(f"Released busy block {block.source_id}")
        return block

    def busy_blocks_for_user(self, user_id: int, start, end) -> list[BusyBlock]:
        """Active blocks overlapping ``[start, end)``."""
        return list(
            self.session.exec(
                select(BusyBlock)
                .where(BusyBlock.user_id == user_id)
                .where(BusyBlock.status == BLOCK_BUSY)
                .where(BusyBlock.start_time < end)
                .where(BusyBlock.end_time > start)
                .order_by(BusyBlock.start_time)
            ).all()
        )
