import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from biosync.data.models import PunchLog
from biosync.data.repositories import PunchLogRepository
from biosync.errors import PartialWriteError

logger = logging.getLogger(__name__)


@dataclass
class WriteOutcome:
    accepted: int = 0
    inserted: int = 0
    failed: int = 0
    errors: List[PartialWriteError] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.accepted > 0


def dedupe(logs: Sequence[PunchLog]) -> Tuple[List[PunchLog], int]:
    """Drop repeats of the same (employee, device, time) key, keeping the first."""
    seen = set()
    unique: List[PunchLog] = []
    for p in logs:
        if p.dedup_key in seen:
            continue
        seen.add(p.dedup_key)
        unique.append(p)
    return unique, len(logs) - len(unique)


def chunked(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class PunchBatchWriter:
    def __init__(self, punch_repo: PunchLogRepository, batch_size: int = 500):
        self.punch_repo = punch_repo
        self.batch_size = max(1, int(batch_size))

    async def write(self, logs: Sequence[PunchLog]) -> WriteOutcome:
        out = WriteOutcome()
        if not logs:
            return out
        logger.info("inserting %d punch logs in batches of %d", len(logs), self.batch_size)
        for idx, chunk in enumerate(chunked(logs, self.batch_size)):
            try:
                inserted = await asyncio.to_thread(self.punch_repo.insert_ignore_many, chunk)
            except Exception as e:
                err = PartialWriteError(idx, len(chunk), e)
                logger.error("%s", err)
                out.errors.append(err)
                out.failed += len(chunk)
                continue
            out.accepted += len(chunk)
            out.inserted += int(inserted or 0)
            logger.info("batch %d: %d records processed, %d new", idx + 1, len(chunk), inserted or 0)
        return out
