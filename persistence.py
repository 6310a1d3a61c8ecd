import threading
import time
from typing import Any, Callable, List, Optional

from loguru import logger
from pydantic import BaseModel

from errors import AppError, StoreError, ValidationError
from griddb_client import GridDBClient, SQLStatement, StoredRecord, rows_to_records

# GridDB INTEGER is 32-bit signed
INT32_MAX = 2**31 - 1


class RecordIdGenerator:
    """Strictly increasing ids seeded from the epoch second.

    Unique within the process even when several records are written in the
    same second; ids run ahead of the clock during bursts.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            candidate = max(int(self._clock()), self._last + 1)
            if candidate > INT32_MAX:
                raise OverflowError("record id exceeds the 32-bit INTEGER column")
            self._last = candidate
            return candidate


class PersistOutcome(BaseModel):
    success: bool
    id: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    details: Any = None
    code: Optional[int] = None
    result: Any = None


def _has_rows(result: Any) -> bool:
    if isinstance(result, list) and result and isinstance(result[0], dict):
        return bool(result[0].get("results"))
    return False


class PersistenceCoordinator:
    """Writes one record per completed generation. Never retries a failed write.

    A failed persist is reported on its own; it does not touch the generation
    that produced the video.
    """

    def __init__(
        self,
        store: GridDBClient,
        id_generator: Optional[RecordIdGenerator] = None,
        verify_ids: bool = True,
        max_id_attempts: int = 5,
    ):
        self.store = store
        self.ids = id_generator or RecordIdGenerator()
        self.verify_ids = verify_ids
        self.max_id_attempts = max_id_attempts

    async def ensure_ready(self) -> dict:
        """Explicit start-up step: make sure the container exists."""
        result = await self.store.ensure_container()
        logger.info(f"GridDB container {self.store.container_name} ready")
        return result

    async def _id_taken(self, record_id: int) -> bool:
        stmt = f"SELECT id FROM {self.store.container_name} WHERE id = {int(record_id)}"
        return _has_rows(await self.store.query([SQLStatement(stmt=stmt)]))

    async def _allocate_id(self) -> int:
        for _ in range(self.max_id_attempts):
            record_id = self.ids.next_id()
            if not self.verify_ids or not await self._id_taken(record_id):
                return record_id
            logger.warning(f"record id {record_id} already present in {self.store.container_name}")
        raise StoreError(f"Could not allocate a free record id after {self.max_id_attempts} attempts")

    async def persist(self, image_url: str, prompt: str, generated_video_url: str) -> PersistOutcome:
        if not image_url or not prompt or not prompt.strip() or not generated_video_url:
            err = ValidationError(
                "Missing required fields. You need to provide an image, a prompt, and a generated video URL."
            )
            return PersistOutcome(success=False, **err.to_dict())

        try:
            await self.store.ensure_container()
            record = StoredRecord(
                id=await self._allocate_id(),
                imageURL=image_url,
                prompt=prompt,
                generatedVideoURL=generated_video_url,
            )
            logger.info(f"Saving record {record.id} to GridDB ({record.generatedVideoURL})")
            result = await self.store.insert(record)
        except AppError as e:
            logger.error(f"Saving record failed: {e.message}")
            return PersistOutcome(success=False, **e.to_dict())

        return PersistOutcome(
            success=True,
            id=record.id,
            message="Data saved successfully to GridDB",
            result=result,
        )

    async def fetch(self, record_id: Optional[int] = None, limit: int = 10) -> List[StoredRecord]:
        """One record by id, or the most recent ``limit`` records."""
        container = self.store.container_name
        if record_id is not None:
            stmt = f"SELECT * FROM {container} WHERE id = {int(record_id)}"
        else:
            stmt = f"SELECT * FROM {container} ORDER BY id DESC LIMIT {max(int(limit), 1)}"
        return rows_to_records(await self.store.query([SQLStatement(stmt=stmt)]))
