# job_store.py
import time, threading, uuid
from typing import Callable, Dict, List, Optional

from loguru import logger

from orchestrator import GenerationOrchestrator
from persistence import PersistOutcome


class Attempt:
    """One generation attempt as seen by HTTP clients polling /generations/{id}."""

    def __init__(self, attempt_id: str, orchestrator: GenerationOrchestrator, created_at: Optional[float] = None):
        self.id = attempt_id
        self.orchestrator = orchestrator
        self.persisted: Optional[PersistOutcome] = None
        self.created_at = int(time.time() if created_at is None else created_at)

    def to_dict(self) -> dict:
        o = self.orchestrator
        return {
            "id": self.id,
            "state": o.state.value,
            "status": o.status_label,
            "request_id": o.handle.request_id if o.handle else None,
            "image_url": o.asset.url if o.asset else None,
            "prompt": o.prompt,
            "video_url": o.result.video_url if o.result else None,
            "error": o.failure_reason,
            "persisted": self.persisted.model_dump(exclude={"result"}) if self.persisted else None,
            "created_at": self.created_at,
        }


class AttemptStore:
    """In-process registry of attempts. The remote job API stays authoritative.

    Finished attempts are dropped ``ttl_seconds`` after they were created; running
    ones are kept however old they are. Eviction happens on ``create``.
    """

    def __init__(self, ttl_seconds: Optional[float] = 3600, clock: Callable[[], float] = time.time):
        self._attempts: Dict[str, Attempt] = {}
        self._lock = threading.Lock()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    def create(self, orchestrator: GenerationOrchestrator) -> Attempt:
        self.evict_expired()
        attempt = Attempt(uuid.uuid4().hex, orchestrator, created_at=self._clock())
        with self._lock:
            self._attempts[attempt.id] = attempt
        return attempt

    def get(self, attempt_id: str) -> Optional[Attempt]:
        with self._lock:
            return self._attempts.get(attempt_id)

    def set_persisted(self, attempt_id: str, outcome: PersistOutcome):
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if not attempt: return
            attempt.persisted = outcome

    def discard(self, attempt_id: str) -> Optional[Attempt]:
        with self._lock:
            return self._attempts.pop(attempt_id, None)

    def evict_expired(self) -> List[str]:
        if not self.ttl_seconds:
            return []
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            expired = [
                a.id for a in self._attempts.values()
                if a.orchestrator.is_terminal and a.created_at <= cutoff
            ]
        for attempt_id in expired:
            self.discard(attempt_id)
        if expired:
            logger.debug(f"evicted {len(expired)} finished attempt(s)")
        return expired
