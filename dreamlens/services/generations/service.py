import logging

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from dreamlens.models.generation import Generation
from dreamlens.models.usage_log import UsageLog

logger = logging.getLogger(__name__)

MAX_PROMPT_STORED = 1000
MAX_ERROR_STORED = 500
MAX_HISTORY_LIMIT = 100

SELECTION_MIN_SCORE = 40
SELECTION_MAX_IMAGES = 5
SELECTION_MIN_IMAGES = 3


def prepare_images(user_images: list) -> list:
    """
    Best reference photos first: sort by quality_score, keep those above 40, at most 5.
    If filtering leaves fewer than 3, fall back to the top 3 regardless of score.
    """
    ranked = sorted(user_images, key=lambda img: img.quality_score or 0, reverse=True)
    selected = [img for img in ranked if (img.quality_score or 0) > SELECTION_MIN_SCORE][:SELECTION_MAX_IMAGES]
    if len(selected) < SELECTION_MIN_IMAGES:
        selected = ranked[:SELECTION_MIN_IMAGES]
    return selected


class GenerationService:
    def __init__(self, db: Session):
        self.db = db

    def count_generations_today(self, user_id: str) -> int:
        """Generations recorded in usage_logs since the database's CURRENT_DATE."""
        count = (
            self.db.query(func.count(UsageLog.id))
            .filter(
                UsageLog.user_id == user_id,
                UsageLog.action == "generation",
                UsageLog.created_at >= func.current_date(),
            )
            .scalar()
        )
        return int(count or 0)

    def record_usage(self, user_id: str, action: str, ip_address: str | None = None, count: int = 1) -> None:
        for _ in range(max(1, count)):
            self.db.add(UsageLog(user_id=user_id, action=action, ip_address=ip_address[:45] if ip_address else None))
        self.db.commit()

    def create_generation(self, user_id: str, prompt: str, trend: str | None, quality: str) -> Generation:
        generation = Generation(
            user_id=user_id,
            status="processing",
            prompt_used=(prompt or "")[:MAX_PROMPT_STORED],
            trend=trend,
            quality=quality,
        )
        self.db.add(generation)
        self.db.commit()
        self.db.refresh(generation)
        return generation

    def _resolve(self, generation_id: str, values: dict) -> bool:
        """Only processing records move to a terminal state; terminal records are final."""
        result = self.db.execute(
            update(Generation)
            .where(Generation.id == generation_id, Generation.status == "processing")
            .values(updated_at=func.now(), **values)
        )
        self.db.commit()
        return result.rowcount > 0

    def mark_completed(self, generation_id: str, image_url: str) -> bool:
        return self._resolve(generation_id, {"status": "completed", "image_url": image_url})

    def mark_failed(self, generation_id: str, error_message: str) -> bool:
        return self._resolve(generation_id, {"status": "failed", "error_message": (error_message or "")[:MAX_ERROR_STORED]})

    def get_generation(self, user_id: str, generation_id: str) -> Generation | None:
        """Only the owner sees a generation; someone else's id looks the same as a missing one."""
        return (
            self.db.query(Generation)
            .filter(Generation.id == generation_id, Generation.user_id == user_id)
            .one_or_none()
        )

    def list_generations(self, user_id: str, limit: int = MAX_HISTORY_LIMIT) -> list[Generation]:
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        return (
            self.db.query(Generation)
            .filter(Generation.user_id == user_id)
            .order_by(Generation.created_at.desc())
            .limit(limit)
            .all()
        )
