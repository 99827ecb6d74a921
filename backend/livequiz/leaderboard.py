import logging
from typing import Dict, List, Optional

from .cache import LeaderboardCache
from .config import config
from .models import LeaderboardEntry

logger = logging.getLogger(__name__)

# totalPoints DESC, score DESC, then first to join the round
LEADERBOARD_SORT = [("totalPoints", -1), ("score", -1), ("createdAt", 1)]


class LeaderboardBuilder:
    """Ranked view over the participant results of one round."""

    def __init__(self, db, cache: Optional[LeaderboardCache] = None):
        self._results = db.quizResults
        self.cache = cache or LeaderboardCache()

    async def build(self, round_no: int, limit: int = config.LEADERBOARD_LIMIT) -> List[Dict]:
        cached = await self.cache.get(round_no, limit)
        if cached is not None:
            return cached

        generation = self.cache.generation
        results = (
            await self._results.find({"round": round_no}, {"_id": 0, "answers": 0})
            .sort(LEADERBOARD_SORT)
            .limit(limit)
            .to_list(limit)
        )
        leaderboard = [
            LeaderboardEntry(
                rank=idx + 1,
                userId=r.get("userId", ""),
                name=r.get("name", "Unknown"),
                rollNo=r.get("rollNo", ""),
                totalPoints=r.get("totalPoints", 0),
                score=r.get("score", 0),
                totalQuestions=r.get("totalQuestions", config.DEFAULT_TOTAL_QUESTIONS),
                percentage=r.get("percentage", 0),
                lastAnsweredAt=r.get("updatedAt") or r.get("completedAt"),
            ).model_dump()
            for idx, r in enumerate(results)
        ]
        await self.cache.set(round_no, limit, leaderboard, generation=generation)
        return leaderboard

    async def rank_of(self, user_id: str, round_no: int) -> Optional[int]:
        """Rank without sorting everyone: 1 + participants strictly ahead on points."""
        mine = await self._results.find_one({"userId": user_id, "round": round_no}, {"_id": 0, "totalPoints": 1})
        if not mine:
            return None
        ahead = await self._results.count_documents(
            {"round": round_no, "totalPoints": {"$gt": mine.get("totalPoints", 0)}}
        )
        return ahead + 1

    async def participant_count(self, round_no: int) -> int:
        return await self._results.count_documents({"round": round_no})
