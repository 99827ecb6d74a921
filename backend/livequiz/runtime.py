import logging
from typing import Dict, Optional

from .cache import LeaderboardCache
from .config import config
from .leaderboard import LeaderboardBuilder
from .ledger import AnswerLedger
from .live_sync import LiveSyncHub
from .question_bank import QuestionBank
from .state_machine import QuizStateMachine, public_state

logger = logging.getLogger(__name__)


class QuizRuntime:
    """Owns every live component for one database."""

    def __init__(
        self,
        db,
        bank: Optional[QuestionBank] = None,
        redis_client=None,
        enforce_window: bool = config.ENFORCE_ANSWER_WINDOW,
        countdown_tick: float = config.COUNTDOWN_TICK_SEC,
        stream_interval: float = config.STREAM_INTERVAL_SEC,
    ):
        self.db = db
        self.redis = redis_client
        self.bank = bank or QuestionBank.from_file()
        self.cache = LeaderboardCache(redis_client)
        self.leaderboard = LeaderboardBuilder(db, self.cache)
        self.ledger = AnswerLedger(db, self.bank, self.cache, enforce_window=enforce_window)
        self.hub = LiveSyncHub(self.snapshot, interval=stream_interval)
        self.machine = QuizStateMachine(db, self.bank, countdown_tick=countdown_tick, on_change=self.hub.publish_now)

    async def snapshot(self) -> Dict:
        """Quiz state plus the current round's leaderboard."""
        state = await self.machine.get_state()
        round_no = state.get("round", 1)
        data = public_state(state)
        data["leaderboard"] = await self.leaderboard.build(round_no)
        data["participants"] = await self.leaderboard.participant_count(round_no)
        return data

    async def create_indexes(self):
        try:
            await self.db.users.create_index("id", unique=True)
            await self.db.users.create_index("rollNo", unique=True)
            await self.db.users.create_index("mobileNo", unique=True)
            await self.db.users.create_index("email", unique=True)
            await self.db.quizResults.create_index("userId", unique=True)
            await self.db.quizResults.create_index([("round", 1), ("totalPoints", -1), ("score", -1)])
            await self.db.liveAnswers.create_index(
                [("userId", 1), ("questionId", 1), ("round", 1)], unique=True
            )
            await self.db.liveAnswers.create_index([("round", 1), ("questionId", 1), ("isCorrect", 1)])
            await self.db.visitors.create_index("visitorId", unique=True)
            logger.info("✓ Database indexes created")
        except Exception as e:
            logger.error(f"Index creation error: {e}")

    async def close(self):
        await self.machine.shutdown()
        await self.hub.close()
