"""Answer ledger: live answers, first-correct detection, participant results.

Each (participant, question, round) keeps exactly one record; answering again
overwrites it. A participant's result is always recomputed from their ledger
records, so a resubmission can never double count.
"""

import asyncio
import logging
import math
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Hashable, List, Optional

from .cache import LeaderboardCache
from .config import config
from .errors import NotFound, QuestionClosed, ValidationError
from .models import AnswerRecord
from .question_bank import QuestionBank
from .scoring import calc_percentage, calc_points, is_eligible_for_reward
from .state_machine import question_elapsed

logger = logging.getLogger(__name__)


class KeyedLocks:
    """asyncio locks created per key and released once nobody holds them."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            yield


class AnswerLedger:
    def __init__(
        self,
        db,
        bank: QuestionBank,
        cache: Optional[LeaderboardCache] = None,
        enforce_window: bool = config.ENFORCE_ANSWER_WINDOW,
    ):
        self._answers = db.liveAnswers
        self._results = db.quizResults
        self._users = db.users
        self._bank = bank
        self._cache = cache
        self.enforce_window = enforce_window
        self._question_locks = KeyedLocks()
        self._user_locks = KeyedLocks()

    async def submit_answer(
        self,
        state: Dict,
        user_id: str,
        question_id: int,
        selected_option: int,
        time_taken: float,
        name: Optional[str] = None,
        roll_no: Optional[str] = None,
    ) -> Dict:
        """Record one live answer and return ``{isCorrect, pointsEarned}``.

        ``state`` is the quiz state read by the caller; it supplies the round,
        the question length of the quiz and the open answer window.
        """
        question = self._bank.get(question_id)
        if question is None:
            raise NotFound(f"Question {question_id} not found")
        if not 0 <= selected_option < len(question.options):
            raise ValidationError("selectedOption out of range")
        if self.enforce_window:
            self._check_window(state, user_id, question_id, time_taken)

        round_no = state.get("round", 1)
        is_correct = selected_option == question.correctAnswer

        async with self._question_locks.hold((round_no, question_id)):
            first = await self._holds_first_correct(round_no, question_id, user_id, is_correct)
            points = calc_points(time_taken, first) if is_correct else 0
            record = AnswerRecord(
                userId=user_id,
                questionId=question_id,
                round=round_no,
                selectedOption=selected_option,
                selectedText=question.options[selected_option],
                isCorrect=is_correct,
                timeTaken=round(float(time_taken), 2),
                pointsEarned=points,
                firstCorrect=first,
                answeredAt=datetime.now(timezone.utc).isoformat(),
            ).model_dump()
            await self._answers.update_one(
                {"userId": user_id, "questionId": question_id, "round": round_no},
                {"$set": record},
                upsert=True,
            )

        async with self._user_locks.hold(user_id):
            await self._recompute_result(state, user_id, name, roll_no)

        if self._cache:
            await self._cache.invalidate()

        logger.info(f"✓ Answer: {user_id} Q{question_id} -> {is_correct} ({points}pts)")
        return {"isCorrect": is_correct, "pointsEarned": points}

    async def answers_for(self, user_id: str, round_no: int) -> List[Dict]:
        return (
            await self._answers.find({"userId": user_id, "round": round_no}, {"_id": 0})
            .sort("answeredAt", 1)
            .to_list(None)
        )

    async def _holds_first_correct(self, round_no: int, question_id: int, user_id: str, is_correct: bool) -> bool:
        """Whether this participant owns the first-correct claim on the question.

        The claim goes to the first correct answer to arrive in the round and
        stays on that participant's record for the rest of the round, across
        resubmissions. A wrong resubmission scores 0 but does not hand the
        claim to anyone else; answering correctly again earns the bonus again.
        """
        own = await self._answers.find_one(
            {"round": round_no, "questionId": question_id, "userId": user_id},
            {"_id": 0, "firstCorrect": 1},
        )
        if own and own.get("firstCorrect"):
            return True
        if not is_correct:
            return False
        claimed = await self._answers.find_one(
            {"round": round_no, "questionId": question_id, "firstCorrect": True},
            {"_id": 1},
        )
        return claimed is None

    def _check_window(self, state: Dict, user_id: str, question_id: int, time_taken: float):
        if not math.isfinite(time_taken) or time_taken < 0 or time_taken > config.ANSWER_WINDOW_SEC:
            raise ValidationError(f"timeTaken must be between 0 and {config.ANSWER_WINDOW_SEC} seconds")

        elapsed = question_elapsed(state)
        if elapsed is None:
            raise QuestionClosed("No question is open for answers")
        if elapsed > config.ANSWER_WINDOW_SEC + config.ANSWER_GRACE_SEC:
            raise QuestionClosed("Time is up for this question")

        if question_id == state.get("currentQuestionId"):
            return
        # participants may be answering their own shuffled question at this index
        own = self._bank.question_at(user_id, state["currentQuestionIndex"], state["totalQuestions"])
        if own is None or own.id != question_id:
            logger.warning(f"Rejected answer from {user_id}: Q{question_id} is not open")
            raise QuestionClosed(f"Question {question_id} is not the current question")

    async def _recompute_result(self, state: Dict, user_id: str, name: Optional[str], roll_no: Optional[str]):
        round_no = state.get("round", 1)
        now = datetime.now(timezone.utc).isoformat()
        answers = await self.answers_for(user_id, round_no)

        existing = await self._results.find_one({"userId": user_id}, {"_id": 0, "answers": 0})
        if existing and existing.get("round") == round_no:
            total_questions = existing.get("totalQuestions") or state["totalQuestions"]
            created_at = existing["createdAt"]
        else:
            # first answer of this round
            total_questions = state["totalQuestions"]
            created_at = now

        score = sum(1 for a in answers if a["isCorrect"])
        total_points = sum(a.get("pointsEarned", 0) for a in answers)
        percentage = calc_percentage(score, total_questions)

        update = {
            "answers": answers,
            "score": score,
            "totalPoints": total_points,
            "totalQuestions": total_questions,
            "percentage": percentage,
            "isEligibleForReward": is_eligible_for_reward(percentage),
            "round": round_no,
            "createdAt": created_at,
            "updatedAt": now,
        }
        if len(answers) >= total_questions:
            update["completedAt"] = now

        if existing:
            await self._results.update_one({"userId": user_id}, {"$set": update})
            return

        identity = await self._identity(user_id, name, roll_no)
        await self._results.update_one(
            {"userId": user_id},
            {
                "$set": update,
                "$setOnInsert": {
                    "id": str(uuid.uuid4()),
                    "rewardGiven": False,
                    **identity,
                },
            },
            upsert=True,
        )
        logger.info(f"✓ New participant result: {identity['name']} ({user_id})")

    async def _identity(self, user_id: str, name: Optional[str], roll_no: Optional[str]) -> Dict:
        user = await self._users.find_one({"id": user_id}, {"_id": 0})
        if user:
            return {
                "name": user["name"],
                "rollNo": user["rollNo"],
                "mobileNo": user.get("mobileNo", ""),
                "email": user.get("email", ""),
            }
        return {"name": name or "Anonymous", "rollNo": roll_no or "", "mobileNo": "", "email": ""}
