"""Quiz state machine.

One QuizState document (``_id="current"``) describes the live quiz. This
module is its only writer: every transition runs under one asyncio lock and
lands as a single conditional ``find_one_and_update`` guarded by a version
number, so concurrent admin actions cannot lose each other's updates.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from pymongo import ReturnDocument

from .config import config
from .errors import Conflict, NotFound, ValidationError
from .models import QuizStateModel
from .question_bank import QuestionBank

logger = logging.getLogger(__name__)

STATE_ID = "current"


class QuizPhase:
    """Quiz flow phases, derived from the stored flags"""

    IDLE = "idle"
    COUNTDOWN = "countdown"
    QUESTION_ACTIVE = "question_active"
    QUESTION_ENDED = "question_ended"
    QUIZ_ENDED = "quiz_ended"


def default_state(total_questions: int = config.DEFAULT_TOTAL_QUESTIONS, round_no: int = 1) -> Dict:
    return {
        "isActive": False,
        "currentQuestionIndex": 0,
        "currentQuestionId": None,
        "questionStartTime": None,
        "countdownActive": False,
        "countdownValue": 0,
        "totalQuestions": total_questions,
        "startedAt": None,
        "endedAt": None,
        "participants": 0,
        "round": round_no,
        # internal bookkeeping, not part of the public state
        "countdownToken": None,
        "version": 0,
    }


def derive_phase(state: Dict) -> str:
    if state.get("countdownActive"):
        return QuizPhase.COUNTDOWN
    if state.get("isActive"):
        return QuizPhase.QUESTION_ACTIVE
    if state.get("endedAt"):
        return QuizPhase.QUIZ_ENDED
    if state.get("startedAt"):
        return QuizPhase.QUESTION_ENDED
    return QuizPhase.IDLE


def question_elapsed(state: Dict, now_ms: Optional[int] = None) -> Optional[float]:
    """Seconds since the active question went live, None when none is live."""
    start = state.get("questionStartTime")
    if not state.get("isActive") or not start:
        return None
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return max(0.0, (now_ms - start) / 1000)


def time_remaining(state: Dict, now_ms: Optional[int] = None) -> int:
    elapsed = question_elapsed(state, now_ms)
    if elapsed is None:
        return 0
    return int(max(0, config.ANSWER_WINDOW_SEC - elapsed))


def public_state(state: Dict) -> Dict:
    """State as served to clients: stored fields plus derived timing."""
    server_time = int(time.time() * 1000)
    out = QuizStateModel(**state).model_dump()
    out["phase"] = derive_phase(state)
    out["timeRemaining"] = time_remaining(state, server_time)
    out["serverTime"] = server_time
    return out


class QuizStateMachine:
    def __init__(
        self,
        db,
        bank: QuestionBank,
        countdown_tick: float = config.COUNTDOWN_TICK_SEC,
        on_change: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._collection = db.quizState
        self._bank = bank
        self._tick = countdown_tick
        self._lock = asyncio.Lock()
        self._countdown_task: Optional[asyncio.Task] = None
        self.on_change = on_change

    @property
    def countdown_task(self) -> Optional[asyncio.Task]:
        return self._countdown_task

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_state(self) -> Dict:
        """Current state, created with defaults on first read."""
        return await self._collection.find_one_and_update(
            {"_id": STATE_ID},
            {"$setOnInsert": default_state()},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def apply(self, action) -> Dict:
        """Dispatch a validated admin action."""
        name = action.action
        total = getattr(action, "totalQuestions", None)
        if name == "start_countdown":
            return await self.start_countdown(total_questions=total)
        if name == "start_question":
            return await self.start_question(action.questionId, total_questions=total)
        if name == "next_question":
            return await self.next_question(action.questionId)
        if name == "end_quiz":
            return await self.end_quiz()
        if name == "reset":
            return await self.reset(total_questions=total)
        if name == "update_countdown":
            return await self.update_countdown(action.countdownValue)
        raise ValidationError("Invalid action")

    async def start_countdown(self, total_questions: Optional[int] = None) -> Dict:
        async with self._lock:
            state = await self.get_state()
            if state["isActive"]:
                raise Conflict("Cannot start countdown while a question is active")
            if state["countdownActive"]:
                raise Conflict("Countdown already running")
            if state["endedAt"]:
                raise Conflict("Quiz has ended, reset to play again")

            token = uuid.uuid4().hex
            update = {
                "countdownActive": True,
                "countdownValue": config.COUNTDOWN_START,
                "countdownToken": token,
                "isActive": False,
            }
            update.update(self._total_questions_update(state, total_questions))
            state = await self._commit(state, update)
            self._cancel_countdown()
            self._countdown_task = asyncio.create_task(self._run_countdown(token))

        logger.info(f"✓ Countdown started ({config.COUNTDOWN_START}s)")
        await self._notify()
        return state

    async def start_question(self, question_id: Optional[int] = None, total_questions: Optional[int] = None) -> Dict:
        async with self._lock:
            state = await self.get_state()
            if state["isActive"]:
                raise Conflict("A question is already active")
            if state["endedAt"] or state["currentQuestionIndex"] >= state["totalQuestions"]:
                raise Conflict("Quiz has ended, reset to play again")

            question_id = self._resolve_question(question_id)
            update = self._activate(state, question_id)
            update.update(self._total_questions_update(state, total_questions))
            self._cancel_countdown()
            state = await self._commit(state, update)

        logger.info(f"✓ Question live: Q{state['currentQuestionIndex']} -> id {question_id}")
        await self._notify()
        return state

    async def next_question(self, question_id: Optional[int] = None) -> Dict:
        async with self._lock:
            state = await self.get_state()
            if state["endedAt"] or (not state["startedAt"] and not state["isActive"]):
                # nothing to advance from
                return state

            next_index = state["currentQuestionIndex"] + 1
            if next_index < state["totalQuestions"]:
                if question_id is not None:
                    question_id = self._resolve_question(question_id)
                    update = self._activate(state, question_id)
                else:
                    update = {
                        "isActive": False,
                        "currentQuestionId": None,
                        "questionStartTime": None,
                        "countdownActive": False,
                        "countdownValue": 0,
                        "countdownToken": None,
                    }
                update["currentQuestionIndex"] = next_index
            else:
                update = self._ended_update()
                update["currentQuestionIndex"] = next_index

            self._cancel_countdown()
            state = await self._commit(state, update)

        if state["endedAt"]:
            logger.info(f"✓ Quiz completed after {state['totalQuestions']} questions")
        elif state["isActive"]:
            logger.info(f"✓ Next question: Q{state['currentQuestionIndex']} -> id {state['currentQuestionId']}")
        else:
            logger.info(f"Paused before Q{state['currentQuestionIndex']}")
        await self._notify()
        return state

    async def end_quiz(self) -> Dict:
        async with self._lock:
            state = await self.get_state()
            if derive_phase(state) in (QuizPhase.IDLE, QuizPhase.QUIZ_ENDED):
                return state
            self._cancel_countdown()
            state = await self._commit(state, self._ended_update())

        logger.info("✓ Quiz ended by admin")
        await self._notify()
        return state

    async def reset(self, total_questions: Optional[int] = None) -> Dict:
        async with self._lock:
            state = await self.get_state()
            total = config.DEFAULT_TOTAL_QUESTIONS
            if total_questions is not None:
                total = self._validate_total(total_questions)
            fresh = default_state(total, round_no=state.get("round", 1) + 1)
            fresh.pop("version")
            self._cancel_countdown()
            state = await self._commit(state, fresh)

        logger.info(f"✓ Quiz reset, round {state['round']} begins")
        await self._notify()
        return state

    async def update_countdown(self, value: int) -> Dict:
        async with self._lock:
            state = await self.get_state()
            if state["isActive"]:
                raise Conflict("Cannot change countdown while a question is active")
            self._cancel_countdown()
            state = await self._commit(state, {
                "countdownValue": value,
                "countdownActive": value > 0,
                "countdownToken": None,
            })

        await self._notify()
        return state

    async def shutdown(self):
        self._cancel_countdown()

    # ------------------------------------------------------------------
    # Countdown ticker
    # ------------------------------------------------------------------

    async def _run_countdown(self, token: str):
        """Decrement once per tick until zero. Stops if superseded."""
        try:
            value = config.COUNTDOWN_START
            while value > 0:
                await asyncio.sleep(self._tick)
                value -= 1
                update = {"countdownValue": value}
                if value == 0:
                    update.update({"countdownActive": False, "countdownToken": None})
                async with self._lock:
                    doc = await self._collection.find_one_and_update(
                        {"_id": STATE_ID, "countdownToken": token},
                        {"$set": update, "$inc": {"version": 1}},
                        return_document=ReturnDocument.BEFORE,
                    )
                if doc is None:
                    logger.info("Countdown superseded, stopping ticker")
                    return
                await self._notify()
            logger.info("✓ Countdown finished")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # the admin can always recover with reset
            logger.error(f"Countdown ticker error: {e}", exc_info=True)
        finally:
            if self._countdown_task is asyncio.current_task():
                self._countdown_task = None

    def _cancel_countdown(self):
        task = self._countdown_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._countdown_task = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _commit(self, state: Dict, update: Dict) -> Dict:
        """Apply ``update`` only if nobody wrote since ``state`` was read."""
        if "version" in state:
            guard = {"_id": STATE_ID, "version": state["version"]}
        else:
            guard = {"_id": STATE_ID, "version": {"$exists": False}}
        doc = await self._collection.find_one_and_update(
            guard,
            {"$set": update, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise Conflict("Quiz state changed concurrently, retry")
        doc.pop("_id", None)
        return doc

    def _resolve_question(self, question_id: Optional[int]) -> int:
        if question_id is None:
            return self._bank.random_question().id
        if question_id not in self._bank:
            raise NotFound(f"Question {question_id} not found")
        return question_id

    def _activate(self, state: Dict, question_id: int) -> Dict:
        now = datetime.now(timezone.utc).isoformat()
        return {
            "isActive": True,
            "currentQuestionId": question_id,
            "questionStartTime": int(time.time() * 1000),
            "countdownActive": False,
            "countdownValue": 0,
            "countdownToken": None,
            "startedAt": state["startedAt"] or now,
        }

    @staticmethod
    def _ended_update() -> Dict:
        return {
            "isActive": False,
            "currentQuestionId": None,
            "questionStartTime": None,
            "endedAt": datetime.now(timezone.utc).isoformat(),
            "countdownActive": False,
            "countdownValue": 0,
            "countdownToken": None,
        }

    def _validate_total(self, total: int) -> int:
        if total < 1 or total > config.MAX_TOTAL_QUESTIONS:
            raise ValidationError(f"totalQuestions must be between 1 and {config.MAX_TOTAL_QUESTIONS}")
        if total > len(self._bank):
            raise ValidationError(f"totalQuestions cannot exceed the {len(self._bank)} questions in the bank")
        return total

    def _total_questions_update(self, state: Dict, total: Optional[int]) -> Dict:
        # the quiz length is fixed once the first question has gone live
        if total is None or state["startedAt"] or state["isActive"]:
            return {}
        return {"totalQuestions": self._validate_total(total)}

    async def _notify(self):
        if self.on_change is not None:
            await self.on_change()
