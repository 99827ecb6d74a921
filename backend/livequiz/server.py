"""
Cyber Quiz Live - backend
Live quiz state, per-question answers, leaderboard and SSE stream
Storage: MongoDB (motor), optional Redis leaderboard cache
"""

import logging
import os
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import StreamingResponse
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError as SchemaError
from pymongo.errors import DuplicateKeyError

from . import __version__
from .auth import check_admin_credentials, create_admin_token, require_admin
from .cache import fast_dumps
from .config import config
from .errors import Conflict, InternalError, NotFound, QuizError, Unauthorized, ValidationError, register_error_handlers
from .models import AdminLogin, LiveAnswerSubmit, ParticipantResult, QuizSubmit, RewardUpdate, User, UserCreate, parse_action
from .runtime import QuizRuntime
from .scoring import calc_percentage, is_eligible_for_reward, round_half_up
from .state_machine import public_state

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

VISITOR_COOKIE = "visitor_id"
VISITOR_COOKIE_MAX_AGE = 365 * 24 * 60 * 60


def get_runtime(request: Request) -> QuizRuntime:
    return request.app.state.runtime


def _identity_query(rollNo: Optional[str], mobileNo: Optional[str], email: Optional[str]) -> Dict:
    # stored values are normalized by UserCreate
    clauses = []
    if rollNo and rollNo.strip():
        clauses.append({"rollNo": rollNo.strip().upper()})
    if mobileNo and mobileNo.strip():
        clauses.append({"mobileNo": mobileNo.strip()})
    if email and email.strip():
        clauses.append({"email": email.strip().lower()})
    if not clauses:
        raise ValidationError("At least one identifier is required")
    return {"$or": clauses}


# ============================================================================
# LIFESPAN
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "runtime", None) is not None:
        # runtime injected by the caller (tests, embedding)
        yield
        await app.state.runtime.close()
        return

    logger.info("🚀 Starting Cyber Quiz Live API")

    try:
        mongo_client = AsyncIOMotorClient(
            config.MONGO_URL,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            maxPoolSize=100,
            retryWrites=True,
        )
        db = mongo_client[config.DB_NAME]
        await db.command("ping")
        logger.info("✓ MongoDB connected")
    except Exception as e:
        logger.error(f"❌ MongoDB connection failed: {e}")
        raise

    redis_client = None
    if config.REDIS_URL:
        try:
            redis_client = aioredis.from_url(config.REDIS_URL, decode_responses=True)
            await redis_client.ping()
            logger.info("✓ Redis connected")
        except Exception as e:
            logger.warning(f"Redis unavailable, using in-memory cache: {e}")
            redis_client = None

    runtime = QuizRuntime(db, redis_client=redis_client)
    await runtime.create_indexes()
    app.state.runtime = runtime
    logger.info("✓ Cyber Quiz Live API ready")

    yield

    logger.info("🛑 Shutting down")
    await runtime.close()
    if redis_client:
        await redis_client.aclose()
    mongo_client.close()
    app.state.runtime = None
    logger.info("✓ Shutdown complete")


# ============================================================================
# API ROUTES
# ============================================================================

router = APIRouter(prefix="/api")
public = APIRouter()


@public.get("/")
async def root():
    return {
        "name": "Cyber Quiz Live API",
        "version": __version__,
        "status": "active",
        "features": ["live-state", "sse-stream", "first-correct-bonus", "per-user-shuffle"],
    }


@public.get("/health")
async def health(runtime: QuizRuntime = Depends(get_runtime)):
    status = {"status": "healthy", "services": {}}
    try:
        await runtime.db.command("ping")
        status["services"]["mongodb"] = "connected"
    except Exception as e:
        status["services"]["mongodb"] = f"error: {str(e)}"
        status["status"] = "degraded"

    if runtime.redis:
        try:
            await runtime.redis.ping()
            status["services"]["redis"] = "connected"
        except Exception as e:
            status["services"]["redis"] = f"error: {str(e)}"
    else:
        status["services"]["redis"] = "disabled"

    status["stream"] = {"subscribers": runtime.hub.subscriber_count}
    return status


@router.get("/time-sync")
async def time_sync():
    """Server clock for aligning client countdowns"""
    return {
        "serverTime": int(time.time() * 1000),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ----------------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------------


@router.post("/users")
async def create_user(data: UserCreate, runtime: QuizRuntime = Depends(get_runtime)):
    try:
        users = runtime.db.users
        existing = await users.find_one(
            _identity_query(data.rollNo, data.mobileNo, data.email), {"_id": 1}
        )
        if existing:
            raise Conflict("User already exists with this roll number, mobile number, or email")

        now = datetime.now(timezone.utc).isoformat()
        user_doc = {
            "id": str(uuid.uuid4()),
            "name": data.name,
            "rollNo": data.rollNo,
            "mobileNo": data.mobileNo,
            "email": data.email,
            "createdAt": now,
            "updatedAt": now,
        }
        await users.insert_one(user_doc)
        user = User(**user_doc)

        logger.info(f"✓ User registered: {user.name} ({user.rollNo})")
        return {"success": True, "userId": user.id, "user": user.model_dump()}

    except QuizError:
        raise
    except Exception as e:
        if isinstance(e, DuplicateKeyError):
            raise Conflict("User already exists with this roll number, mobile number, or email")
        logger.error(f"Create user error: {e}")
        raise InternalError("Failed to create user")


@router.get("/users")
async def get_user(
    rollNo: Optional[str] = None,
    mobileNo: Optional[str] = None,
    email: Optional[str] = None,
    runtime: QuizRuntime = Depends(get_runtime),
):
    try:
        user = await runtime.db.users.find_one(_identity_query(rollNo, mobileNo, email), {"_id": 0})
        if not user:
            return {"exists": False}
        return {"exists": True, "user": User(**user).model_dump()}
    except QuizError:
        raise
    except Exception as e:
        logger.error(f"Get user error: {e}")
        raise InternalError("Failed to look up user")


# ----------------------------------------------------------------------------
# Quiz results
# ----------------------------------------------------------------------------


@router.get("/quiz/check")
async def check_quiz(
    rollNo: Optional[str] = None,
    mobileNo: Optional[str] = None,
    email: Optional[str] = None,
    runtime: QuizRuntime = Depends(get_runtime),
):
    try:
        result = await runtime.db.quizResults.find_one(_identity_query(rollNo, mobileNo, email), {"_id": 0})
        if result is None:
            return {"hasCompleted": False, "result": None}
        return {"hasCompleted": True, "result": ParticipantResult(**result).model_dump()}
    except QuizError:
        raise
    except Exception as e:
        logger.error(f"Check quiz error: {e}")
        raise InternalError("Failed to check quiz completion")


@router.post("/quiz/submit")
async def submit_quiz(data: QuizSubmit, runtime: QuizRuntime = Depends(get_runtime)):
    """Legacy one-shot submission, superseded by live answers."""
    try:
        results = runtime.db.quizResults
        existing = await results.find_one(
            _identity_query(data.rollNo, data.mobileNo, data.email), {"_id": 1}
        )
        if existing:
            raise Conflict("Quiz already completed by this user")

        state = await runtime.machine.get_state()
        now = datetime.now(timezone.utc).isoformat()
        percentage = calc_percentage(data.score, data.totalQuestions)
        result_doc = {
            "id": str(uuid.uuid4()),
            "userId": data.userId or str(uuid.uuid4()),
            "name": data.name,
            "rollNo": data.rollNo.strip().upper(),
            "mobileNo": data.mobileNo.strip(),
            "email": data.email.strip().lower(),
            "score": data.score,
            "totalPoints": 0,
            "totalQuestions": data.totalQuestions,
            "percentage": percentage,
            "answers": data.answers,
            "isEligibleForReward": is_eligible_for_reward(percentage),
            "rewardGiven": False,
            "round": state.get("round", 1),
            "createdAt": now,
            "updatedAt": now,
            "completedAt": now,
        }
        await results.insert_one(result_doc)
        result_doc.pop("_id", None)
        await runtime.cache.invalidate()

        logger.info(f"✓ Quiz submitted: {data.name} -> {percentage}%")
        return {"success": True, "resultId": result_doc["id"], "result": result_doc}

    except QuizError:
        raise
    except Exception as e:
        if isinstance(e, DuplicateKeyError):
            raise Conflict("Quiz already completed by this user")
        logger.error(f"Submit quiz error: {e}")
        raise InternalError("Failed to submit quiz")


# ----------------------------------------------------------------------------
# Live quiz
# ----------------------------------------------------------------------------


@router.get("/quiz/questions")
async def get_user_questions(
    userId: str = Query(..., min_length=1),
    count: Optional[int] = Query(None, ge=1),
    runtime: QuizRuntime = Depends(get_runtime),
):
    """The participant's own ordering of the question pool, answers stripped."""
    try:
        if count is None:
            count = (await runtime.machine.get_state())["totalQuestions"]
        try:
            questions = runtime.bank.for_user(userId, count)
        except ValueError as e:
            raise ValidationError(str(e))
        return {
            "questionIds": [q.id for q in questions],
            "questions": [q.public() for q in questions],
        }
    except QuizError:
        raise
    except Exception as e:
        logger.error(f"Get questions error: {e}")
        raise InternalError("Failed to fetch questions")


@router.post("/quiz/live")
async def submit_live_answer(ans: LiveAnswerSubmit, runtime: QuizRuntime = Depends(get_runtime)):
    try:
        state = await runtime.machine.get_state()
        result = await runtime.ledger.submit_answer(
            state,
            ans.userId,
            ans.questionId,
            ans.selectedOption,
            ans.timeTaken,
            name=ans.name,
            roll_no=ans.rollNo,
        )
        return {"success": True, **result}
    except QuizError:
        raise
    except Exception as e:
        logger.error(f"Submit live answer error: {e}", exc_info=True)
        raise InternalError("Failed to submit answer")


@router.get("/quiz/live")
async def get_leaderboard(
    limit: int = Query(config.LEADERBOARD_LIMIT, ge=1, le=config.MAX_PARTICIPANTS),
    userId: Optional[str] = None,
    runtime: QuizRuntime = Depends(get_runtime),
):
    try:
        state = await runtime.machine.get_state()
        round_no = state.get("round", 1)
        out = {
            "success": True,
            "leaderboard": await runtime.leaderboard.build(round_no, limit),
            "participants": await runtime.leaderboard.participant_count(round_no),
        }
        if userId:
            out["yourRank"] = await runtime.leaderboard.rank_of(userId, round_no)
        return out
    except QuizError:
        raise
    except Exception as e:
        logger.error(f"Get leaderboard error: {e}")
        raise InternalError("Failed to fetch leaderboard")


@router.get("/quiz/state")
async def get_quiz_state(runtime: QuizRuntime = Depends(get_runtime)):
    try:
        state = await runtime.machine.get_state()
        return {"success": True, "state": public_state(state)}
    except Exception as e:
        logger.error(f"Get quiz state error: {e}")
        raise InternalError("Failed to get quiz state")


@router.post("/quiz/state")
async def update_quiz_state(
    body: Dict = Body(...),
    _admin: Dict = Depends(require_admin),
    runtime: QuizRuntime = Depends(get_runtime),
):
    try:
        try:
            action = parse_action(body)
        except SchemaError as e:
            errors = e.errors()
            if errors and errors[0].get("type") == "union_tag_invalid":
                raise ValidationError("Invalid action")
            loc = ".".join(str(p) for p in errors[0].get("loc", ())[1:]) if errors else ""
            msg = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
            raise ValidationError(f"{loc}: {msg}" if loc else msg)

        logger.info(f"Admin action: {action.action}")
        state = await runtime.machine.apply(action)
        return {"success": True, "state": public_state(state)}
    except QuizError:
        raise
    except Exception as e:
        logger.error(f"Update quiz state error: {e}", exc_info=True)
        raise InternalError("Failed to update quiz state")


@router.get("/quiz/stream")
async def quiz_stream(request: Request, runtime: QuizRuntime = Depends(get_runtime)):
    """Server-Sent Events: initial state frame, then an update every tick."""

    async def event_source():
        async with runtime.hub.subscribe() as sub:
            async for frame in sub:
                if await request.is_disconnected():
                    break
                yield f"data: {fast_dumps(frame)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ----------------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------------


@router.post("/admin/login")
async def admin_login(data: AdminLogin):
    """Admin login - plaintext credential compare, returns a bearer token"""
    if not check_admin_credentials(data.username, data.password):
        logger.warning(f"Failed admin login for '{data.username}'")
        raise Unauthorized("Invalid username or password")
    logger.info(f"✓ Admin login: {data.username}")
    return {"token": create_admin_token(data.username), "username": data.username, "role": "admin"}


@router.get("/admin/users")
async def admin_users(_admin: Dict = Depends(require_admin), runtime: QuizRuntime = Depends(get_runtime)):
    try:
        results = (
            await runtime.db.quizResults.find({}, {"_id": 0})
            .sort("updatedAt", -1)
            .to_list(config.MAX_PARTICIPANTS)
        )
        total_users = len(results)
        average = round_half_up(sum(r.get("percentage", 0) for r in results) / total_users) if total_users else 0
        return {
            "success": True,
            "data": {
                "users": results,
                "statistics": {
                    "totalUsers": total_users,
                    "eligibleForRewards": sum(1 for r in results if r.get("isEligibleForReward")),
                    "averageScore": average,
                    "rewardsGiven": sum(1 for r in results if r.get("rewardGiven")),
                },
            },
        }
    except Exception as e:
        logger.error(f"Admin users error: {e}")
        raise InternalError("Failed to fetch admin data")


@router.patch("/admin/reward")
@router.patch("/admin/users")
async def update_reward(
    data: RewardUpdate,
    _admin: Dict = Depends(require_admin),
    runtime: QuizRuntime = Depends(get_runtime),
):
    try:
        result = await runtime.db.quizResults.update_one(
            {"$or": [{"id": data.userId}, {"userId": data.userId}]},
            {"$set": {"rewardGiven": data.rewardGiven, "updatedAt": datetime.now(timezone.utc).isoformat()}},
        )
        if result.matched_count == 0:
            raise NotFound("User not found")
        logger.info(f"✓ Reward for {data.userId} -> {data.rewardGiven}")
        return {"success": True, "message": "Reward status updated successfully"}
    except QuizError:
        raise
    except Exception as e:
        logger.error(f"Update reward error: {e}")
        raise InternalError("Failed to update reward status")


# ----------------------------------------------------------------------------
# Visitors
# ----------------------------------------------------------------------------


@router.post("/visitors")
async def track_visitor(request: Request, response: Response, runtime: QuizRuntime = Depends(get_runtime)):
    try:
        visitor_id = request.cookies.get(VISITOR_COOKIE)
        if not visitor_id:
            visitor_id = f"visitor_{int(time.time() * 1000)}_{secrets.token_hex(6)}"

        visitors = runtime.db.visitors
        now = datetime.now(timezone.utc).isoformat()
        result = await visitors.update_one(
            {"visitorId": visitor_id},
            {
                "$setOnInsert": {"visitorId": visitor_id, "firstVisit": now},
                "$set": {"lastVisit": now},
                "$inc": {"visitCount": 1},
            },
            upsert=True,
        )
        total = await visitors.count_documents({})

        response.set_cookie(
            VISITOR_COOKIE,
            visitor_id,
            max_age=VISITOR_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
            secure=os.getenv("ENV", "development") == "production",
        )
        return {"success": True, "isNewVisitor": result.upserted_id is not None, "totalVisitors": total}
    except Exception as e:
        logger.error(f"Track visitor error: {e}")
        raise InternalError("Failed to track visitor")


@router.get("/visitors")
async def visitor_count(runtime: QuizRuntime = Depends(get_runtime)):
    try:
        return {"success": True, "totalVisitors": await runtime.db.visitors.count_documents({})}
    except Exception as e:
        logger.error(f"Visitor count error: {e}")
        raise InternalError("Failed to get visitor count")


# ============================================================================
# FASTAPI APP
# ============================================================================


def create_app(runtime: Optional[QuizRuntime] = None) -> FastAPI:
    app = FastAPI(
        title="Cyber Quiz Live API",
        version=__version__,
        description="Live cyber-awareness quiz with real-time leaderboard",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    cors_env = os.getenv("CORS_ORIGINS", "")
    if cors_env == "*":
        origins = ["*"]
    elif cors_env:
        origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    else:
        origins = config.ALLOWED_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    register_error_handlers(app)
    app.include_router(public)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "livequiz.server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        log_level="info",
    )
