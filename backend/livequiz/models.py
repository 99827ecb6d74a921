import re
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .config import config

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MOBILE_RE = re.compile(r"^[6-9]\d{9}$")  # Indian mobile numbers
ROLL_NO_RE = re.compile(r"^\d{3}[A-Z]{3}\d{3}$")  # e.g. 235UCS001


# ============================================================================
# QUESTIONS
# ============================================================================


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: int
    question: str
    options: List[str] = Field(min_length=4, max_length=4)
    correctAnswer: int = Field(ge=0, le=3)
    category: str = "General"

    def public(self) -> Dict:
        """Question as shown to participants, without the answer."""
        return self.model_dump(exclude={"correctAnswer"})


# ============================================================================
# QUIZ STATE
# ============================================================================


class QuizStateModel(BaseModel):
    model_config = ConfigDict(extra="ignore")
    isActive: bool = False
    currentQuestionIndex: int = 0
    currentQuestionId: Optional[int] = None
    questionStartTime: Optional[int] = None  # epoch ms
    countdownActive: bool = False
    countdownValue: int = 0
    totalQuestions: int = config.DEFAULT_TOTAL_QUESTIONS
    startedAt: Optional[str] = None
    endedAt: Optional[str] = None
    participants: int = 0
    round: int = 1


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")
    totalQuestions: Optional[int] = Field(default=None, ge=1, le=config.MAX_TOTAL_QUESTIONS)


class StartCountdownAction(_ActionBase):
    action: Literal["start_countdown"]


class StartQuestionAction(_ActionBase):
    action: Literal["start_question"]
    questionId: Optional[int] = None


class NextQuestionAction(_ActionBase):
    action: Literal["next_question"]
    questionId: Optional[int] = None


class EndQuizAction(_ActionBase):
    action: Literal["end_quiz"]


class ResetAction(_ActionBase):
    action: Literal["reset"]


class UpdateCountdownAction(_ActionBase):
    action: Literal["update_countdown"]
    countdownValue: int = Field(default=0, ge=0, le=config.COUNTDOWN_START)


QuizAction = Annotated[
    Union[
        StartCountdownAction,
        StartQuestionAction,
        NextQuestionAction,
        EndQuizAction,
        ResetAction,
        UpdateCountdownAction,
    ],
    Field(discriminator="action"),
]


_action_adapter = TypeAdapter(QuizAction)


def parse_action(data) -> BaseModel:
    """Validate a raw admin action body against the tagged action schemas."""
    return _action_adapter.validate_python(data)


# ============================================================================
# USERS & RESULTS
# ============================================================================


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    rollNo: str
    mobileNo: str
    email: str

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("rollNo")
    @classmethod
    def _check_roll_no(cls, v: str) -> str:
        v = v.strip().upper()
        if not ROLL_NO_RE.match(v):
            raise ValueError("Roll number must look like 235UCS001")
        return v

    @field_validator("mobileNo")
    @classmethod
    def _check_mobile(cls, v: str) -> str:
        v = v.strip()
        if not MOBILE_RE.match(v):
            raise ValueError("Invalid mobile number")
        return v

    @field_validator("email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid email address")
        return v


class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    rollNo: str
    mobileNo: str
    email: str
    createdAt: str
    updatedAt: str


class AnswerRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")
    userId: str
    questionId: int
    round: int = 1
    selectedOption: int
    selectedText: str = ""
    isCorrect: bool
    timeTaken: float
    pointsEarned: int
    firstCorrect: bool = False
    answeredAt: str


class ParticipantResult(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    userId: str
    name: str
    rollNo: str = ""
    mobileNo: str = ""
    email: str = ""
    answers: List[Dict] = []
    score: int = 0
    totalPoints: int = 0
    totalQuestions: int = config.DEFAULT_TOTAL_QUESTIONS
    percentage: int = 0
    isEligibleForReward: bool = False
    rewardGiven: bool = False
    round: int = 1
    createdAt: str
    updatedAt: Optional[str] = None
    completedAt: Optional[str] = None


class LeaderboardEntry(BaseModel):
    rank: int
    userId: str
    name: str
    rollNo: str = ""
    totalPoints: int = 0
    score: int = 0
    totalQuestions: int = config.DEFAULT_TOTAL_QUESTIONS
    percentage: int = 0
    lastAnsweredAt: Optional[str] = None


# ============================================================================
# REQUEST BODIES
# ============================================================================


class LiveAnswerSubmit(BaseModel):
    userId: str = Field(min_length=1)
    questionId: int
    selectedOption: int
    timeTaken: float = Field(allow_inf_nan=False)
    name: Optional[str] = None
    rollNo: Optional[str] = None


class QuizSubmit(BaseModel):
    """Legacy one-shot submission of a finished quiz."""
    userId: Optional[str] = None
    name: str = Field(min_length=1)
    rollNo: str = Field(min_length=1)
    mobileNo: str = Field(min_length=1)
    email: str = Field(min_length=1)
    score: int = Field(ge=0)
    totalQuestions: int = Field(ge=1)
    answers: List[Dict]


class RewardUpdate(BaseModel):
    userId: str = Field(min_length=1)
    rewardGiven: bool


class AdminLogin(BaseModel):
    username: str
    password: str
