"""Question bank and the per-user question shuffle.

Every participant answers their own ordering of the same pool. The admin
only advances a shared index, and each client resolves "question N" from its
own sequence, so the ordering must be reproducible from the user id alone.
"""

import logging
import random
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import orjson

from .config import config
from .models import Question

logger = logging.getLogger(__name__)

DEFAULT_QUESTIONS_FILE = Path(__file__).parent / "data" / "questions.json"

# Linear congruential generator constants (period 233280)
LCG_MULTIPLIER = 9301
LCG_INCREMENT = 49297
LCG_MODULUS = 233280


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def user_seed(user_id: str) -> int:
    """32-bit polynomial (x31) hash of the id, made non-negative."""
    h = 0
    raw = user_id.encode("utf-16-le")
    # hash over UTF-16 code units so ids outside the BMP keep a stable seed
    for i in range(0, len(raw), 2):
        unit = raw[i] | (raw[i + 1] << 8)
        h = _to_int32((h << 5) - h + unit)
    return abs(h)


def user_specific_questions(user_id: str, count: int, question_ids: Iterable[int]) -> List[int]:
    """Deterministically pick ``count`` distinct ids for ``user_id``.

    Draws without replacement from ``question_ids`` using an LCG seeded from
    the user id. Raises ``ValueError`` when the pool is too small.
    """
    available = list(question_ids)
    if count < 0:
        raise ValueError("count must not be negative")
    if count > len(available):
        raise ValueError(f"Requested {count} questions but the bank only has {len(available)}")

    seed = user_seed(user_id)
    selected: List[int] = []
    while len(selected) < count:
        seed = (seed * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
        index = int(seed / LCG_MODULUS * len(available))
        selected.append(available.pop(index))
    return selected


class QuestionBank:
    """Read-only, ordered collection of questions."""

    def __init__(self, questions: Iterable[Question]):
        self._questions: List[Question] = list(questions)
        self._by_id: Dict[int, Question] = {}
        for q in self._questions:
            if q.id in self._by_id:
                raise ValueError(f"Duplicate question id {q.id}")
            self._by_id[q.id] = q
        if not self._questions:
            raise ValueError("Question bank is empty")

    @classmethod
    def from_file(cls, path: Optional[str] = None) -> "QuestionBank":
        source = Path(path or config.QUESTIONS_FILE or DEFAULT_QUESTIONS_FILE)
        items = orjson.loads(source.read_bytes())
        bank = cls(Question(**item) for item in items)
        logger.info(f"✓ Loaded {len(bank)} questions from {source.name}")
        return bank

    def __len__(self) -> int:
        return len(self._questions)

    def __contains__(self, question_id: int) -> bool:
        return question_id in self._by_id

    @property
    def ids(self) -> List[int]:
        return [q.id for q in self._questions]

    def get(self, question_id: int) -> Optional[Question]:
        return self._by_id.get(question_id)

    def random_question(self) -> Question:
        return random.choice(self._questions)

    def for_user(self, user_id: str, count: int) -> List[Question]:
        return [self._by_id[qid] for qid in user_specific_questions(user_id, count, self.ids)]

    def question_at(self, user_id: str, index: int, count: int) -> Optional[Question]:
        """The question a participant sees at shared ``index``."""
        if index < 0 or index >= count or count > len(self):
            return None
        return self.for_user(user_id, count)[index]
