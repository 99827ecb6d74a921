"""Scoring rules for live answers.

Points decay linearly with answer time: 100 at zero seconds, minus 5 per
second, so an answer at the end of the 15 second window is still worth 25.
The first participant to answer a question correctly gets a flat +50.
"""

import math

from .config import config

MAX_BASE_POINTS = 100
POINTS_LOST_PER_SECOND = 5
FIRST_CORRECT_BONUS = 50


def round_half_up(value: float) -> int:
    # round() is banker's rounding; scores round .5 upwards
    return int(math.floor(value + 0.5))


def calc_points(time_taken: float, is_first_correct: bool, max_time: float = config.ANSWER_WINDOW_SEC) -> int:
    """Points for a correct answer given after ``time_taken`` seconds."""
    if not math.isfinite(time_taken) or time_taken < 0 or time_taken > max_time:
        return 0

    base_points = max(0, MAX_BASE_POINTS - POINTS_LOST_PER_SECOND * time_taken)
    bonus = FIRST_CORRECT_BONUS if is_first_correct else 0
    return round_half_up(base_points + bonus)


def calc_percentage(score: int, total_questions: int) -> int:
    if total_questions <= 0:
        return 0
    return round_half_up(score / total_questions * 100)


def is_eligible_for_reward(percentage: int) -> bool:
    return percentage >= config.REWARD_THRESHOLD
