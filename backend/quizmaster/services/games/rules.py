import math
import re

from .errors import InvalidInput

MAX_QUESTION_LENGTH = 500
MAX_ANSWER_LENGTH = 200
MAX_USERNAME_LENGTH = 24

_USERNAME_STRIP = re.compile(r'[^\w \-]', re.UNICODE)


def normalize_answer(text) -> str:
    """Case-fold and trim. Stored answers and guesses are only compared in this form."""
    return str(text or '').casefold().strip()


def clean_question(question) -> str:
    question = str(question or '').strip()
    if not question:
        raise InvalidInput('Question is required')
    if len(question) > MAX_QUESTION_LENGTH:
        raise InvalidInput(f'Question must be at most {MAX_QUESTION_LENGTH} characters')
    return question


def clean_answer(answer) -> str:
    answer = normalize_answer(answer)
    if not answer:
        raise InvalidInput('Answer is required')
    if len(answer) > MAX_ANSWER_LENGTH:
        raise InvalidInput(f'Answer must be at most {MAX_ANSWER_LENGTH} characters')
    return answer


def clean_guess(guess) -> str:
    if guess is None or not str(guess).strip():
        raise InvalidInput('Guess is required')
    guess = str(guess)
    if len(guess) > MAX_ANSWER_LENGTH:
        raise InvalidInput(f'Guess must be at most {MAX_ANSWER_LENGTH} characters')
    return guess


def clean_username(name) -> str:
    name = _USERNAME_STRIP.sub('', str(name or '').strip()).strip()
    if not name or len(name) > MAX_USERNAME_LENGTH:
        raise InvalidInput(f'Username must be 1-{MAX_USERNAME_LENGTH} letters, digits, spaces, _ or -')
    return name


def parse_duration(value, default, maximum) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise InvalidInput('duration_seconds must be a number')
    try:
        duration = float(value)
    except (TypeError, ValueError):
        raise InvalidInput('duration_seconds must be a number')
    if not math.isfinite(duration) or duration <= 0 or duration > maximum:
        raise InvalidInput(f'duration_seconds must be between 0 and {maximum}')
    return duration
