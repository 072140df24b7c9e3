from datetime import datetime
from typing import Optional

from croniter import croniter

from job_scheduler.domain.job import utc_now
from job_scheduler.errors import InvalidCronError


def is_valid_cron(expression: Optional[str]) -> bool:
    if not expression or not expression.strip():
        return False
    try:
        croniter(expression.strip(), utc_now(), second_at_beginning=True)
    except (ValueError, KeyError):
        return False
    return True


def validate_cron(expression: Optional[str]) -> str:
    """
    Return the stripped expression or raise InvalidCronError.

    Five field expressions are standard cron; a sixth leading field is read
    as seconds.
    """
    if not is_valid_cron(expression):
        raise InvalidCronError(f"Invalid cron expression: {expression!r}")
    return expression.strip()


def next_cron_run(expression: str, after: Optional[datetime] = None) -> datetime:
    """
    Return the first instant strictly after ``after`` matching ``expression``.
    """
    start = after or utc_now()
    cron = croniter(validate_cron(expression), start, second_at_beginning=True)
    return cron.get_next(datetime)
