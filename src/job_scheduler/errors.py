class JobSchedulerError(Exception):
    """
    Base class for all job scheduler errors.

    The ``retryable`` flag tells a task queue whether a delivery that raised
    this error may be attempted again.
    """
    retryable: bool = False


class ValidationError(JobSchedulerError):
    """Malformed or missing input. The caller must fix the request."""


class InvalidScheduleError(ValidationError):
    """A scheduled time or delay cannot be honoured."""


class InvalidCronError(InvalidScheduleError):
    """A cron expression does not parse."""


class InvalidStateError(JobSchedulerError):
    """The operation is not legal for the job's current status."""


class RetryExhaustedError(InvalidStateError):
    """A manual retry was denied because the job's retry budget is spent."""


class NotFoundError(JobSchedulerError):
    """No job with that id exists for the caller."""


class QueueUnavailableError(JobSchedulerError):
    """The task queue rejected a request or did not answer in time."""
    retryable = True


class JobGoneError(JobSchedulerError):
    """A queued job no longer exists in the store at execution time."""
