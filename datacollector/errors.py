"""Exception hierarchy for job orchestration."""


class DataCollectorError(Exception):
    """Base class for all orchestration errors."""


class ConfigurationError(DataCollectorError):
    """Unknown job type, invalid settings or a missing service."""


class UnregisteredTypeError(ConfigurationError):
    """No handler was registered for a dequeued job's type."""


class ConflictError(DataCollectorError):
    """A job with the same id already exists."""


class JobNotFoundError(DataCollectorError):
    """No job exists with the given id."""


class IllegalTransitionError(DataCollectorError):
    """A lifecycle mutation that the state machine does not allow."""


class StateStoreError(DataCollectorError):
    """Persistence failure while reading or writing job state."""


class JobFailure(DataCollectorError):
    """Failure reported by a job handler.

    ``retryable`` decides whether the processor re-enqueues the job.
    Any exception class may opt in to retries by setting the same attribute.
    """

    retryable = False


class RetryableFailure(JobFailure):
    """Transient failure; the job is retried with backoff while attempts remain."""

    retryable = True


class TerminalFailure(JobFailure):
    """Unrecoverable failure; the job fails without further attempts."""


class JobCancelled(DataCollectorError):
    """Raised by a handler when it observes a cancellation request."""
