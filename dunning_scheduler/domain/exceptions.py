"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer

    Queue workers consult ``retryable`` to decide between a backoff retry
    and filing the task as failed.
    """

    retryable = True


class ValidationError(DomainException):
    """Input rejected: bad timestamp, duplicate plan, illegal transition"""

    retryable = False


class DuplicatePlanError(ValidationError):
    """A non-cancelled plan already exists for the credit"""

    pass


class NotFoundError(DomainException):
    """Referenced plan or notification record does not exist"""

    retryable = False


class ChannelDeliveryError(DomainException):
    """Channel sender failed to deliver a message"""

    pass


class RetryBudgetExhaustedError(ChannelDeliveryError):
    """Delivery failed and the record has no attempts left"""

    retryable = False


class QueueError(DomainException):
    """Queue backend failed to enqueue or remove a task"""

    pass


class UpstreamLookupError(DomainException):
    """Credit service unavailable or returned invalid data"""

    pass


class ConfigurationError(DomainException):
    """Missing channel mapping, template, or unusable policy settings"""

    retryable = False
