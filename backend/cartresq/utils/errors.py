# /cartresq/utils/errors.py

# Exception taxonomy shared by the scheduler, the dispatcher and the controllers.


class SchedulerError(Exception):
    """Base class for job scheduling failures."""


class JobStoreUnavailableError(SchedulerError):
    """The durable job store could not be reached. Callers of schedule() must handle this."""


class UnknownJobError(SchedulerError):
    """A job was claimed whose name has no registered handler."""


class DeliveryError(Exception):
    """Base class for mail provider failures."""


class RateLimitedError(DeliveryError):
    """The provider asked us to slow down (SMTP 421/450/451/452)."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class ProviderBlockedError(DeliveryError):
    """The provider suspended sending because of unusual activity (SMTP 550)."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class FatalDeliveryError(DeliveryError):
    """Retry budget exhausted. The job is recorded as failed and an operator must act."""


class InvalidTransitionError(Exception):
    """A reminder funnel marker change that the transition table does not allow."""


class CampaignNotFoundError(LookupError):
    pass
