""" Common retry policies to access the coordination store

    Other than tenacity, this module SHOULD NOT have other dependencies
"""

import logging

from tenacity import retry_if_exception_type
from tenacity.before_sleep import before_sleep_log
from tenacity.stop import stop_after_attempt, stop_never
from tenacity.wait import wait_fixed

log = logging.getLogger(__name__)


class RedisRetryPolicyUponInitialization:
    """Retry policy upon service initialization"""

    WAIT_SECS = 5
    ATTEMPTS_COUNT = 20

    def __init__(self, logger: logging.Logger | None = None):
        logger = logger or log

        self.kwargs = {
            "wait": wait_fixed(self.WAIT_SECS),
            "stop": stop_after_attempt(self.ATTEMPTS_COUNT),
            "before_sleep": before_sleep_log(logger, logging.WARNING),
            "reraise": True,
        }


class StoreRetryPolicyUponConnectionLoss:
    """Retries a store operation for as long as the connection is lost

    attempts=None retries forever: connection loss is never fatal on its own
    """

    def __init__(
        self,
        retry_on: type[Exception],
        *,
        wait_secs: float = 1.0,
        attempts: int | None = None,
        logger: logging.Logger | None = None,
    ):
        logger = logger or log

        self.kwargs = {
            "retry": retry_if_exception_type(retry_on),
            "wait": wait_fixed(wait_secs),
            "stop": stop_never if attempts is None else stop_after_attempt(attempts),
            "before_sleep": before_sleep_log(logger, logging.WARNING),
            "reraise": True,
        }
