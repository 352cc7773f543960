"""Lab kit service errors. Routers map status_code onto HTTP responses."""

import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LabKitError(Exception):
    """Base error for the lab kit supply services."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class StudyNotFoundError(LabKitError):
    def __init__(self, study_id) -> None:
        super().__init__(f"Study {study_id} not found", 404)
        self.study_id = study_id


class ForecastServiceError(LabKitError):
    """Upstream read failed; the forecast run is aborted."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message, status_code)


class LabKitSettingsError(LabKitError):
    pass


class LabKitRecommendationError(LabKitError):
    pass


async def read_or_fail(awaitable: Awaitable[T], message: str, study_id) -> T:
    """Await a datastore read, turning any failure into a ForecastServiceError."""
    try:
        return await awaitable
    except LabKitError:
        raise
    except Exception as exc:
        logger.error(f"{message} for study {study_id}: {exc}")
        raise ForecastServiceError(message) from exc
