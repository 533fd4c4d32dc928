import json
import logging
from typing import Any, Dict, NamedTuple, Optional

import requests

from visitkit.config import Config

logger = logging.getLogger(__name__)

RECOMPUTE_ALL_PATH = "/lab-kit-recommendations/recompute-all"

# Body sent on every scheduled run
CRON_RECOMPUTE_BODY: Dict[str, Any] = {
    "daysAhead": 60,
    "studyStatuses": ["enrolling", "active"],
}


class RelayedResponse(NamedTuple):
    """Batch endpoint response as received: status, raw body and content type."""
    status_code: int
    content: bytes
    media_type: Optional[str]

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


def _error(status_code: int, message: str) -> RelayedResponse:
    return RelayedResponse(status_code, json.dumps({"error": message}).encode("utf-8"), "application/json")


class CronTrigger:
    """Forwards the scheduled recompute to the batch endpoint with the job token."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        job_token: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.base_url = (base_url or Config.CRON_BASE_URL).rstrip("/")
        self.job_token = job_token if job_token is not None else Config.LAB_KIT_RECOMMENDATION_JOB_TOKEN
        self.timeout = timeout or Config.CRON_TIMEOUT_SECS

    def run(self) -> RelayedResponse:
        """
        Call recompute-all once.

        Returns:
            The batch endpoint's status, body bytes and content type, unchanged.
            Failures to reach it come back as 502/504 with a JSON error.
        """
        if not self.job_token:
            logger.error("LAB_KIT_RECOMMENDATION_JOB_TOKEN is not configured; cron trigger skipped")
            return _error(500, "Lab kit recommendation job token is not configured.")

        url = f"{self.base_url}{RECOMPUTE_ALL_PATH}"
        try:
            logger.info(f"Triggering lab kit recompute at {url}")
            response = requests.post(
                url,
                json=CRON_RECOMPUTE_BODY,
                headers={"Authorization": f"Bearer {self.job_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.error(f"Recompute request timed out after {self.timeout} seconds")
            return _error(504, "Recompute request timed out.")
        except requests.exceptions.RequestException as e:
            logger.error(f"Recompute request failed: {e}", exc_info=True)
            return _error(502, f"Recompute request failed: {e}")

        logger.info(f"Recompute responded with status {response.status_code}")
        return RelayedResponse(response.status_code, response.content, response.headers.get("Content-Type"))
