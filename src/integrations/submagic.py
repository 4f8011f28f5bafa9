import logging
import os
import threading
from typing import Any, Dict, Optional

import httpx

from clip_queue.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    InvalidPayloadError,
    RateLimitError,
    TransientApiError,
)
from poller.polling import ERROR, PROCESSING, READY, PollPolicy, TaskStatus, poll_until_complete

from .base import PollCallback, TaskAdapter

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.submagic.co"
DEFAULT_TEMPLATE = "Hormozi 2"

POLICY = PollPolicy(
    interval=10.0, error_interval=20.0, rate_limit_wait=60.0, timeout=30 * 60.0
)

# Submagic project status → rough progress
STATUS_PROGRESS = {
    "processing": 25,
    "transcribing": 50,
    "exporting": 75,
}


class SubmagicClient(TaskAdapter):
    """
    Client for the Submagic v1 project API (captioned vertical video).

    Payload:
        url (str): Required. Public URL of the source video.
        title (str): Required.
        language (str): Optional, default "en".
        template_name (str): Optional, default "Hormozi 2".
        magic_zooms (bool), magic_brolls (bool), remove_bad_takes (bool): Optional.
        remove_silence_pace (str): Optional, "natural" | "fast" | "extra-fast".
        dictionary (list[str]): Optional.
    """

    name = "submagic"
    poll_policy = POLICY

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key or os.getenv("SUBMAGIC_API_KEY")
        if not self.api_key:
            raise ConfigurationError("SUBMAGIC_API_KEY is not configured")

        self.client = client or httpx.Client(
            base_url=(base_url or DEFAULT_API_URL).rstrip("/"),
            timeout=timeout,
        )
        self.client.headers.update(
            {"x-api-key": self.api_key, "Content-Type": "application/json"}
        )

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # TaskAdapter
    # ------------------------------------------------------------------

    def validate_payload(self, payload: Dict[str, Any]) -> None:
        for field in ("url", "title"):
            if not payload.get(field):
                raise InvalidPayloadError(f"Payload missing required field: '{field}'")

    def create_task(self, payload: Dict[str, Any]) -> str:
        self.validate_payload(payload)
        url = payload["url"]
        title = payload["title"]

        body = {
            "title": title,
            "language": payload.get("language", "en"),
            "videoUrl": url,
            "templateName": payload.get("template_name", DEFAULT_TEMPLATE),
            "magicZooms": payload.get("magic_zooms", False),
            "magicBrolls": payload.get("magic_brolls", False),
            "removeBadTakes": payload.get("remove_bad_takes", False),
        }
        if payload.get("remove_silence_pace"):
            body["removeSilencePace"] = payload["remove_silence_pace"]
        if payload.get("dictionary"):
            body["dictionary"] = payload["dictionary"]

        project = self._request("POST", "/v1/projects", json=body)
        if not project.get("id"):
            raise ApiError("Invalid response from Submagic API: missing project ID")

        logger.info(f"Submagic: project {project['id']} created ({project.get('status')})")
        return project["id"]

    def get_task_status(self, task_id: str) -> TaskStatus:
        project = self.get_project(task_id)
        status = project.get("status")

        if status == "completed":
            return TaskStatus(READY, output_ref=project.get("downloadUrl"), raw=project)
        if status == "failed":
            return TaskStatus(
                ERROR, error=project.get("failureReason") or "Unknown error", raw=project
            )
        return TaskStatus(PROCESSING, progress=STATUS_PROGRESS.get(status), raw=project)

    def collect_result(
        self,
        status: TaskStatus,
        payload: Dict[str, Any],
        cancel: Optional[threading.Event] = None,
        on_poll: Optional[PollCallback] = None,
    ) -> Any:
        """
        Download URL of the rendered video, exporting first if needed.
        """
        project = status.raw
        if not status.output_ref:
            project = self.export(project["id"], cancel=cancel, on_poll=on_poll)

        return {
            "project_id": project["id"],
            "url": project.get("downloadUrl"),
            "direct_url": project.get("directUrl"),
            "preview_url": project.get("previewUrl"),
            "duration": (project.get("videoMetaData") or {}).get("duration"),
        }

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def get_project(self, project_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/projects/{project_id}")

    def export(
        self,
        project_id: str,
        fps: int = 30,
        width: int = 1080,
        height: int = 1920,
        cancel: Optional[threading.Event] = None,
        on_poll: Optional[PollCallback] = None,
    ) -> Dict[str, Any]:
        """
        Start the render and poll until the project has a download URL.
        """
        self._request(
            "POST",
            f"/v1/projects/{project_id}/export",
            json={"fps": fps, "width": width, "height": height},
        )
        logger.info(f"Submagic: export started for {project_id}")

        status = poll_until_complete(
            lambda: self._export_status(project_id),
            self.poll_policy,
            cancel=cancel,
            on_poll=on_poll,
            label=f"submagic export {project_id}",
        )
        return status.raw

    def _export_status(self, project_id: str) -> TaskStatus:
        project = self.get_project(project_id)
        if project.get("status") == "failed":
            return TaskStatus(
                ERROR, error=project.get("failureReason") or "Export failed", raw=project
            )
        if project.get("downloadUrl"):
            return TaskStatus(READY, output_ref=project["downloadUrl"], raw=project)
        return TaskStatus(PROCESSING, raw=project)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        logger.debug(f"Submagic: {method} {endpoint}")

        try:
            response = self.client.request(method, endpoint, **kwargs)
        except httpx.TransportError as e:
            raise TransientApiError(f"Submagic API network error: {e}") from e

        if response.is_error:
            raise _error_for(response)

        return response.json()


def _error_for(response: httpx.Response) -> ApiError:
    status = response.status_code
    try:
        body = response.json()
        detail = body.get("message") or body.get("error") or response.reason_phrase
    except (ValueError, AttributeError):
        detail = response.text or response.reason_phrase

    logger.error(f"Submagic API request failed: {status} {detail}")

    if status == 401:
        return AuthenticationError(
            "Submagic API authentication failed. Please check your SUBMAGIC_API_KEY.", status
        )
    if status == 403:
        return AuthenticationError(
            "Submagic API access forbidden. Check subscription or permissions.", status
        )
    if status == 429:
        return RateLimitError("Submagic API rate limit exceeded", status)
    if status >= 500:
        return TransientApiError(f"Submagic API unavailable: {status} {detail}", status)
    return ApiError(f"Submagic API error: {status} {detail}", status)
