"""
Assessment API Client

aiohttp client for the three endpoints the attempt controller needs:
definition fetch, submission and submission history. Every non-success
exchange is raised as an ``ApiError`` carrying the HTTP status (None when
no response arrived) and the server's message, leaving classification to
the reconciler.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from attempt_engine.attempts.schemas import (
    AssessmentDefinition,
    AssessmentKind,
    SubmissionHistory,
    SubmissionRecord,
    SubmissionResponse,
)
from attempt_engine.common.error_handling import ApiError, ErrorCode
from attempt_engine.common.logger import app_logger

logger = app_logger.getChild("attempts.client")

RESOURCE_PATHS = {
    AssessmentKind.QUIZ: "quizzes",
    AssessmentKind.SKILL_TEST: "ielts/tests",
}

# Skill tests have no per-test history route; the user's own submissions
# across all skill tests are fetched and filtered instead
SKILL_TEST_HISTORY_PATH = "ielts/my-submissions"


class AssessmentApiClient:
    """
    Client for the assessment API.

    The aiohttp session is created lazily on first use and shared by all
    requests; call ``close`` when done with the client.
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: API root, e.g. ``https://example.org/api``
            request_timeout: Total timeout for definition and history requests
            headers: Extra headers sent with every request (authentication)
            session: Existing aiohttp session to use instead of creating one
        """
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None
        self._initialize_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, api_config, headers: Optional[Dict[str, str]] = None) -> "AssessmentApiClient":
        return cls(
            base_url=api_config.base_url,
            request_timeout=api_config.request_timeout_seconds,
            headers=headers,
        )

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Create the HTTP session on first use."""
        if self._session is not None:
            return self._session

        async with self._initialize_lock:
            if self._session is None:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                    headers=self.headers,
                )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _url(self, kind: AssessmentKind, assessment_id: int, *suffix: str) -> str:
        parts = [self.base_url, RESOURCE_PATHS[AssessmentKind(kind)], str(assessment_id), *suffix]
        return "/".join(parts)

    async def _request(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Perform a request and return the decoded body.

        Args:
            method: HTTP method
            url: Absolute URL
            json_body: Optional JSON request body
            timeout: Optional total timeout overriding the session default

        Returns:
            Decoded JSON body, unwrapped from a ``{"data": ...}`` envelope

        Raises:
            ApiError: For transport failures and non-2xx responses
        """
        session = await self._ensure_session()
        kwargs: Dict[str, Any] = {}
        if json_body is not None:
            kwargs["json"] = json_body
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        try:
            async with session.request(method, url, **kwargs) as response:
                body = await self._read_body(response)
                if response.status >= 400:
                    message = _error_message(body) or response.reason or "Request failed"
                    logger.warning(f"{method} {url} failed: {response.status} {message}")
                    raise ApiError(message, status=response.status, details={"url": url})
                return _unwrap(body)
        except asyncio.TimeoutError as e:
            raise ApiError("Request timed out", code=ErrorCode.API_TIMEOUT,
                           details={"url": url}, cause=e) from e
        except aiohttp.ClientError as e:
            raise ApiError(f"Connection error: {e}", code=ErrorCode.API_CONNECTION_ERROR,
                           details={"url": url}, cause=e) from e

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        try:
            return await response.json(content_type=None)
        except ValueError:
            return {"message": await response.text()}

    async def fetch_definition(self, kind: AssessmentKind, assessment_id: int) -> AssessmentDefinition:
        """
        Fetch the read-only definition of an assessment.

        Args:
            kind: Assessment kind
            assessment_id: ID of the assessment

        Returns:
            Parsed definition
        """
        payload = await self._request("GET", self._url(kind, assessment_id))
        return AssessmentDefinition.from_payload(payload, AssessmentKind(kind))

    async def submit(
        self,
        kind: AssessmentKind,
        assessment_id: int,
        answers: List[Dict[str, Any]],
        time_spent_seconds: int,
        timeout: Optional[float] = None
    ) -> SubmissionResponse:
        """
        Submit an attempt.

        Args:
            kind: Assessment kind
            assessment_id: ID of the assessment
            answers: Ordered ``{"questionId", "answerPayload"}`` pairs
            time_spent_seconds: Whole seconds spent on the attempt
            timeout: Optional total timeout for this request

        Returns:
            Parsed submission response
        """
        body = {"answers": answers, "timeSpentSeconds": time_spent_seconds}
        logger.info(f"Submitting {len(answers)} answers for {kind} {assessment_id}")
        payload = await self._request(
            "POST", self._url(kind, assessment_id, "submit"), json_body=body, timeout=timeout
        )
        return SubmissionResponse.model_validate(payload or {})

    async def fetch_submission_history(self, kind: AssessmentKind, assessment_id: int) -> SubmissionHistory:
        """
        Fetch the current user's submission history on an assessment.

        Args:
            kind: Assessment kind
            assessment_id: ID of the assessment

        Returns:
            Parsed submission history, oldest submission first
        """
        if AssessmentKind(kind) == AssessmentKind.SKILL_TEST:
            payload = await self._request("GET", f"{self.base_url}/{SKILL_TEST_HISTORY_PATH}")
            return _history_for_test(payload, assessment_id)

        payload = await self._request("GET", self._url(kind, assessment_id, "submission-history"))
        return SubmissionHistory.model_validate(payload or {})


def _history_for_test(payload: Any, test_id: int) -> SubmissionHistory:
    """Build one test's history from the user's skill-test submissions (newest first)"""
    if isinstance(payload, dict):
        payload = payload.get("data") or []
    if not isinstance(payload, list):
        raise ValueError(f"Unexpected submission list: {type(payload).__name__}")

    records = []
    for item in reversed(payload):
        if not isinstance(item, dict):
            continue
        item_test_id = item.get("testId", (item.get("test") or {}).get("id"))
        if str(item_test_id) == str(test_id):
            records.append(SubmissionRecord.model_validate({"attemptNumber": len(records) + 1, **item}))

    scores = [record.score for record in records if record.score is not None]
    return SubmissionHistory(
        submissions=records,
        current_attempt=len(records),
        max_score=max(scores) if scores else None,
    )


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body and ("success" in body or len(body) == 1):
        return body["data"]
    return body


def _error_message(body: Any) -> str:
    if not isinstance(body, dict):
        return str(body) if body else ""
    message = body.get("message") or body.get("error") or ""
    if isinstance(message, list):
        message = "; ".join(str(m) for m in message)
    return str(message)
