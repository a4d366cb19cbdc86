"""
Sentry Client
=============

Issue source backed by the Sentry REST API.

Handles:
- Bearer token authentication
- US and DE regions
- Cursor pagination through the Link header
- Issue detail enriched with the latest event (stacktraces, breadcrumbs,
  request, user and runtime context)
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from glass.core.config import settings
from glass.core.errors import SourceError, SourceErrorKind
from glass.core.sources.base import IssueSource, SourceIssue

logger = structlog.get_logger()


SENTRY_US_BASE_URL = "https://sentry.io/api/0"
SENTRY_DE_BASE_URL = "https://de.sentry.io/api/0"

# Headers never copied into stored request context
SENSITIVE_HEADERS = {"cookie", "authorization", "x-csrftoken"}


def base_url_for_region(region: str) -> str:
    return SENTRY_DE_BASE_URL if region == "de" else SENTRY_US_BASE_URL


# ==========================================================================
# Response Conversion
# ==========================================================================

def _metadata(issue: Dict[str, Any]) -> Dict[str, str]:
    raw = issue.get("metadata") or {}
    return {
        key: raw[key]
        for key in ("type", "value", "filename", "function")
        if raw.get(key)
    }


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def convert_issue(issue: Dict[str, Any]) -> SourceIssue:
    """Convert an issue list/detail payload into a SourceIssue."""
    project = issue.get("project") or {}
    data = {
        "sentryId": str(issue["id"]),
        "title": issue.get("title", ""),
        "shortId": issue.get("shortId", ""),
        "culprit": issue.get("culprit") or "",
        "permalink": issue.get("permalink"),
        "level": issue.get("level"),
        "status": issue.get("status"),
        "firstSeen": issue.get("firstSeen"),
        "lastSeen": issue.get("lastSeen"),
        "count": _to_int(issue.get("count")),
        "userCount": _to_int(issue.get("userCount")),
        "metadata": _metadata(issue),
    }
    return SourceIssue(
        id=str(issue["id"]),
        project=project.get("slug", ""),
        data=data,
    )


def _convert_frame(frame: Dict[str, Any]) -> Dict[str, Any]:
    converted = {
        "filename": frame.get("filename") or "",
        "absPath": frame.get("absPath"),
        "function": frame.get("function"),
        "module": frame.get("module"),
        "lineNo": frame.get("lineNo"),
        "colNo": frame.get("colNo"),
        "inApp": bool(frame.get("inApp")),
    }
    if frame.get("context"):
        converted["context"] = [list(pair) for pair in frame["context"]]
    if frame.get("vars"):
        converted["vars"] = frame["vars"]
    return converted


def _convert_exception(value: Dict[str, Any]) -> Dict[str, Any]:
    mechanism = value.get("mechanism")
    stacktrace = value.get("stacktrace")
    return {
        "type": value.get("type") or "Error",
        "value": value.get("value") or "",
        "module": value.get("module"),
        "mechanism": (
            {"type": mechanism.get("type"), "handled": mechanism.get("handled")}
            if mechanism else None
        ),
        "stacktrace": (
            {"frames": [_convert_frame(f) for f in stacktrace.get("frames") or []]}
            if stacktrace else None
        ),
    }


def _entry_data(entries: List[Dict[str, Any]], entry_type: str) -> Optional[Dict[str, Any]]:
    for entry in entries:
        if entry.get("type") == entry_type and isinstance(entry.get("data"), dict):
            return entry["data"]
    return None


def _extract_request(entries: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    data = _entry_data(entries, "request")
    if not data or not (data.get("method") or data.get("url")):
        return None
    request: Dict[str, Any] = {
        "method": data.get("method") or "UNKNOWN",
        "url": data.get("url") or "",
    }
    if data.get("query"):
        request["query"] = data["query"]
    if data.get("data"):
        request["data"] = data["data"]
    headers = [
        pair for pair in data.get("headers") or []
        if pair and pair[0].lower() not in SENSITIVE_HEADERS
    ]
    if headers:
        request["headers"] = headers
    return request


def _extract_user(user: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(user, dict):
        return None
    if not (user.get("id") or user.get("email") or user.get("ip_address")):
        return None
    info: Dict[str, Any] = {}
    for source_key, key in (
        ("id", "id"),
        ("email", "email"),
        ("ip_address", "ipAddress"),
        ("username", "username"),
    ):
        if user.get(source_key):
            info[key] = user[source_key]
    geo = user.get("geo") or {}
    geo_info = {
        key: geo[source_key]
        for source_key, key in (("country_code", "countryCode"), ("city", "city"), ("region", "region"))
        if geo.get(source_key)
    }
    if geo_info:
        info["geo"] = geo_info
    return info


def _extract_contexts(contexts: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(contexts, dict):
        return None
    info: Dict[str, Any] = {}
    for source_key, key, fields in (
        ("browser", "browser", ("name", "version")),
        ("client_os", "os", ("name", "version")),
        ("device", "device", ("family", "model", "brand")),
        ("runtime", "runtime", ("name", "version")),
    ):
        raw = contexts.get(source_key) or {}
        values = {name: raw[name] for name in fields if raw.get(name)}
        if values:
            info[key] = values
    return info or None


def convert_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Extract the analysis-relevant parts of a latest-event payload."""
    entries = event.get("entries") or []
    tags = {tag["key"]: tag["value"] for tag in event.get("tags") or [] if "key" in tag}

    release = event.get("release")
    if isinstance(release, dict):
        release = release.get("version")

    exception_data = _entry_data(entries, "exception") or {}
    breadcrumb_data = _entry_data(entries, "breadcrumbs") or {}

    return {
        "eventId": event.get("eventID"),
        "platform": event.get("platform"),
        "exceptions": [
            _convert_exception(v) for v in exception_data.get("values") or [] if isinstance(v, dict)
        ],
        "breadcrumbs": [
            {
                "type": crumb.get("type") or "default",
                "category": crumb.get("category") or "",
                "level": crumb.get("level") or "info",
                "message": crumb.get("message"),
                "timestamp": crumb.get("timestamp") or "",
                "data": crumb.get("data"),
            }
            for crumb in breadcrumb_data.get("values") or []
            if isinstance(crumb, dict)
        ],
        "environment": tags.get("environment"),
        "release": release,
        "tags": tags,
        "request": _extract_request(entries),
        "user": _extract_user(event.get("user")),
        "contexts": _extract_contexts(event.get("contexts")),
    }


# ==========================================================================
# Client
# ==========================================================================

class SentryClient(IssueSource):
    """
    Client for the Sentry REST API.

    Lists unresolved issues assigned to the configured team and fetches
    issue detail merged with the latest event.
    """

    def __init__(
        self,
        organization: str = None,
        team: str = None,
        auth_token: str = None,
        region: str = None,
        page_size: int = None,
        max_pages: int = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.organization = organization or settings.SENTRY_ORGANIZATION
        self.team = team or settings.SENTRY_TEAM
        self.page_size = page_size or settings.SENTRY_PAGE_SIZE
        self.max_pages = max_pages or settings.SENTRY_MAX_PAGES
        self.base_url = base_url_for_region(region or settings.SENTRY_REGION)
        token = auth_token or settings.SENTRY_AUTH_TOKEN or ""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
            transport=transport,
        )
        logger.info(
            "sentry_client_initialized",
            organization=self.organization,
            team=self.team,
            base_url=self.base_url,
        )

    @property
    def default_query(self) -> str:
        return f"is:unresolved assigned:#{self.team}"

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            logger.warning("sentry_request_failed", path=path, error=str(e))
            raise SourceError(SourceErrorKind.NETWORK, f"Sentry request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            message = "Invalid or missing auth token" if status == 401 else "Access forbidden"
            raise SourceError(SourceErrorKind.AUTH, message, status)
        if status == 404:
            raise SourceError(SourceErrorKind.NOT_FOUND, f"Sentry resource not found: {path}", status)
        if status == 429:
            reset = response.headers.get("x-sentry-rate-limit-reset")
            message = "Sentry rate limit exceeded"
            if reset:
                message += f" (resets at {reset})"
            raise SourceError(SourceErrorKind.RATE_LIMIT, message, status)
        if status >= 400:
            raise SourceError(SourceErrorKind.API, f"Sentry API error: HTTP {status}", status)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise SourceError(
                SourceErrorKind.API,
                "Failed to parse Sentry response JSON",
                response.status_code,
            ) from e

    async def list_issues(self, query: Optional[str] = None) -> List[SourceIssue]:
        """List issues, following pagination up to ``max_pages`` pages."""
        path = f"/organizations/{self.organization}/issues/"
        params: Dict[str, Any] = {"query": query or self.default_query, "limit": self.page_size}
        issues: List[SourceIssue] = []
        pages = 0

        while True:
            response = await self._get(path, params)
            payload = self._json(response)
            if not isinstance(payload, list):
                raise SourceError(SourceErrorKind.API, "Unexpected Sentry issue list payload")
            try:
                issues.extend(convert_issue(item) for item in payload)
            except (KeyError, TypeError, AttributeError) as e:
                raise SourceError(SourceErrorKind.API, f"Malformed Sentry issue: {e}") from e
            pages += 1

            next_link = response.links.get("next", {})
            cursor = next_link.get("cursor")
            if next_link.get("results") != "true" or not cursor or pages >= self.max_pages:
                break
            params = {**params, "cursor": cursor}

        logger.info("sentry_issues_listed", count=len(issues), pages=pages)
        return issues

    async def get_issue(self, issue_id: str) -> SourceIssue:
        response = await self._get(f"/organizations/{self.organization}/issues/{issue_id}/")
        try:
            return convert_issue(self._json(response))
        except (KeyError, TypeError, AttributeError) as e:
            raise SourceError(SourceErrorKind.API, f"Malformed Sentry issue: {e}") from e

    async def get_latest_event(self, issue_id: str) -> Dict[str, Any]:
        response = await self._get(
            f"/organizations/{self.organization}/issues/{issue_id}/events/latest/"
        )
        event = self._json(response)
        if not isinstance(event, dict):
            raise SourceError(SourceErrorKind.API, "Unexpected Sentry event payload")
        return convert_event(event)

    async def get_issue_detail(self, issue_id: str) -> SourceIssue:
        issue = await self.get_issue(issue_id)
        event = await self.get_latest_event(issue_id)
        issue.data = {**issue.data, **event}
        return issue
