import logging
from dataclasses import dataclass
from typing import Any, List, Optional
from urllib.parse import quote, quote_plus

import requests


class PlexError(Exception):
    """Base exception for Plex API errors."""


class TransportError(PlexError):
    """The server could not be reached (refused, DNS, timeout)."""

    def __init__(self, url: str, description: str) -> None:
        super().__init__(f"Cannot connect to {url}: {description}")
        self.url = url
        self.description = description


class HttpStatusError(PlexError):
    """The server answered with a non-2xx status."""

    def __init__(self, url: str, status_code: int, reason: str = "") -> None:
        super().__init__(f"GET {url} failed with HTTP {status_code} {reason}".rstrip())
        self.url = url
        self.status_code = status_code
        self.reason = reason


class ParseError(PlexError):
    """A response did not have the expected shape."""


def _require(data: dict, key: str, kind: str) -> Any:
    if not isinstance(data, dict) or key not in data or data[key] is None:
        raise ParseError(f"{kind} entry is missing required field '{key}'")
    return data[key]


def _to_int(value: Any, key: str, kind: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ParseError(f"{kind} field '{key}' is not an integer: {value!r}") from None


@dataclass(frozen=True)
class LibrarySection:
    key: int
    title: str
    type: str

    @staticmethod
    def from_dict(data: dict) -> "LibrarySection":
        return LibrarySection(
            key=_to_int(_require(data, "key", "Section"), "key", "Section"),
            title=str(_require(data, "title", "Section")),
            type=str(_require(data, "type", "Section")),
        )


@dataclass(frozen=True)
class ShowSummary:
    title: str
    total_episodes: int
    watched_episodes: int = 0

    def __post_init__(self):
        if self.total_episodes < 0 or self.watched_episodes < 0:
            raise ParseError(f"Show '{self.title}' has a negative episode count")
        if self.watched_episodes > self.total_episodes:
            raise ParseError(
                f"Show '{self.title}' has more watched episodes "
                f"({self.watched_episodes}) than episodes ({self.total_episodes})"
            )

    @property
    def unwatched(self) -> int:
        return self.total_episodes - self.watched_episodes

    @staticmethod
    def from_dict(data: dict) -> "ShowSummary":
        # Plex omits viewedLeafCount when nothing has been watched.
        return ShowSummary(
            title=str(_require(data, "title", "Show")),
            total_episodes=_to_int(_require(data, "leafCount", "Show"), "leafCount", "Show"),
            watched_episodes=_to_int(data.get("viewedLeafCount", 0), "viewedLeafCount", "Show"),
        )


class PlexClient:
    """Minimal client for the two Plex library endpoints the report needs."""

    def __init__(
        self,
        host: str,
        port: int,
        token: str,
        scheme: str = "http",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = f"{scheme}://{host}:{port}"
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _redact(self, text: str) -> str:
        if not self.token:
            return text
        for secret in {self.token, quote(self.token, safe=""), quote_plus(self.token)}:
            text = text.replace(secret, "<redacted>")
        return text

    def _request(self, endpoint: str, **params) -> dict:
        # The token travels as a query parameter, so log and error messages
        # only ever carry the bare URL.
        url = f"{self.base_url}{endpoint}"
        params["X-Plex-Token"] = self.token
        try:
            response = self.session.get(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(url, self._redact(str(exc))) from None

        if not 200 <= response.status_code < 300:
            raise HttpStatusError(url, response.status_code, response.reason or "")

        try:
            payload = response.json()
        except ValueError:
            raise ParseError(f"Response from {url} is not valid JSON") from None

        container = payload.get("MediaContainer") if isinstance(payload, dict) else None
        if not isinstance(container, dict):
            raise ParseError(f"Response from {url} has no MediaContainer")
        return container

    def list_sections(self) -> List[LibrarySection]:
        container = self._request("/library/sections")
        sections = [LibrarySection.from_dict(d) for d in container.get("Directory") or []]
        logging.debug("Fetched %d library sections", len(sections))
        return sections

    def list_shows(self, section_id: int) -> List[ShowSummary]:
        container = self._request(f"/library/sections/{section_id}/all", includeGuids=1)
        shows = [ShowSummary.from_dict(m) for m in container.get("Metadata") or []]
        logging.debug("Fetched %d shows from section %s", len(shows), section_id)
        return shows
