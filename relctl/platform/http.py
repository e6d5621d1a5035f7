"""HTTP client abstraction for status and chat notifications.

This module provides:
- HttpClient: Protocol for HTTP operations (injectable for tests)
- RealHttpClient: Real implementation using urllib
- MockHttpClient: Mock implementation for testing
"""

from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from relctl.core.result import Err, Ok, Result

__all__ = [
    "HttpClient",
    "RealHttpClient",
    "MockHttpClient",
    "HttpError",
]


@dataclass(frozen=True, slots=True)
class HttpError:
    """HTTP error details.

    Attributes:
        url: The URL that failed
        status: HTTP status code (0 for network errors)
        message: Human-readable error message
    """

    url: str
    status: int
    message: str

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status}: {self.message} ({self.url})"
        return f"{self.message} ({self.url})"


@runtime_checkable
class HttpClient(Protocol):
    """Protocol for HTTP operations."""

    def post_json(
        self,
        url: str,
        payload: Mapping[str, object],
        headers: Mapping[str, str] | None = None,
    ) -> Result[str, HttpError]:
        """POST a JSON body.

        Returns:
            Ok with the response body, or Err with HttpError
        """
        ...


class RealHttpClient:
    """HTTP client using urllib with system certificates."""

    def __init__(self, timeout: float = 30.0, user_agent: str = "relctl") -> None:
        self.timeout = timeout
        self.user_agent = user_agent
        self._ssl_context = ssl.create_default_context()

    def post_json(
        self,
        url: str,
        payload: Mapping[str, object],
        headers: Mapping[str, str] | None = None,
    ) -> Result[str, HttpError]:
        body = json.dumps(dict(payload), separators=(",", ":")).encode("utf-8")
        all_headers = {
            "User-Agent": self.user_agent,
            "Content-Type": "application/json",
            **(headers or {}),
        }
        try:
            req = urllib.request.Request(url, data=body, headers=all_headers, method="POST")
            with urllib.request.urlopen(
                req,
                timeout=self.timeout,
                context=self._ssl_context,
            ) as response:
                return Ok(response.read().decode("utf-8", errors="replace"))
        except urllib.error.HTTPError as e:
            return Err(HttpError(url=url, status=e.code, message=str(e.reason)))
        except urllib.error.URLError as e:
            return Err(HttpError(url=url, status=0, message=str(e.reason)))
        except TimeoutError:
            return Err(HttpError(url=url, status=0, message="Request timed out"))
        except (ValueError, OSError) as e:
            return Err(HttpError(url=url, status=0, message=str(e)))


@dataclass(frozen=True, slots=True)
class RecordedPost:
    url: str
    payload: dict[str, object]
    headers: dict[str, str]


class MockHttpClient:
    """Mock HTTP client for testing.

    Records every POST; URLs registered with :meth:`fail` return an error.

    Usage:
        client = MockHttpClient()
        client.fail("https://chat.example/api", HttpError(...))
        ...
        assert client.posts[0].payload["state"] == "success"
    """

    def __init__(self) -> None:
        self._failures: dict[str, HttpError] = {}
        self.posts: list[RecordedPost] = []

    def fail(self, url: str, error: HttpError) -> None:
        self._failures[url] = error

    def post_json(
        self,
        url: str,
        payload: Mapping[str, object],
        headers: Mapping[str, str] | None = None,
    ) -> Result[str, HttpError]:
        self.posts.append(RecordedPost(url=url, payload=dict(payload), headers=dict(headers or {})))
        if url in self._failures:
            return Err(self._failures[url])
        return Ok("{}")

    def posts_to(self, url: str) -> list[RecordedPost]:
        return [p for p in self.posts if p.url == url]
