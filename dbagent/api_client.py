"""
DB Agent - REST API Client Module

Handles ONE-WAY communication: agent -> API via HTTP.
Used by the data sender to POST spooled reports, and by the CLI to ping the
API and fetch the agent's status.

This is SEPARATE from the websocket links (commands, replies and logs).
Calls block; async callers run them in the default executor.
"""

import json
import socket
import urllib.error
import urllib.request
from typing import Optional, Tuple

DEFAULT_TIMEOUT = 30


class APIClient:
    """REST API client for the management service

    Every request carries the agent's API key and version headers.
    """

    def __init__(self, links: dict, api_key: str, version: str, logger,
                 timeout: float = DEFAULT_TIMEOUT):
        """Initialize API client

        Args:
            links: Endpoint URLs ('data', 'ping', 'status', ...)
            api_key: Agent API key
            version: Agent version string
            logger: Logger instance
            timeout: Socket timeout in seconds
        """
        self.links = links
        self.api_key = api_key
        self.version = version
        self.logger = logger
        self.timeout = timeout

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {
            'X-Agent-Token': self.api_key,
            'X-Agent-Version': self.version,
            'User-Agent': f'DBAgent/{self.version}',
        }
        if extra:
            headers.update(extra)
        return headers

    def post(self, url: str, body: bytes, content_type: str = 'application/json',
             content_encoding: Optional[str] = None) -> Tuple[int, bytes]:
        """POST a body once, without retries

        Args:
            url: Full URL
            body: Request body
            content_type: Content-Type header
            content_encoding: Content-Encoding header, if any

        Returns:
            (HTTP status code, response body); 4xx/5xx are returned, not raised

        Raises:
            urllib.error.URLError, socket.timeout, OSError: Transport errors
        """
        extra = {'Content-Type': content_type}
        if content_encoding:
            extra['Content-Encoding'] = content_encoding
        req = urllib.request.Request(url, data=body, headers=self._headers(extra), method='POST')
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                data = response.read()
                self.logger.debug(f"POST {url}: {response.status}")
                return response.status, data
        except urllib.error.HTTPError as e:
            self.logger.debug(f"POST {url}: HTTP Error {e.code}: {e.reason}")
            return e.code, e.read() if e.fp is not None else b""

    def post_data(self, body: bytes, content_encoding: Optional[str] = None) -> Tuple[int, bytes]:
        """POST one spooled report to the data link"""
        return self.post(self.links['data'], body, content_encoding=content_encoding)

    def get(self, url: str) -> Tuple[int, bytes]:
        """GET a URL once

        Returns:
            (HTTP status code, response body)
        """
        req = urllib.request.Request(url, headers=self._headers(), method='GET')
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return response.status, response.read()
        except urllib.error.HTTPError as e:
            return e.code, e.read() if e.fp is not None else b""

    def ping(self) -> Tuple[bool, str]:
        """Check that the API is reachable and accepts our API key

        Returns:
            (ok, message)
        """
        url = self.links['ping']
        try:
            code, _ = self.get(url)
        except (urllib.error.URLError, socket.timeout, OSError) as e:
            return False, f"Ping {url} failed: {e}"
        if code == 200:
            return True, f"Ping {url} OK"
        return False, f"Ping {url} failed: HTTP status {code}"

    def get_status(self) -> dict:
        """Fetch this agent's status as reported by the API

        Raises:
            RuntimeError: If the API does not return 200
        """
        url = self.links['status']
        code, body = self.get(url)
        if code != 200:
            raise RuntimeError(f"GET {url} returned HTTP status {code}")
        return json.loads(body.decode('utf-8')) if body else {}


def is_timeout(error: BaseException) -> bool:
    """True if a transport error was a timeout"""
    if isinstance(error, (socket.timeout, TimeoutError)):
        return True
    reason = getattr(error, 'reason', None)
    return isinstance(reason, (socket.timeout, TimeoutError))
