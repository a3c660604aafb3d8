from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urlsplit

import requests

from spsync.auth_context import AuthContext
from spsync.runtime_logger import emit
from spsync.urls import encode_sharepoint_url, sp_url_to_uri


# SharePoint reports some Office formats with types that were never registered.
MIME_TYPE_MAPPING = {
    "application/vnd.ms-excel.12": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint.presentation.12": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-word.document.12": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-powerpoint.show.macroenabled.12": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-powerpoint.show.12": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-powerpoint.macroenabled.12": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-excel.macroenabled.12": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-word.document.macroenabled.12": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-powerpoint.presentation.macroenabled.12": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-excel.sheet.macroenabled.12": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

FILE_EXTENSION_TO_MIME_TYPE = {
    ".msg": "application/vnd.ms-outlook",
}


class ContentFetchError(Exception):
    pass


@dataclass(frozen=True)
class FileInfo:
    contents: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        # requests hands back a case-insensitive mapping; plain dicts in tests are not.
        value = self.headers.get(name)
        if value is not None:
            return value
        lowered = name.lower()
        for key, candidate in self.headers.items():
            if key.lower() == lowered:
                return candidate
        return None


def content_type_for(path: str, header_value: Optional[str]) -> Optional[str]:
    dot = path.rfind(".")
    extension = path[dot:].lower() if dot > 0 else ""
    if extension in FILE_EXTENSION_TO_MIME_TYPE:
        return FILE_EXTENSION_TO_MIME_TYPE[extension]
    if header_value is None:
        return None
    return MIME_TYPE_MAPPING.get(header_value.lower(), header_value)


class ContentFetcher:
    """GETs document bodies, following redirects itself in lenient mode."""

    def __init__(
        self,
        auth: AuthContext,
        *,
        lenient: bool,
        max_redirects: int,
        user_agent: str = "",
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self._auth = auth
        self._lenient = lenient
        self._max_redirects = max_redirects
        self._user_agent = user_agent
        self._timeout = (connect_timeout, read_timeout)
        self._session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"X-FORMS_BASED_AUTH_ACCEPTED": "f"}
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        return headers

    def _get(self, url: str, *, allow_redirects: bool) -> requests.Response:
        kwargs = self._auth.request_kwargs(url)
        headers = self._headers()
        headers.update(kwargs.pop("headers", {}))
        try:
            return self._session.get(
                url,
                headers=headers,
                allow_redirects=allow_redirects,
                timeout=self._timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            emit("WARN", "HTTP", f"Content request failed: url={url} error={exc}")
            raise ContentFetchError(f"Request for {url} failed: {exc}") from exc

    def issue_get(self, url: str) -> Optional[FileInfo]:
        """Body and headers of ``url``, or None when the server reports 404."""
        initial = url
        current = encode_sharepoint_url(url, self._lenient)
        redirect_attempt = 0
        while True:
            resp = self._get(current, allow_redirects=not self._lenient)
            if resp.status_code == 404:
                return None
            if resp.status_code == 200:
                break
            if resp.status_code not in (301, 302):
                raise ContentFetchError(f"Got status code {resp.status_code} for URL {current}")
            if self._max_redirects < 0:
                raise ContentFetchError(f"Unexpected redirect for URL {current}")
            if self._max_redirects == 0:
                raise ContentFetchError(
                    f"Got status code {resp.status_code} for url {initial} but configured to follow 0 redirects."
                )
            redirect_attempt += 1
            location = resp.headers.get("Location")
            if not location:
                raise ContentFetchError(f"No redirect location available for URL {current}")
            emit("INFO", "HTTP", f"Following redirect: from={current} to={location}")
            if not location.startswith(("http://", "https://")):
                if not location.startswith("/"):
                    raise ContentFetchError(f"Redirect location is not relative to root: {current}")
                split = urlsplit(current)
                location = f"{split.scheme}://{split.netloc}{location}"
            current = encode_sharepoint_url(location, self._lenient)
            if redirect_attempt > self._max_redirects:
                raise ContentFetchError(
                    f"Got status code {resp.status_code} for initial request {initial} "
                    f"after {redirect_attempt} redirect attempts."
                )

        error_header = resp.headers.get("SharePointError")
        if error_header is not None:
            if error_header == "2":
                raise ContentFetchError(
                    f"Got error 2 from SharePoint for URL [{current}]: request rejected because of server load."
                )
            raise ContentFetchError(f"Got error {error_header} from SharePoint for URL [{current}].")
        return FileInfo(contents=resp.content, headers=resp.headers)

    def get_redirect_location(self, url: str) -> Optional[str]:
        """Location header of a 302 answer for ``url``; None for anything else."""
        target = sp_url_to_uri(url)
        resp = self._get(target, allow_redirects=False)
        if resp.status_code != 302:
            emit("WARN", "HTTP", f"Received status={resp.status_code} instead of 302: url={target}")
            return None
        return resp.headers.get("Location")
