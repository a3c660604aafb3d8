import random
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional
from xml.sax.saxutils import escape

import requests

from spsync.auth_context import AuthContext
from spsync.runtime_logger import emit
from spsync.urls import sp_url_to_uri


XMLNS = "http://schemas.microsoft.com/sharepoint/soap/"
XMLNS_DIRECTORY = "http://schemas.microsoft.com/sharepoint/soap/directory/"
SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"

RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)


@dataclass(frozen=True)
class SoapError(Exception):
    status_code: int
    message: str
    url: str
    response_text: str = ""

    def __str__(self) -> str:
        return f"SOAP error {self.status_code}: {self.message}"


class XmlProcessingError(Exception):
    pass


def local_name(tag: str) -> str:
    if "}" in tag:
        return tag.rsplit("}", 1)[1]
    return tag


def child(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    if element is None:
        return None
    for node in element:
        if local_name(node.tag) == name:
            return node
    return None


def children(element: Optional[ET.Element], name: str) -> Iterator[ET.Element]:
    if element is None:
        return
    for node in element:
        if local_name(node.tag) == name:
            yield node


def parse_xml(text: str, what: str) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as exc:
        raise XmlProcessingError(f"Malformed {what} payload: {exc}") from exc


def _envelope(namespace: str, action: str, params: Iterable[tuple[str, object]]) -> bytes:
    parts = []
    for name, value in params:
        if value is None:
            parts.append(f"<{name}/>")
        elif isinstance(value, (list, tuple)):
            inner = "".join(f"<string>{escape(str(v))}</string>" for v in value)
            parts.append(f"<{name}>{inner}</{name}>")
        elif isinstance(value, bool):
            parts.append(f"<{name}>{'true' if value else 'false'}</{name}>")
        else:
            parts.append(f"<{name}>{escape(str(value))}</{name}>")
    body = (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_ENV}">'
        f'<soap:Body><{action} xmlns="{namespace}">{"".join(parts)}</{action}></soap:Body>'
        "</soap:Envelope>"
    )
    return body.encode("utf-8")


class SoapTransport:
    """Posts SOAP 1.1 requests to SharePoint web services with retry and backoff."""

    def __init__(
        self,
        auth: AuthContext,
        *,
        max_retries: int = 3,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        user_agent: str = "",
        session: Optional[requests.Session] = None,
    ):
        self._auth = auth
        self._max_retries = max_retries
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._user_agent = user_agent
        self._session = session or requests.Session()

    def call(self, endpoint: str, namespace: str, action: str, params: Iterable[tuple[str, object]] = ()) -> ET.Element:
        """Invoke ``action`` and return its ``<action>Response`` element."""
        url = sp_url_to_uri(endpoint)
        payload = _envelope(namespace, action, list(params))
        backoff = 2.0

        for attempt in range(self._max_retries + 1):
            attempt_number = attempt + 1
            headers = {
                "Content-Type": "text/xml; charset=utf-8",
                "SOAPAction": f'"{namespace}{action}"',
            }
            if self._user_agent:
                headers["User-Agent"] = self._user_agent
            kwargs = self._auth.request_kwargs(url)
            headers.update(kwargs.pop("headers", {}))
            try:
                resp = self._session.post(
                    url,
                    data=payload,
                    headers=headers,
                    timeout=(self._connect_timeout, self._read_timeout),
                    **kwargs,
                )
            except requests.RequestException as exc:
                if attempt >= self._max_retries:
                    emit("ERROR", "SOAP", f"SOAP request failed: action={action} url={url} error={exc}")
                    raise
                emit(
                    "WARN",
                    "SOAP",
                    f"SOAP request retrying after transport error: action={action} url={url} attempt={attempt_number}/{self._max_retries + 1} error={exc}",
                )
                time.sleep(backoff + random.uniform(0, 0.25))
                backoff = min(backoff * 2, 60)
                continue

            if resp.status_code == 401 and attempt < self._max_retries:
                self._auth.on_unauthorized()
                emit(
                    "WARN",
                    "SOAP",
                    f"SOAP request retrying after 401: action={action} url={url} attempt={attempt_number}/{self._max_retries + 1}",
                )
                time.sleep(0.5)
                continue

            fault = _fault_string(resp)
            if fault is not None:
                emit("ERROR", "SOAP", f"SOAP fault: action={action} url={url} error={fault}")
                raise SoapError(resp.status_code, fault, url, resp.text or "")

            if resp.status_code in RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                retry_after = resp.headers.get("Retry-After")
                emit(
                    "WARN",
                    "SOAP",
                    f"SOAP request retrying after status={resp.status_code}: action={action} url={url} attempt={attempt_number}/{self._max_retries + 1}",
                )
                if retry_after and retry_after.isdigit():
                    time.sleep(float(retry_after))
                else:
                    time.sleep(backoff + random.uniform(0, 0.25))
                    backoff = min(backoff * 2, 60)
                continue

            if not resp.ok:
                text = resp.text or ""
                message = text[:400] if text else "request_failed"
                emit(
                    "ERROR",
                    "SOAP",
                    f"SOAP request failed with status={resp.status_code}: action={action} url={url} error={message}",
                )
                raise SoapError(resp.status_code, message, url, text)

            envelope = parse_xml(resp.text, f"{action} response")
            response = child(child(envelope, "Body"), f"{action}Response")
            if response is None:
                raise XmlProcessingError(f"{action} response is missing {action}Response")
            return response

        emit("ERROR", "SOAP", f"SOAP request retries exhausted: action={action} url={url}")
        raise SoapError(0, "retries exhausted", url)


def _fault_string(resp) -> Optional[str]:
    if resp.status_code != 500 or "Fault" not in (resp.text or ""):
        return None
    try:
        envelope = ET.fromstring(resp.text)
    except ET.ParseError:
        return None
    fault = child(child(envelope, "Body"), "Fault")
    if fault is None:
        return None
    detail = child(fault, "faultstring")
    return (detail.text or "soap_fault") if detail is not None else "soap_fault"
