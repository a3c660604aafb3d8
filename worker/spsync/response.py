from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

from spsync.acl import Acl


LIST_MODIFIED_FORMAT = "%Y-%m-%d %H:%M:%SZ"
ITEM_MODIFIED_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def parse_timestamp(value: str, fmt: str, tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """Parse a SharePoint timestamp; None when it does not match ``fmt``."""
    if not value:
        return None
    try:
        return datetime.strptime(value, fmt).replace(tzinfo=tz)
    except ValueError:
        return None


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class DocRequest:
    doc_id: str
    last_access_time: Optional[datetime] = None

    def can_respond_with_no_content(self, last_modified: Optional[datetime]) -> bool:
        if self.last_access_time is None or last_modified is None:
            return False
        return last_modified <= self.last_access_time


@dataclass(frozen=True)
class Link:
    doc_id: str
    label: Optional[str] = None


@dataclass
class DocResponse:
    """Everything produced for one crawled document.

    Exactly one of ``content``, ``not_found`` or ``no_content`` describes the
    body; links to child documents are listed separately.
    """

    acl: Optional[Acl] = None
    named_resources: Dict[str, Acl] = field(default_factory=dict)
    metadata: list[tuple[str, str]] = field(default_factory=list)
    content_type: Optional[str] = None
    last_modified: Optional[datetime] = None
    display_url: Optional[str] = None
    content: Optional[bytes] = None
    links: list[Link] = field(default_factory=list)
    not_found: bool = False
    no_content: bool = False
    secure: bool = True

    def add_metadata(self, key: str, value: str):
        self.metadata.append((key, value))

    def add_link(self, doc_id: str, label: Optional[str] = None):
        self.links.append(Link(doc_id, label))

    def respond_not_found(self) -> "DocResponse":
        self.not_found = True
        return self

    def respond_no_content(self) -> "DocResponse":
        self.no_content = True
        return self

    def metadata_values(self, key: str) -> list[str]:
        return [v for k, v in self.metadata if k == key]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "acl": self.acl.to_dict() if self.acl is not None else None,
            "named_resources": {name: acl.to_dict() for name, acl in self.named_resources.items()},
            "metadata": [[k, v] for k, v in self.metadata],
            "content_type": self.content_type,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "display_url": self.display_url,
            "content_length": len(self.content) if self.content is not None else None,
            "links": [{"doc_id": link.doc_id, "label": link.label} for link in self.links],
            "not_found": self.not_found,
            "no_content": self.no_content,
            "secure": self.secure,
        }
