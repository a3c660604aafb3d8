from typing import Callable, Dict, Generic, TypeVar

from spsync.urls import canonical_url


H = TypeVar("H")


class SiteRegistry(Generic[H]):
    """Lazily built handles, one per canonical web URL.

    Two threads missing the same web may both build a handle; ``setdefault``
    keeps whichever landed first and the other is dropped unused.
    """

    def __init__(self, factory: Callable[[str, str], H]):
        self._factory = factory
        self._handles: Dict[str, H] = {}

    def get_site(self, site_url: str, web_url: str) -> H:
        web_url = canonical_url(web_url)
        handle = self._handles.get(web_url)
        if handle is not None:
            return handle
        candidate = self._factory(canonical_url(site_url), web_url)
        return self._handles.setdefault(web_url, candidate)

    def __len__(self) -> int:
        return len(self._handles)

    def clear(self):
        self._handles.clear()
