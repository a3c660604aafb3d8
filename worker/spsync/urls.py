from urllib.parse import quote, urlsplit


# Path characters SharePoint hands back verbatim that are legal in a URI path.
_PATH_SAFE = "/:@!$&'()*+,;=-._~"
_QUERY_SAFE = _PATH_SAFE + "?"

_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonical_url(url: str) -> str:
    """Strip exactly one trailing slash."""
    if not url.endswith("/"):
        return url
    return url[:-1]


def sp_url_to_uri(url: str) -> str:
    """Turn a SharePoint URL with a raw, unencoded path into a well-formed URI.

    The scheme and authority are assumed valid already; only the path is
    escaped, so the host part is never double-encoded.
    """
    parts = url.split("/", 3)
    if len(parts) < 3:
        raise ValueError(f"Too few '/'s: {url}")
    host = "/".join(parts[:3])
    if len(parts) == 3:
        return host
    return host + quote("/" + parts[3], safe=_PATH_SAFE)


def encode_sharepoint_url(url: str, lenient: bool) -> str:
    if not lenient:
        return sp_url_to_uri(url)
    url_parts = url.split("?", 1)
    encoded = sp_url_to_uri(url_parts[0])
    if len(url_parts) == 1:
        return encoded
    split = urlsplit(encoded)
    # http://host?ID=1 is rejected by some servers; http://host/?ID=1 is not.
    path = split.path or "/"
    return f"{split.scheme}://{split.netloc}{path}?{quote(url_parts[1], safe=_QUERY_SAFE)}"


def root_url(url: str) -> str:
    split = urlsplit(sp_url_to_uri(url))
    return f"{split.scheme}://{split.netloc}"


def host_key(url: str) -> str:
    """host:port with the scheme default filled in, so http and https never alias."""
    split = urlsplit(url)
    host = (split.hostname or "").lower()
    port = split.port or _DEFAULT_PORTS.get(split.scheme.lower(), -1)
    return f"{host}:{port}"


def web_parent_url(web_url: str) -> str:
    return web_url[: web_url.rfind("/")]
