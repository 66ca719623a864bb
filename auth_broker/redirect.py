"""
Post-login redirect target validation against the operator allow-list.
"""
import re
from urllib.parse import urlsplit

# RFC 3986 host[:port] characters; no "@", so userinfo never reaches the host check
_AUTHORITY_RE = re.compile(r"[A-Za-z0-9\-._~%!$&'()*+,;=:\[\]]+")


def validate_redirect_uri(uri: str | None, allowed_domains: list[str] | tuple[str, ...]) -> bool:
    """
    True if uri is absolute and its host is an allowed domain or a subdomain of one.
    Fails closed: unparsable URI, empty scheme, empty host, userinfo in the authority or
    empty allow-list -> False.
    Matching is on label boundaries, so "evil-example.com" does not pass for "example.com".
    """
    if not uri:
        return False
    try:
        parts = urlsplit(uri)
        # .hostname strips the port and lowercases; .port raises on a malformed port
        host = parts.hostname
        _ = parts.port
    except ValueError:
        return False
    if not parts.scheme or not parts.netloc or not host:
        return False
    # Browsers read "\" as "/", so "evil.com\@example.com" would land on evil.com
    if not _AUTHORITY_RE.fullmatch(parts.netloc):
        return False
    for domain in allowed_domains:
        domain = (domain or "").strip().lower().lstrip(".")
        if not domain:
            continue
        if host == domain or host.endswith("." + domain):
            return True
    return False
