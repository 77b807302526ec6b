from __future__ import annotations

import urllib.parse


def site_origin(url: str) -> str:
    parsed = urllib.parse.urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def resolve_redirect_uri(requested: str | None, origin: str) -> str:
    """Land only on this site: relative targets are resolved, foreign ones dropped."""
    root = f"{origin}/"
    if not requested:
        return root

    resolved = urllib.parse.urljoin(root, requested)
    parsed = urllib.parse.urlparse(resolved)
    if parsed.scheme not in {"http", "https"} or f"{parsed.scheme}://{parsed.netloc}" != origin:
        return root
    return resolved


def append_query_params(url: str, params: dict[str, str]) -> str:
    parsed = urllib.parse.urlparse(url)
    existing = urllib.parse.parse_qs(parsed.query, keep_blank_values=True)
    for key, value in params.items():
        existing[key] = [value]

    new_query = urllib.parse.urlencode(existing, doseq=True)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))
