import posixpath
import re
import sys
from urllib.parse import urlsplit

from errors import InvalidKey


def nolog(*_, **__):
    pass


if "dev" in sys.argv:
    LOG = print
else:
    LOG = nolog


def ERROR(*args, **kwargs):
    print("ERROR:", *args, file=sys.stderr, flush=True, **kwargs)


def persistent_token(length: int, name: str, directory: str = "auth"):
    from os.path import isdir, isfile, join
    if not isdir(directory):
        from os import makedirs
        makedirs(directory)

    loc = join(directory, name)
    if isfile(loc):
        with open(loc) as file:
            return file.read().strip()

    import secrets
    res = secrets.token_urlsafe(length)
    with open(loc, "w") as file:
        file.write(res)
    return res


############### Keys ###############

MAX_HOST_LENGTH = 253
MAX_PATH_LENGTH = 2048

HOST_REGEX = re.compile(r"^[a-z0-9_]([a-z0-9_-]*[a-z0-9_])?(\.[a-z0-9_]([a-z0-9_-]*[a-z0-9_])?)*$")
IPV6_REGEX = re.compile(r"^\[[0-9a-f:.]+\]$")
CONTROL_REGEX = re.compile(r"[\x00-\x1f\x7f]")


def valid_site(site: str) -> bool:
    if not site or len(site) > MAX_HOST_LENGTH:
        return False
    return HOST_REGEX.match(site) is not None or IPV6_REGEX.match(site) is not None


def normalize_site(raw: str) -> str:
    """
    Canonicalizes a hostname (or a URL containing one) into a SiteKey.
    Idempotent: normalize_site(normalize_site(x)) == normalize_site(x).
    """
    if not isinstance(raw, str):
        raise InvalidKey(f"site must be a string, not {type(raw).__name__}")
    site = raw.strip().lower()
    if "://" in site:
        site = site.split("://", 1)[1]
    # Drop path, query, userinfo
    site = re.split(r"[/?#]", site, maxsplit=1)[0]
    site = site.rsplit("@", 1)[-1]
    if site.startswith("["):
        site = site.split("]", 1)[0] + "]"
    else:
        site = site.split(":", 1)[0]
    site = site.rstrip(".")
    if not site.isascii():
        try:
            site = site.encode("idna").decode("ascii")
        except UnicodeError:
            raise InvalidKey(f"invalid site: {raw!r}")
    if not valid_site(site):
        raise InvalidKey(f"invalid site: {raw!r}")
    return site


def normalize_page(raw: str) -> str:
    """
    Canonicalizes a path into the path half of a PageKey.

    Query strings and fragments are dropped, repeated slashes collapse, dot
    segments are resolved and a trailing slash is dropped (except for "/").
    """
    if not isinstance(raw, str):
        raise InvalidKey(f"page must be a string, not {type(raw).__name__}")
    if len(raw) > MAX_PATH_LENGTH or CONTROL_REGEX.search(raw):
        raise InvalidKey(f"invalid page: {raw[:64]!r}")
    path = re.split(r"[?#]", raw.strip(), maxsplit=1)[0]
    path = "/" + path.lstrip("/")
    return posixpath.normpath(path)


def parse_referer(referer: str | None) -> tuple[str, str]:
    """ Splits a page URL into (SiteKey, page path). """
    if not referer:
        raise InvalidKey("invalid referer")
    try:
        u = urlsplit(referer.strip())
    except ValueError:
        raise InvalidKey("unable to parse referer")
    if u.scheme not in ("http", "https") or not u.hostname:
        raise InvalidKey("invalid referer")
    host = u.hostname
    if ":" in host:
        host = f"[{host}]"
    return normalize_site(host), normalize_page(u.path or "/")
