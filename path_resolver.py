"""Map request paths onto the served directory tree.

Every path handed to the response builder goes through ``resolve``, which
guarantees that the canonical location (symlinks followed) is the server
root or something below it.
"""
import os
import re
import stat
from collections import namedtuple
from urllib.parse import unquote_to_bytes

DIRECTORY = 'directory'
FILE = 'file'

ResolvedLocation = namedtuple('ResolvedLocation', ['path', 'kind', 'url_path'])

# a "%" not followed by two hex digits
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

# Characters that cannot appear inside a single path segment on this host
_FORBIDDEN = {'\x00'}
for _sep in (os.sep, os.altsep):
    if _sep and _sep != '/':
        _FORBIDDEN.add(_sep)
if os.name == 'nt':
    _FORBIDDEN.add(':')


class RequestError(Exception):
    """Base class for failures that become an HTTP error response."""
    status = 500


class MalformedRequest(RequestError):
    status = 400


class PathEscape(RequestError):
    status = 403


class NotFound(RequestError):
    status = 404


class ReadFailure(RequestError):
    status = 500


def load_server_root(path=None):
    """Return the canonical absolute form of the directory to serve.

    Defaults to the current working directory. Raises ValueError when the
    path is missing or is not a directory.
    """
    if path is None:
        path = os.getcwd()
    root = os.path.realpath(path)
    if not os.path.exists(root):
        raise ValueError(f"{path} does not exist")
    if not os.path.isdir(root):
        raise ValueError(f"{path} is not a directory")
    return root


def decode_path(request_path):
    """Percent-decode a URL path into a filesystem-encoded string."""
    if _BAD_ESCAPE.search(request_path):
        raise MalformedRequest("invalid percent-escape")
    try:
        raw = unquote_to_bytes(request_path)
        decoded = os.fsdecode(raw)
    except (UnicodeError, TypeError) as e:
        raise MalformedRequest(f"undecodable path: {e}") from e
    if any(ch in decoded for ch in _FORBIDDEN):
        raise MalformedRequest("path contains characters invalid on this host")
    return decoded


def normalize_segments(decoded_path):
    """Collapse ``.``/``..``/empty segments, refusing to climb above the root."""
    segments = []
    for segment in decoded_path.split('/'):
        if segment in ('', '.'):
            continue
        if segment == '..':
            if not segments:
                raise PathEscape("path climbs above the server root")
            segments.pop()
            continue
        segments.append(segment)
    return segments


def is_within(root, path):
    """True when ``path`` is ``root`` or lies below it, compared per segment."""
    try:
        return os.path.commonpath([root, path]) == root
    except ValueError:
        # different drives, or a mix of absolute and relative paths
        return False


def resolve(root, request_path):
    """Resolve an untrusted URL path against ``root``.

    ``root`` must come from ``load_server_root``. Returns a ResolvedLocation
    or raises MalformedRequest, PathEscape or NotFound. Only read-only
    filesystem queries are made.
    """
    segments = normalize_segments(decode_path(request_path))
    candidate = os.path.join(root, *segments)

    try:
        canonical = os.path.realpath(candidate)
    except (OSError, ValueError) as e:
        raise NotFound(request_path) from e

    # Checked before existence so escape targets are never probed
    if not is_within(root, canonical):
        raise PathEscape(request_path)

    try:
        st = os.stat(canonical)
    except (OSError, ValueError) as e:
        raise NotFound(request_path) from e

    if stat.S_ISDIR(st.st_mode):
        kind = DIRECTORY
    elif stat.S_ISREG(st.st_mode):
        kind = FILE
    else:
        # sockets, fifos, devices
        raise NotFound(request_path)

    url_path = '/' + '/'.join(segments)
    if kind == DIRECTORY and segments:
        url_path += '/'
    return ResolvedLocation(canonical, kind, url_path)
