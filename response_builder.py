"""Turn resolved locations into responses the transport can send.

Directory listings are rendered to HTML in memory; files are handed back as
a lazy ``FileStream`` so large files are never read in one go.
"""
import html
import logging
import mimetypes
import os
import stat
from collections import namedtuple
from http import HTTPStatus
from urllib.parse import quote

import config
from path_resolver import DIRECTORY, FILE, NotFound, ReadFailure, RequestError, is_within, resolve

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# Applied on top of Python's built-in table
CONTENT_TYPE_OVERRIDES = {
    '.js': 'application/javascript',
    '.rs': 'text/plain',
    '.toml': 'text/plain',
    '.lock': 'text/plain',
}

# Built-in types only; the host's mime.types files are never consulted
_mime = mimetypes.MimeTypes()

_OPEN_FLAGS = os.O_RDONLY | getattr(os, 'O_NOFOLLOW', 0) | getattr(os, 'O_BINARY', 0)

DirectoryEntry = namedtuple('DirectoryEntry', ['name', 'kind', 'href'])

LISTING_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <base href="{base}">
    <title>Directory listing for {title}</title>
    <style>
        body {{ font-family: Arial, sans-serif; }}
        ul {{ list-style-type: none; padding: 0; }}
        li {{ margin: 5px 0; }}
        a {{ text-decoration: none; color: #0366d6; }}
        a:hover {{ text-decoration: underline; }}
    </style>
</head>
<body>
    <h1>Directory listing for {title}</h1>
    <ul>
{items}
    </ul>
</body>
</html>
"""

ERROR_TEMPLATE = "<html><body><h1>{code} {phrase}</h1>{detail}</body></html>"


class FileStream:
    """Single-use iterator over at most ``length`` bytes of an open file.

    The file is closed once the data runs out or ``close()`` is called, and
    the stream cannot be restarted. A read error part way through raises
    ReadFailure; by then the head is already on the wire, so the transport
    can only abort the connection.
    """

    def __init__(self, f, length, chunk_size=None):
        self._file = f
        self._remaining = length
        self._chunk_size = chunk_size or config.CHUNK_SIZE

    def __iter__(self):
        return self

    def __next__(self):
        if self._file is None:
            raise StopIteration
        if self._remaining <= 0:
            self.close()
            raise StopIteration
        try:
            chunk = self._file.read(min(self._chunk_size, self._remaining))
        except OSError as e:
            self.close()
            raise ReadFailure("file became unreadable while streaming") from e
        if not chunk:
            # truncated since it was opened
            self.close()
            raise StopIteration
        self._remaining -= len(chunk)
        return chunk

    @property
    def closed(self):
        return self._file is None

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None


class Response:
    """Status, content type and body source for one request."""

    def __init__(self, status, content_type, body=b'', stream=None, content_length=None, headers=None):
        self.status = HTTPStatus(status)
        self.content_type = content_type
        self.body = body
        self.stream = stream
        self.content_length = len(body) if content_length is None else content_length
        self.headers = dict(headers or {})

    def head(self):
        lines = [
            f"HTTP/1.1 {self.status.value} {self.status.phrase}",
            f"Content-Type: {self.content_type}",
            f"Content-Length: {self.content_length}",
            "Connection: close",
        ]
        lines.extend(f"{name}: {value}" for name, value in self.headers.items())
        return ("\r\n".join(lines) + "\r\n\r\n").encode('latin-1')

    def chunks(self):
        if self.stream is not None:
            return self.stream
        return iter([self.body] if self.body else [])

    def close(self):
        if self.stream is not None:
            self.stream.close()


def content_type_for(name):
    """Content type for a file name, by extension (case-insensitive)."""
    ext = os.path.splitext(name)[1].lower()
    if not ext:
        return DEFAULT_CONTENT_TYPE
    if ext in CONTENT_TYPE_OVERRIDES:
        return CONTENT_TYPE_OVERRIDES[ext]
    # strict table first, then the common non-standard one
    return _mime.types_map[1].get(ext) or _mime.types_map[0].get(ext) or DEFAULT_CONTENT_TYPE


def _display(name):
    return html.escape(os.fsencode(name).decode('utf-8', 'replace'))


def _href(name, kind):
    href = quote(os.fsencode(name), safe='')
    if kind == DIRECTORY:
        href += '/'
    return href


def list_directory(root, path):
    """Immediate children of ``path``, directories first then by name.

    Names compare by ``str.casefold`` with the raw name as tie-breaker.
    Entries that are neither directories nor regular files are left out,
    as are links whose target lies outside ``root``.
    """
    entries = []
    try:
        with os.scandir(path) as it:
            for entry in it:
                try:
                    if entry.is_symlink() and not is_within(root, os.path.realpath(entry.path)):
                        continue
                    if entry.is_dir():
                        kind = DIRECTORY
                    elif entry.is_file():
                        kind = FILE
                    else:
                        continue
                except OSError:
                    continue
                entries.append(DirectoryEntry(entry.name, kind, _href(entry.name, kind)))
    except OSError as e:
        raise ReadFailure("unable to list directory") from e

    entries.sort(key=lambda e: (e.kind != DIRECTORY, e.name.casefold(), e.name))
    return entries


def render_listing(url_path, entries):
    items = []
    if url_path != '/':
        items.append('        <li><a href="../">⬆️ Go back up a directory</a></li>')
    for entry in entries:
        icon = '📁' if entry.kind == DIRECTORY else '📄'
        items.append(f'        <li>{icon} <a href="{html.escape(entry.href)}">{_display(entry.name)}</a></li>')

    return LISTING_TEMPLATE.format(
        base=html.escape(quote(os.fsencode(url_path), safe='/')),
        title=_display(url_path),
        items='\n'.join(items),
    )


def directory_response(root, location):
    page = render_listing(location.url_path, list_directory(root, location.path))
    return Response(HTTPStatus.OK, 'text/html', body=page.encode('utf-8'))


def file_response(location):
    """Open the file now and return a response that streams it."""
    try:
        fd = os.open(location.path, _OPEN_FLAGS)
    except OSError as e:
        raise ReadFailure("unable to open file") from e
    f = os.fdopen(fd, 'rb')
    try:
        st = os.fstat(f.fileno())
    except OSError as e:
        f.close()
        raise ReadFailure("unable to stat file") from e
    if not stat.S_ISREG(st.st_mode):
        f.close()
        raise NotFound(location.url_path)

    return Response(
        HTTPStatus.OK,
        content_type_for(location.url_path),
        stream=FileStream(f, st.st_size),
        content_length=st.st_size,
    )


def error_response(status, detail=None, headers=None):
    """Minimal HTML error page; says nothing about the filesystem."""
    status = HTTPStatus(status)
    detail = f"<p>{html.escape(detail)}</p>" if detail else ""
    body = ERROR_TEMPLATE.format(code=status.value, phrase=status.phrase, detail=detail)
    return Response(status, 'text/html', body=body.encode('utf-8'), headers=headers)


def build_response(root, request_path):
    """Resolve ``request_path`` under ``root`` and build its response.

    Request-dependent failures come back as error responses, never as
    exceptions.
    """
    try:
        location = resolve(root, request_path)
        if location.kind == DIRECTORY:
            return directory_response(root, location)
        return file_response(location)
    except ReadFailure:
        logger.warning("Read failure for %s", request_path, exc_info=True)
        return error_response(ReadFailure.status, "Unable to read file")
    except RequestError as e:
        logger.info("Rejected %s: %s %s", request_path, e.status, type(e).__name__)
        return error_response(e.status)
