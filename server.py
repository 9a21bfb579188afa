import logging
import socket
import sys
import threading
from urllib.parse import urlsplit

import config
from path_resolver import ReadFailure, load_server_root
from response_builder import build_response, error_response

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ('GET', 'HEAD')
SOCKET_TIMEOUT = 30


def read_request_head(conn):
    """Read until the blank line ending the headers, or MAX_REQUEST_HEAD bytes."""
    data = b""
    while b"\r\n\r\n" not in data and b"\n\n" not in data:
        if len(data) >= config.MAX_REQUEST_HEAD:
            break
        chunk = conn.recv(1024)
        if not chunk:
            break
        data += chunk
    return data


def parse_request_line(head):
    """Return (method, target) from the first line, or None if malformed."""
    lines = head.decode('latin-1').splitlines()
    if not lines:
        return None
    parts = lines[0].split()
    if len(parts) not in (2, 3):
        return None
    if len(parts) == 3 and not parts[2].startswith('HTTP/'):
        return None
    return parts[0], parts[1]


def request_path(target):
    """Path component of a request target, without query or fragment."""
    if target.startswith(('http://', 'https://')):
        return urlsplit(target).path or '/'
    if not target.startswith('/'):
        return None
    return target.split('?', 1)[0].split('#', 1)[0]


def respond(root, request_line):
    if request_line is None:
        return error_response(400)
    method, target = request_line
    if method not in ALLOWED_METHODS:
        return error_response(405, headers={'Allow': ', '.join(ALLOWED_METHODS)})
    path = request_path(target)
    if path is None:
        return error_response(400)
    return build_response(root, path)


def send_response(conn, response, include_body=True):
    conn.sendall(response.head())
    if not include_body:
        return
    for chunk in response.chunks():
        conn.sendall(chunk)


def handle_request(conn, addr, root):
    """Serve a single request on ``conn`` and close it."""
    response = None
    try:
        conn.settimeout(SOCKET_TIMEOUT)
        head = read_request_head(conn)
        if not head.strip():
            logger.debug("Empty request from %s", addr)
            return

        request_line = parse_request_line(head)
        response = respond(root, request_line)
        method = request_line[0] if request_line else '-'
        target = request_line[1] if request_line else '-'
        logger.info('%s "%s %s" %d', addr[0], method, target, response.status)

        send_response(conn, response, include_body=(method != 'HEAD'))
    except (OSError, ReadFailure) as e:
        logger.warning("Aborted response to %s: %s", addr, e)
    except Exception:
        logger.exception("Error handling request from %s", addr)
        if response is None:
            try:
                send_response(conn, error_response(500))
            except OSError as e:
                logger.debug("Could not send 500 to %s: %s", addr, e)
    finally:
        if response is not None:
            response.close()
        conn.close()


def make_listener(host, port):
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    s.bind((host, port))
    s.listen(5)
    # lets the accept loop notice the listener being closed
    s.settimeout(1.0)
    return s


def serve_forever(listener, root):
    """Accept connections until ``listener`` is closed, one thread each."""
    while True:
        try:
            conn, addr = listener.accept()
        except socket.timeout:
            continue
        except OSError:
            if listener.fileno() == -1:
                break
            logger.exception("Failed to accept a connection")
            continue
        threading.Thread(target=handle_request, args=(conn, addr, root), daemon=True).start()


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) > 1:
        print("Usage: python server.py [directory_to_serve]")
        return 1

    if not isinstance(logging.getLevelName(config.LOG_LEVEL), int):
        print(f"Error: unknown log level {config.LOG_LEVEL}")
        return 1
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

    try:
        root = load_server_root(argv[0] if argv else None)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    with make_listener(config.HOST, config.PORT) as s:
        logger.info("Serving HTTP on %s:%d from %s", config.HOST, config.PORT, root)
        try:
            serve_forever(s, root)
        except KeyboardInterrupt:
            logger.info("Shutting down server...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
