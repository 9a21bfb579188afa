import socket
import threading

import pytest

import server
from path_resolver import load_server_root


@pytest.fixture
def tree(tmp_path):
    """Served root holding a.txt and sub/b.html, with escape/ beside it."""
    root = tmp_path / "root"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"hello from a\n")
    (root / "sub" / "b.html").write_bytes(b"<p>b</p>\n")
    (tmp_path / "escape").write_text("outside the root")
    return root


@pytest.fixture
def root(tree):
    return load_server_root(str(tree))


@pytest.fixture
def start_server():
    """Start the real listener on an ephemeral port; returns the base URL."""
    running = []

    def start(directory):
        listener = server.make_listener("127.0.0.1", 0)
        thread = threading.Thread(
            target=server.serve_forever,
            args=(listener, load_server_root(str(directory))),
            daemon=True,
        )
        thread.start()
        running.append((listener, thread))
        host, port = listener.getsockname()
        return f"http://{host}:{port}"

    yield start

    for listener, thread in running:
        listener.close()
        thread.join(timeout=5)


def raw_request(base_url, request):
    """Send raw bytes and return everything the server writes back."""
    host, port = base_url.rsplit("/", 1)[-1].split(":")
    with socket.create_connection((host, int(port)), timeout=5) as s:
        s.sendall(request)
        resp = b""
        while True:
            data = s.recv(4096)
            if not data:
                break
            resp += data
    return resp
