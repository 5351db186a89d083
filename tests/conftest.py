import logging

import pytest

from blocklist_refresh import Config, RemoteSource


class FakeResponse:
    """Minimal stand-in for requests.Response as used by the refresher."""

    def __init__(self, status_code: int = 200, body: bytes = b""):
        self.status_code = status_code
        self.body = body

    def iter_lines(self):
        return iter(self.body.splitlines())

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Routes GET requests by URL to canned responses or exceptions."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        route = self.routes[url]
        if isinstance(route, Exception):
            raise route
        return route

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


SOURCE_A = RemoteSource(name="a", url="https://a.example/ips.txt")
SOURCE_B = RemoteSource(name="b", url="https://b.example/ips.txt")


@pytest.fixture
def logger():
    return logging.getLogger("blocklist-refresh")


@pytest.fixture(autouse=True)
def reset_logger_handlers():
    # main() attaches a stdout handler per call
    yield
    logging.getLogger("blocklist-refresh").handlers.clear()


@pytest.fixture
def blocklist_file(tmp_path):
    path = tmp_path / "banned_ip.txt"
    path.write_text("")
    return path


@pytest.fixture
def config(blocklist_file):
    return Config(
        blocklist_file=str(blocklist_file),
        sources=[SOURCE_A, SOURCE_B],
        fetch_timeout=5,
    )
