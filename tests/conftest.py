import sys
from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from doclock_backend.config import Settings  # noqa: E402
from server import create_app  # noqa: E402

FAKE_QPDF = Path(__file__).resolve().parent / "fake_qpdf.py"
FAKE_QPDF_COMMAND = (sys.executable, str(FAKE_QPDF))

BOUNDARY = "----doclocktestboundary7MA4YWxkTrZu0gW"


def build_multipart(fields=None, files=None, boundary=BOUNDARY):
    """Return (content_type, body) for a multipart/form-data request.

    fields: {name: str}; files: {name: (filename, bytes)}.
    """
    parts = []
    for name, value in (fields or {}).items():
        parts.append(
            b"--%s\r\nContent-Disposition: form-data; name=\"%s\"\r\n\r\n%s\r\n"
            % (boundary.encode(), name.encode(), value.encode("utf-8"))
        )
    for name, (filename, data) in (files or {}).items():
        parts.append(
            b"--%s\r\nContent-Disposition: form-data; name=\"%s\"; filename=\"%s\"\r\n"
            b"Content-Type: application/pdf\r\n\r\n%s\r\n"
            % (boundary.encode(), name.encode(), filename.encode(), data)
        )
    body = b"".join(parts) + b"--%s--\r\n" % boundary.encode()
    return f"multipart/form-data; boundary={boundary}", body


@pytest.fixture
def workspaces_root(tmp_path):
    return tmp_path / "workspaces"


@pytest.fixture
def settings(workspaces_root):
    return Settings(
        max_upload_bytes=64 * 1024,
        qpdf_command=FAKE_QPDF_COMMAND,
        qpdf_timeout=30.0,
        workspaces_root=workspaces_root,
    )


@pytest.fixture
def make_client(settings):
    def _make(**overrides):
        return TestClient(create_app(replace(settings, **overrides)))

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def leftover_workspaces(workspaces_root):
    def _list():
        if not workspaces_root.exists():
            return []
        return sorted(p.name for p in workspaces_root.iterdir())

    return _list
