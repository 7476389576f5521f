"""End-to-end checks against the real qpdf binary (skipped when it isn't installed)."""
import shutil
import subprocess

import pytest

from conftest import build_multipart

QPDF = shutil.which("qpdf")

pytestmark = pytest.mark.skipif(QPDF is None, reason="qpdf not installed")


def minimal_pdf(text="Hello DocLock"):
    stream = b"BT /F1 24 Tf 72 720 Td (%s) Tj ET" % text.encode("ascii")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R"
        b" /Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n%s\nendstream" % (len(stream), stream),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n%s\nendobj\n" % (number, body)
    xref_at = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


def _is_encrypted(path):
    # qpdf --is-encrypted: exit 0 if encrypted, 2 if not.
    return subprocess.run([QPDF, "--is-encrypted", "--", str(path)]).returncode == 0


def _page_content(path, tmp_path):
    qdf = tmp_path / "qdf.pdf"
    subprocess.run([QPDF, "--qdf", "--object-streams=disable", "--", str(path), str(qdf)], check=True)
    return qdf.read_bytes()


def _post(client, path, password, data, **fields):
    ctype, body = build_multipart(fields={"password": password, **fields}, files={"file": ("in.pdf", data)})
    return client.post(path, content=body, headers={"Content-Type": ctype})


@pytest.mark.parametrize("bits", ["256", "128"])
def test_protect_unlock_round_trip(make_client, tmp_path, leftover_workspaces, bits):
    client = make_client(qpdf_command=(QPDF,))
    original = minimal_pdf()

    res = _post(client, "/api/protect", "s3cret pass", original, bits=bits)
    assert res.status_code == 200, res.text
    protected = tmp_path / "protected.pdf"
    protected.write_bytes(res.content)
    assert _is_encrypted(protected)

    assert _post(client, "/api/unlock", "not it", res.content).status_code == 403

    res = _post(client, "/api/unlock", "s3cret pass", res.content)
    assert res.status_code == 200, res.text
    unlocked = tmp_path / "unlocked.pdf"
    unlocked.write_bytes(res.content)
    assert not _is_encrypted(unlocked)
    assert b"(Hello DocLock) Tj" in _page_content(unlocked, tmp_path)
    assert leftover_workspaces() == []


def test_protect_garbage_is_500(make_client):
    client = make_client(qpdf_command=(QPDF,))
    res = _post(client, "/api/protect", "secret", b"definitely not a pdf")
    assert res.status_code == 500
    assert res.text.startswith("Protect failed: ")
