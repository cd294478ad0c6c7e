from pathlib import Path
from typing import Dict, List

import pytest
import requests

from patchmedic.errors import DownloadError, PatchCancelled
from patchmedic.transfer import CancelToken, HttpTransfer, join_url, percent


class FakeResponse:
    def __init__(self, status_code: int, chunks: List[bytes], headers: Dict[str, str]):
        self.status_code = status_code
        self.headers = headers
        self._chunks = chunks

    def iter_content(self, chunk_size=None):
        yield from self._chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.headers: Dict[str, str] = {}
        self.response = response
        self.error = error
        self.requested: List[str] = []

    def get(self, url, stream=False, timeout=None):
        self.requested.append(url)
        if self.error is not None:
            raise self.error
        return self.response


def _ok(chunks: List[bytes], length=None) -> FakeResponse:
    size = sum(len(c) for c in chunks) if length is None else length
    return FakeResponse(200, chunks, {"Content-Length": str(size)})


def test_join_url_and_percent() -> None:
    assert join_url("http://cdn/patch/1.0", "Client.exe") == "http://cdn/patch/1.0/Client.exe"
    assert join_url("http://cdn/patch/1.0/", "/Sub\\File.dll") == "http://cdn/patch/1.0/Sub/File.dll"
    assert percent(50, 200) == 25
    assert percent(199, 200) == 99
    assert percent(10, None) == 0
    assert percent(10, 0) == 0


def test_cancel_token() -> None:
    token = CancelToken()
    token.raise_if_cancelled()
    token.cancel("stop now")
    assert token.cancelled
    with pytest.raises(PatchCancelled, match="stop now"):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_download_writes_file_and_reports_progress(tmp_path: Path) -> None:
    session = FakeSession(_ok([b"abc", b"", b"defg"]))
    transfer = HttpTransfer(session=session)
    dest = tmp_path / "temp" / "Client.exe"
    seen = []

    n = await transfer("http://cdn/Client.exe", str(dest), CancelToken(), lambda t, total: seen.append((t, total)))

    assert n == 7
    assert dest.read_bytes() == b"abcdefg"
    assert seen == [(3, 7), (7, 7)]
    assert session.headers["Accept-Encoding"] == "identity"


@pytest.mark.asyncio
async def test_http_error_raises_and_leaves_no_file(tmp_path: Path) -> None:
    transfer = HttpTransfer(session=FakeSession(FakeResponse(404, [], {})))
    dest = tmp_path / "Client.exe"

    with pytest.raises(DownloadError, match="HTTP 404") as info:
        await transfer("http://cdn/Client.exe", str(dest), CancelToken())
    assert info.value.url == "http://cdn/Client.exe"
    assert not dest.exists()


@pytest.mark.asyncio
async def test_short_body_is_incomplete(tmp_path: Path) -> None:
    transfer = HttpTransfer(session=FakeSession(_ok([b"abc"], length=10)))
    dest = tmp_path / "Client.exe"

    with pytest.raises(DownloadError, match="Incomplete download"):
        await transfer("http://cdn/Client.exe", str(dest), CancelToken())
    assert not dest.exists()


@pytest.mark.asyncio
async def test_network_error_is_wrapped(tmp_path: Path) -> None:
    transfer = HttpTransfer(session=FakeSession(error=requests.ConnectionError("refused")))

    with pytest.raises(DownloadError, match="refused"):
        await transfer("http://cdn/Client.exe", str(tmp_path / "x"), CancelToken())


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_request(tmp_path: Path) -> None:
    session = FakeSession(_ok([b"abc"]))
    token = CancelToken()
    token.cancel()

    with pytest.raises(PatchCancelled):
        await HttpTransfer(session=session)("http://cdn/Client.exe", str(tmp_path / "x"), token)
    assert session.requested == []


@pytest.mark.asyncio
async def test_cancel_between_chunks_discards_partial(tmp_path: Path) -> None:
    token = CancelToken()

    class CancellingResponse(FakeResponse):
        def iter_content(self, chunk_size=None):
            yield b"first"
            token.cancel()
            yield b"second"

    transfer = HttpTransfer(session=FakeSession(CancellingResponse(200, [], {"Content-Length": "11"})))
    dest = tmp_path / "Client.exe"

    with pytest.raises(PatchCancelled):
        await transfer("http://cdn/Client.exe", str(dest), token)
    assert not dest.exists()
