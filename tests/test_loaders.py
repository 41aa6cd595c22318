import os

import httpx
import pytest

from dnsroute.loaders import FileLoader, HTTPLoader, StaticLoader

RULES = ["(^|\\.)block\\.test", "(^|\\.)evil\\.test", "# comment"]


def serving(text, status=200):
    def handler(request):
        return httpx.Response(status, text=text)

    return httpx.Client(transport=httpx.MockTransport(handler))


def failing():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_static_loader():
    assert StaticLoader(RULES).load() == RULES


def test_file_loader_reads_lines(tmp_path):
    path = tmp_path / "list.txt"
    path.write_text("\r\n".join(RULES) + "\r\n")
    assert FileLoader(str(path)).load() == RULES


def test_file_loader_missing_file(tmp_path):
    with pytest.raises(OSError):
        FileLoader(str(tmp_path / "missing")).load()


def test_file_loader_allow_failure_keeps_previous(tmp_path):
    path = tmp_path / "list.txt"
    path.write_text("\n".join(RULES))
    loader = FileLoader(str(path), allow_failure=True)
    assert loader.load() == RULES
    path.unlink()
    assert loader.load() == RULES


def test_http_loader_fetches_rules():
    loader = HTTPLoader("https://lists.example.com/list", client=serving("\n".join(RULES) + "\n"))
    assert loader.load() == RULES


def test_http_loader_bad_status():
    loader = HTTPLoader("https://lists.example.com/list", client=serving("", status=404))
    with pytest.raises(httpx.HTTPStatusError):
        loader.load()


def test_http_loader_allow_failure():
    loader = HTTPLoader("https://lists.example.com/list", allow_failure=True, client=failing())
    assert loader.load() == []


def test_http_loader_cache_filename(tmp_path):
    loader = HTTPLoader("https://lists.example.com/list", cache_dir=str(tmp_path))
    path = loader.cache_filename()
    assert os.path.dirname(path) == str(tmp_path)
    name = os.path.basename(path)
    assert len(name) == 64
    assert set(name) <= set("0123456789abcdef")
    other = HTTPLoader("https://lists.example.com/other", cache_dir=str(tmp_path))
    assert other.cache_filename() != path


def test_http_loader_cache_round_trip(tmp_path):
    url = "https://lists.example.com/list"
    first = HTTPLoader(url, cache_dir=str(tmp_path), client=serving("\n".join(RULES)))
    assert first.load() == RULES
    assert os.path.exists(first.cache_filename())
    # Only the cache file is left behind in the cache directory.
    assert os.listdir(tmp_path) == [os.path.basename(first.cache_filename())]

    second = HTTPLoader(url, cache_dir=str(tmp_path), client=failing())
    assert second.load() == RULES
    # Later loads go to the server.
    with pytest.raises(httpx.ConnectError):
        second.load()