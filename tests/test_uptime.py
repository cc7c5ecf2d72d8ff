import sys
import time

import pytest

from nth_handler import uptime
from nth_handler.uptime import UptimeError, system_uptime, uptime_from_file


def test_uptime_from_file_success(tmp_path):
    path = tmp_path / "test.out"
    path.write_text("350735.47 234388.90")
    assert uptime_from_file(path) == 350735


def test_uptime_from_file_read_fail(tmp_path):
    with pytest.raises(UptimeError, match="Not able to read"):
        uptime_from_file(tmp_path / "does-not-exist")


def test_uptime_from_file_bad_data(tmp_path):
    path = tmp_path / "test.out"
    path.write_text("Something not time")
    with pytest.raises(UptimeError, match="Not able to parse"):
        uptime_from_file(path)


@pytest.mark.parametrize(
    "content, expected",
    [
        ("0 234388.90", 0),
        ("12.99 1.0", 12),
        ("7", 7),
        ("1e3 5", 1000),
    ],
)
def test_uptime_from_file_values(tmp_path, content, expected):
    path = tmp_path / "uptime"
    path.write_text(content)
    assert uptime_from_file(path) == expected


@pytest.mark.parametrize("content", ["", " 12 34", "1_000 2", "inf 1"])
def test_uptime_from_file_rejects_malformed(tmp_path, content):
    path = tmp_path / "uptime"
    path.write_text(content)
    with pytest.raises(UptimeError):
        uptime_from_file(path)


def test_system_uptime_linux(tmp_path, monkeypatch):
    path = tmp_path / "proc_uptime"
    path.write_text("4242.10 100.00\n")
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setattr(uptime, "_PROC_UPTIME", str(path))
    value = system_uptime()
    assert value == 4242
    assert value > 0


def test_system_uptime_linux_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setattr(uptime, "_PROC_UPTIME", str(tmp_path / "missing"))
    with pytest.raises(UptimeError):
        system_uptime()


def test_system_uptime_darwin_not_implemented(monkeypatch):
    monkeypatch.setattr(sys, "platform", "darwin")
    with pytest.raises(UptimeError, match="Not implemented on darwin platform"):
        system_uptime()


def test_system_uptime_windows_uses_monotonic(monkeypatch):
    monkeypatch.setattr(sys, "platform", "win32")
    monkeypatch.setattr(time, "monotonic", lambda: 123.9)
    assert system_uptime() == 123