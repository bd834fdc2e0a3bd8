"""Tests for the platform helpers module."""

from unittest.mock import patch

import pytest

from workload_py.platform import (
    architecture,
    current_platform,
    is_linux,
    is_macos,
    is_windows,
    lock_file_name,
    os_name,
)


class TestIsMacos:
    def test_true_on_darwin(self) -> None:
        with patch("workload_py.platform.sys") as mock_sys:
            mock_sys.platform = "darwin"
            assert is_macos() is True

    def test_false_on_linux(self) -> None:
        with patch("workload_py.platform.sys") as mock_sys:
            mock_sys.platform = "linux"
            assert is_macos() is False


class TestIsLinux:
    def test_true_on_linux(self) -> None:
        with patch("workload_py.platform.sys") as mock_sys:
            mock_sys.platform = "linux"
            assert is_linux() is True

    def test_false_on_windows(self) -> None:
        with patch("workload_py.platform.sys") as mock_sys:
            mock_sys.platform = "win32"
            assert is_linux() is False
            assert is_windows() is True


class TestOsName:
    @pytest.mark.parametrize(
        "raw, expected", [("darwin", "osx"), ("win32", "win"), ("linux", "linux")]
    )
    def test_names(self, raw: str, expected: str) -> None:
        with patch("workload_py.platform.sys") as mock_sys:
            mock_sys.platform = raw
            assert os_name() == expected


class TestArchitecture:
    def test_aliases(self) -> None:
        assert architecture("x86_64") == "x64"
        assert architecture("AMD64") == "x64"
        assert architecture("aarch64") == "arm64"
        assert architecture("arm64") == "arm64"

    def test_unknown_passes_through(self) -> None:
        assert architecture("riscv64") == "riscv64"


class TestCurrentPlatform:
    def test_combines_os_and_arch(self) -> None:
        with patch("workload_py.platform.sys") as mock_sys, patch(
            "workload_py.platform.platform.machine", return_value="x86_64"
        ):
            mock_sys.platform = "linux"
            assert current_platform() == "linux-x64"


class TestLockFileName:
    def test_hidden_on_posix(self) -> None:
        with patch("workload_py.platform.sys") as mock_sys:
            mock_sys.platform = "linux"
            assert lock_file_name() == ".workload.lock"

    def test_windows(self) -> None:
        with patch("workload_py.platform.sys") as mock_sys:
            mock_sys.platform = "win32"
            assert lock_file_name() == "workload.lock"
