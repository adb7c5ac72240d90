"""
Tests for the run.py launcher script.

Validates each step of the launcher without actually starting services.
"""
import sys
import urllib.error
from unittest.mock import patch, MagicMock, Mock

import pytest

import run
from src.storage.mode import SHARED_DB_ENV, SHARED_DB_URL_ENV, SharedDbConfig, save_db_config


@pytest.fixture(autouse=True)
def _data_root(tmp_path, monkeypatch):
    monkeypatch.setenv("VELOX_DATA_ROOT", str(tmp_path))
    monkeypatch.delenv(SHARED_DB_ENV, raising=False)
    monkeypatch.delenv(SHARED_DB_URL_ENV, raising=False)


class TestCheckPythonDeps:
    """Test Python dependency checking."""

    def test_all_deps_present(self):
        """All required packages are installed in the test environment."""
        assert run.check_python_deps() is True

    @patch("builtins.__import__", side_effect=ImportError("no module"))
    def test_missing_dep_returns_false(self, mock_import):
        assert run.check_python_deps() is False


class TestCheckStorage:
    """Test storage mode reporting."""

    def test_local_mode_ok(self):
        assert run.check_storage() is True

    def test_shared_reachable(self, tmp_path):
        from src.storage.backends import Backends
        Backends(tmp_path).initialize_shared(tmp_path / "shared.sqlite")
        assert run.check_storage() is True

    def test_shared_unreachable(self, tmp_path):
        save_db_config(tmp_path, SharedDbConfig(path=str(tmp_path / "missing.sqlite")))
        assert run.check_storage() is False

    def test_leaves_import_path_untouched(self):
        before = list(sys.path)
        run.check_storage()
        assert sys.path == before


class TestOpenBrowser:
    """Test the wait-then-open browser helper."""

    @patch("webbrowser.open")
    @patch("urllib.request.urlopen")
    def test_opens_when_ready(self, mock_urlopen, mock_open):
        mock_resp = MagicMock()
        mock_resp.__enter__ = Mock(return_value=Mock(status=200))
        mock_resp.__exit__ = Mock(return_value=False)
        mock_urlopen.return_value = mock_resp

        run.open_browser()
        mock_open.assert_called_once_with(run.APP_URL)

    @patch("time.sleep")
    @patch("webbrowser.open")
    @patch("urllib.request.urlopen")
    def test_opens_after_retries(self, mock_urlopen, mock_open, mock_sleep):
        mock_resp = MagicMock()
        mock_resp.__enter__ = Mock(return_value=Mock(status=200))
        mock_resp.__exit__ = Mock(return_value=False)
        mock_urlopen.side_effect = [
            urllib.error.URLError("refused"),
            urllib.error.URLError("refused"),
            mock_resp,
        ]

        run.open_browser()
        assert mock_urlopen.call_count == 3
        mock_open.assert_called_once_with(run.APP_URL)

    @patch("time.sleep")
    @patch("webbrowser.open")
    @patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused"))
    def test_gives_up_and_opens_anyway(self, mock_urlopen, mock_open, mock_sleep):
        run.open_browser()
        assert mock_urlopen.call_count == 30
        mock_open.assert_called_once_with(run.APP_URL)


class TestMainFlow:
    """Test the main() orchestration flow."""

    @patch("run.launch_app")
    @patch("run.check_storage", return_value=True)
    @patch("run.check_python_deps", return_value=True)
    def test_full_success_flow(self, mock_deps, mock_storage, mock_launch):
        result = run.main()
        assert result == 0
        mock_deps.assert_called_once()
        mock_storage.assert_called_once()
        mock_launch.assert_called_once()

    @patch("run.check_python_deps", return_value=False)
    def test_missing_deps_exits(self, mock_deps):
        result = run.main()
        assert result == 1

    @patch("run.launch_app")
    @patch("run.check_storage", return_value=False)
    @patch("run.check_python_deps", return_value=True)
    def test_unreachable_shared_still_launches(self, mock_deps, mock_storage, mock_launch):
        """Reads are served from the local mirror, so the app still starts."""
        result = run.main()
        assert result == 0
        mock_launch.assert_called_once()


class TestLaunchApp:
    """Test the app launcher function."""

    @patch("threading.Thread")
    @patch("subprocess.run")
    def test_launch_calls_python_m_src(self, mock_run, mock_thread):
        mock_t = Mock()
        mock_thread.return_value = mock_t
        run.launch_app()
        mock_run.assert_called_once()
        args = mock_run.call_args[0][0]
        assert args[0] == sys.executable
        assert args[1:] == ["-m", "src"]

    @patch("threading.Thread")
    @patch("subprocess.run")
    def test_launch_starts_browser_thread(self, mock_run, mock_thread):
        mock_t = Mock()
        mock_thread.return_value = mock_t
        run.launch_app()
        mock_thread.assert_called_once()
        mock_t.start.assert_called_once()
        assert mock_thread.call_args[1]["daemon"] is True
