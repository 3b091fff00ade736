# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for the dotenv loader."""

import os
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import pytest

from mattermail.dotenv_loader import load_dotenv_once, reset_dotenv_state


class TestLoadDotenvOnce:
    """Tests for load_dotenv_once."""

    def setup_method(self) -> None:
        reset_dotenv_state()

    def teardown_method(self) -> None:
        reset_dotenv_state()

    def test_idempotent(self, tmp_path: Path) -> None:
        """Second call is a no-op."""
        xdg_env = tmp_path / ".env"
        xdg_env.touch()
        mock_ld = MagicMock()
        with (
            patch("mattermail.dotenv_loader.load_dotenv", mock_ld),
            patch(
                "mattermail.dotenv_loader.Path.cwd",
                return_value=tmp_path / "cwd",
            ),
        ):
            load_dotenv_once(xdg_env)
            load_dotenv_once(xdg_env)
        mock_ld.assert_called_once_with(xdg_env)

    def test_loads_both_in_order(self, tmp_path: Path) -> None:
        xdg_env = tmp_path / "config" / ".env"
        cwd_env = tmp_path / "cwd" / ".env"
        for path in (xdg_env, cwd_env):
            path.parent.mkdir()
            path.touch()
        mock_ld = MagicMock()
        with (
            patch("mattermail.dotenv_loader.load_dotenv", mock_ld),
            patch(
                "mattermail.dotenv_loader.Path.cwd",
                return_value=cwd_env.parent,
            ),
        ):
            load_dotenv_once(xdg_env)
        assert mock_ld.call_args_list == [call(xdg_env), call(cwd_env)]

    def test_no_files(self, tmp_path: Path) -> None:
        mock_ld = MagicMock()
        with (
            patch("mattermail.dotenv_loader.load_dotenv", mock_ld),
            patch("mattermail.dotenv_loader.Path.cwd", return_value=tmp_path),
        ):
            load_dotenv_once(tmp_path / "missing" / ".env")
        mock_ld.assert_not_called()

    def test_defaults_to_xdg_path(self, tmp_path: Path) -> None:
        xdg_env = tmp_path / ".env"
        xdg_env.touch()
        mock_ld = MagicMock()
        with (
            patch("mattermail.dotenv_loader.load_dotenv", mock_ld),
            patch(
                "mattermail.config.get_dotenv_path", return_value=xdg_env
            ),
            patch(
                "mattermail.dotenv_loader.Path.cwd",
                return_value=tmp_path / "cwd",
            ),
        ):
            load_dotenv_once()
        mock_ld.assert_called_once_with(xdg_env)

    def test_existing_env_not_overridden(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TEST_DOTENV_VALUE", "from-env")
        xdg_env = tmp_path / ".env"
        xdg_env.write_text("TEST_DOTENV_VALUE=from-file\n")
        with patch(
            "mattermail.dotenv_loader.Path.cwd", return_value=tmp_path / "cwd"
        ):
            load_dotenv_once(xdg_env)

        assert os.environ["TEST_DOTENV_VALUE"] == "from-env"
