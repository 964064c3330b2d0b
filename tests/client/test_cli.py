"""Tests for CLI commands - configure, todos, images."""

import json
import logging
import re
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner
from keyring.errors import NoKeyringError

from recordsync.client.cli import cli

BACKEND = ["--url", "http://test", "--api-key", "anon-key", "--access-token", "jwt-token"]

USER = {"id": "user-1", "email": "user@example.com"}
ROWS = [
    {
        "id": 2,
        "user_id": "user-1",
        "text": "walk dog",
        "completed": True,
        "image_url": None,
        "created_at": "2025-01-01T11:00:00+00:00",
    },
    {
        "id": 1,
        "user_id": "user-1",
        "text": "buy milk",
        "completed": False,
        "image_url": None,
        "created_at": "2025-01-01T10:00:00+00:00",
    },
]
TODOS_URL = re.compile(r"http://test/rest/v1/todos(\?.*)?$")


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def config_dir(tmp_path: Path) -> Iterator[Path]:
    """Point the config directory at a temporary folder."""
    with patch("recordsync.client.cli.config.get_config_dir", return_value=tmp_path):
        yield tmp_path


@pytest.fixture
def mock_keyring() -> Iterator[MagicMock]:
    with patch("recordsync.client.cli.config.keyring") as keyring:
        keyring.get_password.return_value = None
        yield keyring


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """The CLI reconfigures the package logger; undo it for other tests."""
    app_logger = logging.getLogger("recordsync")
    handlers, level, propagate = app_logger.handlers[:], app_logger.level, app_logger.propagate
    yield
    app_logger.handlers[:] = handlers
    app_logger.setLevel(level)
    app_logger.propagate = propagate


class TestConfigureCommand:
    """Tests for 'recordsync configure'."""

    def test_configure_with_options(
        self, runner: CliRunner, config_dir: Path, mock_keyring: MagicMock
    ) -> None:
        """Settings go to the config file, the token to the keyring."""
        result = runner.invoke(
            cli,
            ["configure", "--url", "https://abc.supabase.co/", "--api-key", "anon-key",
             "--access-token", "jwt-token", "--bucket", "todo-bucket"],
        )

        assert result.exit_code == 0, result.output
        config = json.loads((config_dir / "config.json").read_text())
        assert config == {"url": "https://abc.supabase.co", "api_key": "anon-key", "bucket": "todo-bucket"}
        mock_keyring.set_password.assert_called_once_with("recordsync", "access_token", "jwt-token")

    def test_configure_prompts(
        self, runner: CliRunner, config_dir: Path, mock_keyring: MagicMock
    ) -> None:
        result = runner.invoke(
            cli, ["configure"], input="https://abc.supabase.co\nanon-key\njwt-token\n\n"
        )

        assert result.exit_code == 0, result.output
        config = json.loads((config_dir / "config.json").read_text())
        assert config["bucket"] == "todo-bucket"

    def test_configure_without_keyring(self, runner: CliRunner, config_dir: Path) -> None:
        """Without a keyring backend the token is kept in the config file."""
        with patch("recordsync.client.cli.config.keyring") as keyring:
            keyring.set_password.side_effect = NoKeyringError("no backend")
            result = runner.invoke(
                cli,
                ["configure", "--url", "http://test", "--api-key", "k",
                 "--access-token", "jwt-token", "--bucket", "b"],
            )

        assert result.exit_code == 0, result.output
        assert "No keyring available" in result.output
        config = json.loads((config_dir / "config.json").read_text())
        assert config["access_token"] == "jwt-token"


class TestTodosCommands:
    """Tests for 'recordsync todos'."""

    def test_not_configured(self, runner: CliRunner, mock_keyring: MagicMock) -> None:
        result = runner.invoke(cli, ["todos", "list"])

        assert result.exit_code == 1
        assert "Not configured" in result.output

    def test_list(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=ROWS)

        result = runner.invoke(cli, [*BACKEND, "todos", "list"])

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].startswith("[x] walk dog")
        assert lines[1].startswith("[ ] buy milk")
        assert "2 of 2 todos" in result.output

    def test_list_active(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=ROWS)

        result = runner.invoke(cli, [*BACKEND, "todos", "list", "--filter", "active"])

        assert result.exit_code == 0, result.output
        assert "walk dog" not in result.output
        assert "1 of 2 todos" in result.output

    def test_list_uses_stored_config(
        self, runner: CliRunner, config_dir: Path, mock_keyring: MagicMock, httpx_mock  # type: ignore[no-untyped-def]
    ) -> None:
        (config_dir / "config.json").write_text(
            json.dumps({"url": "http://test", "api_key": "anon-key"})
        )
        mock_keyring.get_password.return_value = "stored-token"
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=[])

        result = runner.invoke(cli, ["todos", "list"])

        assert result.exit_code == 0, result.output
        assert "No todos found" in result.output
        assert httpx_mock.get_requests()[0].headers["Authorization"] == "Bearer stored-token"

    def test_add(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="POST", url=TODOS_URL, status_code=201, json=[ROWS[1]])

        result = runner.invoke(cli, [*BACKEND, "todos", "add", "buy milk"])

        assert result.exit_code == 0, result.output
        assert "Added: [ ] buy milk" in result.output
        body = json.loads(httpx_mock.get_requests()[-1].content)
        assert body == {"text": "buy milk", "completed": False, "user_id": "user-1"}

    def test_add_with_image(self, runner: CliRunner, httpx_mock, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """The image is stored in the user's folder and linked from the todo."""
        image = tmp_path / "cat.png"
        image.write_bytes(b"\x89PNG fake")
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(
            method="POST",
            url=re.compile(r"http://test/storage/v1/object/todo-bucket/user-1/\d+-[0-9a-f]{8}-cat\.png"),
            json={"Key": "todo-bucket/cat.png"},
        )
        httpx_mock.add_response(
            method="POST", url=TODOS_URL, status_code=201, json=[{**ROWS[1], "text": "pet cat"}]
        )

        result = runner.invoke(cli, [*BACKEND, "todos", "add", "pet cat", "--image", str(image)])

        assert result.exit_code == 0, result.output
        assert "Added: [ ] pet cat" in result.output
        _, upload, insert = httpx_mock.get_requests()
        assert upload.content == b"\x89PNG fake"
        assert upload.headers["Content-Type"] == "image/png"
        key = str(upload.url).split("/object/todo-bucket/", 1)[1]
        body = json.loads(insert.content)
        assert body["image_url"] == f"http://test/storage/v1/object/public/todo-bucket/{key}"

    def test_add_rejects_non_image(self, runner: CliRunner, tmp_path: Path) -> None:
        notes = tmp_path / "notes.txt"
        notes.write_text("hello")

        result = runner.invoke(cli, [*BACKEND, "todos", "add", "read", "--image", str(notes)])

        assert result.exit_code != 0
        assert "notes.txt is not an image" in result.output

    def test_add_empty_text(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, [*BACKEND, "todos", "add", "   "])

        assert result.exit_code != 0
        assert "Text must not be empty" in result.output

    def test_toggle(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=ROWS)
        httpx_mock.add_response(method="PATCH", url=TODOS_URL, status_code=204)

        result = runner.invoke(cli, [*BACKEND, "todos", "toggle", "1"])

        assert result.exit_code == 0, result.output
        assert "[x] buy milk" in result.output

    def test_toggle_unknown_id(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=ROWS)

        result = runner.invoke(cli, [*BACKEND, "todos", "toggle", "42"])

        assert result.exit_code == 1
        assert "No todos record 42" in result.output

    def test_delete(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=ROWS)
        httpx_mock.add_response(method="DELETE", url=TODOS_URL, status_code=204)

        result = runner.invoke(cli, [*BACKEND, "todos", "delete", "2"])

        assert result.exit_code == 0, result.output
        assert "Deleted 2" in result.output

    def test_delete_removes_own_image(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        url = "http://test/storage/v1/object/public/todo-bucket/user-1/1-ab12cd34-cat.png"
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=[{**ROWS[1], "image_url": url}])
        httpx_mock.add_response(method="DELETE", url=TODOS_URL, status_code=204)
        httpx_mock.add_response(method="DELETE", url="http://test/storage/v1/object/todo-bucket", json=[])

        result = runner.invoke(cli, [*BACKEND, "todos", "delete", "1"])

        assert result.exit_code == 0, result.output
        removal = httpx_mock.get_requests()[-1]
        assert json.loads(removal.content) == {"prefixes": ["user-1/1-ab12cd34-cat.png"]}

    def test_delete_keeps_shared_image(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A todo linking an image it did not store leaves that image alone."""
        url = "http://test/storage/v1/object/public/todo-bucket/1700000000000-cat.png"
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(method="GET", url=TODOS_URL, json=[{**ROWS[1], "image_url": url}])
        httpx_mock.add_response(method="DELETE", url=TODOS_URL, status_code=204)

        result = runner.invoke(cli, [*BACKEND, "todos", "delete", "1"])

        assert result.exit_code == 0, result.output
        assert not [r for r in httpx_mock.get_requests() if "/storage/" in r.url.path]

    def test_not_signed_in(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", status_code=401, json={"msg": "bad jwt"})

        result = runner.invoke(cli, [*BACKEND, "todos", "list"])

        assert result.exit_code == 1
        assert "Not signed in" in result.output

    def test_verbose_enables_debug(self, runner: CliRunner) -> None:
        runner.invoke(cli, ["--verbose", *BACKEND, "todos", "add", " "])

        assert logging.getLogger("recordsync").level == logging.DEBUG


class TestImagesCommands:
    """Tests for 'recordsync images'."""

    def test_list(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://test/auth/v1/user", json=USER)
        httpx_mock.add_response(
            method="GET",
            url=re.compile(r"http://test/rest/v1/images\?.*"),
            json=[
                {
                    "id": "a1",
                    "user_id": "user-1",
                    "name": "cat.png",
                    "original_size": 5 * 1024 * 1024,
                    "compressed_size": 900 * 1024,
                    "url": "http://test/storage/v1/object/public/todo-bucket/1-cat.png",
                    "created_at": "2025-01-01T10:00:00+00:00",
                }
            ],
        )

        result = runner.invoke(cli, [*BACKEND, "images", "list"])

        assert result.exit_code == 0, result.output
        assert "cat.png  5.00 MB -> 900.00 KB" in result.output
        assert "1 images" in result.output

    def test_upload_rejects_non_images(self, runner: CliRunner, tmp_path: Path) -> None:
        notes = tmp_path / "notes.txt"
        notes.write_text("hello")

        result = runner.invoke(cli, [*BACKEND, "images", "upload", str(notes)])

        assert result.exit_code == 1
        assert "Please upload image files" in result.output
        assert "Uploaded 0 of 1 files" in result.output
