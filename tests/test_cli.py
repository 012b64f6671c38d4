"""Tests for the CLI.

Network access is mocked with respx and the database is a per-test
SQLite file selected through the environment.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import respx
from typer.testing import CliRunner

from skyimager import __version__
from skyimager.bootparams.codec import SECTOR_SIZE, write_params
from skyimager.bootparams.generator import generate
from skyimager.buildconfig import BuildConfig, dump_build_config
from skyimager.cli import app
from skyimager.config import SKYBIAN_RELEASES_URL

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SKYIMAGER_DB_URL", f"sqlite:///{tmp_path / 'db.sqlite'}")
    monkeypatch.setenv("SKYIMAGER_WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("SKYIMAGER_MAX_CONCURRENT_BUILDS", "2")
    monkeypatch.setenv("SKYIMAGER_LOG_LEVEL", "CRITICAL")
    monkeypatch.delenv("SKYIMAGER_GITHUB_TOKEN", raising=False)


@pytest.fixture
def base_image(tmp_path: Path) -> Path:
    data = bytearray(4 * SECTOR_SIZE)
    data[510:512] = b"\x55\xaa"
    path = tmp_path / "base.img"
    path.write_bytes(bytes(data))
    return path


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Skyimager" in result.stdout

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Work directory" in result.stdout
        assert "Release listing" in result.stdout

    def test_config_json(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["work_dir"] == str(tmp_path / "work")
        assert "github_token" not in data


class TestCLIReleases:
    """Test CLI releases command."""

    @respx.mock
    def test_releases_json(self) -> None:
        respx.get(SKYBIAN_RELEASES_URL).mock(
            return_value=httpx.Response(
                200,
                json=[
                    {
                        "tag_name": "v1.0.0",
                        "published_at": "2024-01-01T00:00:00Z",
                        "assets": [
                            {
                                "name": "Skybian-v1.0.0.tar.xz",
                                "browser_download_url": "https://dl.example.com/a.tar.xz",
                            }
                        ],
                    }
                ],
            )
        )

        result = runner.invoke(app, ["releases", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["latest"] == "v1.0.0"
        assert data["releases"][0]["image_url"] == "https://dl.example.com/a.tar.xz"

    @respx.mock
    def test_releases_empty_fails(self) -> None:
        respx.get(SKYBIAN_RELEASES_URL).mock(return_value=httpx.Response(200, json=[]))

        result = runner.invoke(app, ["releases", "--json"])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "empty_catalog"


class TestCLIParams:
    """Test CLI params command."""

    def test_params_json(self) -> None:
        result = runner.invoke(
            app,
            ["params", "--gateway", "10.0.0.1", "--visors", "3", "--seed", "s", "--json"],
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["seed"] == "s"
        assert len(data["params"]) == 4
        assert data["params"][-1]["index"] == "hypervisor"
        assert "local_sk" not in data["params"][0]

    def test_params_deterministic_with_seed(self) -> None:
        args = ["params", "--visors", "2", "--seed", "fixed", "--json"]
        first = json.loads(runner.invoke(app, args).stdout)
        second = json.loads(runner.invoke(app, args).stdout)
        assert first == second

    def test_params_random_seed(self) -> None:
        args = ["params", "--visors", "1", "--json"]
        first = json.loads(runner.invoke(app, args).stdout)
        second = json.loads(runner.invoke(app, args).stdout)
        assert first["seed"] != second["seed"]

    def test_params_from_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "build.yaml"
        path.write_text("gateway_ip: 172.16.0.1\nvisors: 1\nhypervisor: false\nseed: f\n")

        result = runner.invoke(app, ["params", "--config", str(path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [p["local_ip"] for p in data["params"]] == ["172.16.0.2"]

    def test_params_invalid(self) -> None:
        result = runner.invoke(app, ["params", "--visors", "-1", "--json"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "invalid_config"

    def test_params_table(self) -> None:
        result = runner.invoke(app, ["params", "--visors", "1", "--seed", "t"])
        assert result.exit_code == 0
        assert "skyhypervisor" in result.stdout


class TestCLIBuild:
    """Test CLI build command."""

    def test_build_local_image(self, tmp_path: Path, base_image: Path) -> None:
        work = tmp_path / "out"
        result = runner.invoke(
            app,
            [
                "build",
                "--work-dir",
                str(work),
                "--base-image",
                str(base_image),
                "--visors",
                "2",
                "--seed",
                "cli",
                "--json",
            ],
        )

        assert result.exit_code == 0, result.stdout
        data = json.loads(result.stdout)
        assert data["state"] == "completed"
        assert data["succeeded"] == 3
        assert data["run_id"] == 1
        assert (work / "images" / "hypervisor.img").exists()

        shown = runner.invoke(app, ["runs", "show", "1", "--json"])
        assert shown.exit_code == 0
        assert json.loads(shown.stdout)["state"] == "completed"

    def test_build_prints_flash_instructions(
        self, tmp_path: Path, base_image: Path
    ) -> None:
        result = runner.invoke(
            app,
            ["build", "-w", str(tmp_path / "out"), "-b", str(base_image), "-n", "1"],
        )

        assert result.exit_code == 0
        assert "Next steps" in result.stdout
        assert "dd if=" in result.stdout

    def test_build_failure_exits_nonzero(self, tmp_path: Path) -> None:
        result = runner.invoke(
            app,
            [
                "build",
                "-w",
                str(tmp_path / "out"),
                "-b",
                str(tmp_path / "missing.img"),
                "--json",
            ],
        )

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["state"] == "failed"
        assert data["error"]["code"] == "source_not_found"

    def test_build_from_config_file(self, tmp_path: Path, base_image: Path) -> None:
        work = tmp_path / "cfgwork"
        path = tmp_path / "build.json"
        dump_build_config(
            BuildConfig(
                work_dir=work,
                base_image=str(base_image),
                gateway_ip="10.0.0.1",
                visors=1,
                hypervisor=False,
                seed="file",
            ),
            path,
        )

        result = runner.invoke(app, ["build", "--config", str(path), "--json"])

        assert result.exit_code == 0, result.stdout
        assert json.loads(result.stdout)["seed"] == "file"
        assert (work / "images" / "0.img").exists()

    def test_clear_requires_confirmation(self, tmp_path: Path, base_image: Path) -> None:
        work = tmp_path / "out"
        (work / "old").mkdir(parents=True)

        result = runner.invoke(
            app,
            ["build", "-w", str(work), "-b", str(base_image), "--clear"],
            input="n\n",
        )

        assert result.exit_code == 0
        assert "Aborted" in result.stdout
        assert (work / "old").exists()

    def test_clear_with_yes(self, tmp_path: Path, base_image: Path) -> None:
        work = tmp_path / "out"
        (work / "old").mkdir(parents=True)

        result = runner.invoke(
            app,
            ["build", "-w", str(work), "-b", str(base_image), "-n", "0", "--clear", "--yes"],
        )

        assert result.exit_code == 0
        assert not (work / "old").exists()


class TestCLIClear:
    """Test CLI clear command."""

    def test_clear_with_yes(self, tmp_path: Path) -> None:
        work = tmp_path / "work"
        work.mkdir()
        (work / "file").write_text("x")

        result = runner.invoke(app, ["clear", str(work), "--yes"])

        assert result.exit_code == 0
        assert not work.exists()

    def test_clear_declined(self, tmp_path: Path) -> None:
        work = tmp_path / "work"
        work.mkdir()
        (work / "file").write_text("x")

        result = runner.invoke(app, ["clear", str(work)], input="n\n")

        assert result.exit_code == 0
        assert work.exists()

    def test_clear_nothing(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["clear", str(tmp_path / "missing")])
        assert result.exit_code == 0
        assert "Nothing to clear" in result.stdout


class TestCLIInspect:
    """Test CLI inspect command."""

    def test_inspect_json(self, tmp_path: Path, base_image: Path) -> None:
        params = generate(
            BuildConfig(work_dir=tmp_path, gateway_ip="10.0.0.1", visors=1, seed="i")
        )
        write_params(base_image, params[0])

        result = runner.invoke(app, ["inspect", str(base_image), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["hostname"] == "skyvisor-01"
        assert data["local_pk"] == params[0].local_pk
        assert "local_sk" not in data

    def test_inspect_blank_image(self, base_image: Path) -> None:
        result = runner.invoke(app, ["inspect", str(base_image), "--json"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "codec_error"


class TestCLIRuns:
    """Test CLI runs commands."""

    def test_runs_list_empty(self) -> None:
        result = runner.invoke(app, ["runs", "list", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_runs_list_invalid_state(self) -> None:
        result = runner.invoke(app, ["runs", "list", "--state", "bogus"])
        assert result.exit_code == 1

    def test_runs_show_missing(self) -> None:
        result = runner.invoke(app, ["runs", "show", "99"])
        assert result.exit_code == 1
        assert "Run not found" in result.stdout
