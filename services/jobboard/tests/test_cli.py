from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest
from jobboard.cli import build_parser, main
from jobboard.models import NormalizedJob
from jobboard.providers import FetchParams

pytestmark = pytest.mark.unit


class RecordingProvider:
    def __init__(self, source: str, *, fail: bool = False) -> None:
        self.source = source
        self.fail = fail
        self.params: list[FetchParams] = []

    def has_credentials(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return True

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        self.params.append(params)
        if self.fail:
            raise RuntimeError("timeout")
        return [NormalizedJob(source=self.source, source_job_id=f"{self.source}-1")]


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_aggregate_command_prints_run_summary(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    provider = RecordingProvider("REMOTEOK")
    database = str(tmp_path / "cli.sqlite3")

    code = main(
        [
            "--database",
            database,
            "aggregate",
            "--source",
            "remoteok",
            "--keywords",
            "rust",
            "--pages",
            "2",
        ],
        providers=[provider, RecordingProvider("ARBEITNOW")],
    )

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["trigger"] == "cli"
    assert output["requested_sources"] == 1
    assert output["total_inserted"] == 1
    assert provider.params[0].keywords == "rust"
    assert provider.params[0].pages == 2


def test_aggregate_command_exits_non_zero_when_a_provider_fails(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    code = main(
        ["--database", str(tmp_path / "cli.sqlite3"), "aggregate"],
        providers=[RecordingProvider("ARBEITNOW", fail=True)],
    )

    assert code == 1
    assert json.loads(capsys.readouterr().out)["failed_sources"] == 1


def test_aggregate_command_rejects_unknown_source(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(
            ["--database", str(tmp_path / "cli.sqlite3"), "aggregate", "--source", "monster"],
            providers=[RecordingProvider("REMOTEOK")],
        )

    assert excinfo.value.code == 2


def test_cleanup_and_stats_commands(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    database = str(tmp_path / "cli.sqlite3")
    main(["--database", database, "aggregate"], providers=[RecordingProvider("REMOTEOK")])
    capsys.readouterr()

    assert main(["--database", database, "cleanup", "--retention-days", "30"]) == 0
    cleanup = json.loads(capsys.readouterr().out)
    assert cleanup["trigger"] == "cli"
    assert cleanup["retention_days"] == 30
    assert cleanup["deactivated"] == 0

    assert main(["--database", database, "stats"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["jobs"]["total_jobs"] == 1
    assert stats["cleanup"]["active_jobs"] == 1


def test_cli_import_does_not_build_the_web_app() -> None:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(sys.path)
    env["JOBBOARD_API_TOKENS_JSON"] = "not json"

    result = subprocess.run(
        [
            sys.executable,
            "-c",
            "import sys, jobboard.cli; sys.exit('jobboard.main' in sys.modules)",
        ],
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr


def test_stats_command_ignores_malformed_token_config(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("JOBBOARD_API_TOKENS_JSON", "not json")

    assert main(["--database", str(tmp_path / "cli.sqlite3"), "stats"]) == 0
    assert json.loads(capsys.readouterr().out)["jobs"]["total_jobs"] == 0
