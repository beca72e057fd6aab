"""End-to-end tests of the operator CLI.

Commands run through the real root app with a CliRunner. Configuration and
the disk cache live in an isolated XDG tree, and the transport is replaced
with an in-process fake so no provider CLI is spawned.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from cliaccel import __version__
from cliaccel.app import app
from cliaccel.config import load_engine_config
from cliaccel.exceptions import RemoteError
from cliaccel.models import Request
from cliaccel.transport import FunctionTransport


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_request(path: Path, data: Any) -> str:
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def _fake_remote(request: Request) -> Any:
    if request.target.operation == "list-users":
        raise RemoteError("not authorized", code="AccessDenied")
    if request.target.operation == "describe-instances":
        token = request.parameters.get("NextToken")
        page = int(token) if token else 0
        body: dict[str, Any] = {"Reservations": [{"Id": f"r-{page}-{i}"} for i in range(2)]}
        if page < 2:
            body["NextToken"] = str(page + 1)
        return body
    return {"target": str(request.target), "parameters": request.parameters}


@pytest.fixture
def remote(isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> list[Request]:
    """Route every engine built by the CLI to :func:`_fake_remote`; returns the call log."""
    calls: list[Request] = []

    def handler(request: Request) -> Any:
        calls.append(request)
        return _fake_remote(request)

    monkeypatch.setattr("cliaccel.transport.build_transport", lambda config: FunctionTransport(handler))
    return calls


# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------


class TestRootApp:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self, cli_runner) -> None:
        result = cli_runner.invoke(app, [])
        assert "exec" in result.output
        assert "paginate" in result.output


# ---------------------------------------------------------------------------
# exec
# ---------------------------------------------------------------------------


class TestExec:
    def test_single_request(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "ec2:describe-regions"})
        result = cli_runner.invoke(app, ["--json", "--quiet", "exec", path])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"target": "ec2:describe-regions", "parameters": {}}

    def test_disk_cache_survives_between_runs(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "ec2:describe-regions"})
        cli_runner.invoke(app, ["--json", "--quiet", "exec", path])
        cli_runner.invoke(app, ["--json", "--quiet", "exec", path])
        assert len(remote) == 1

    def test_no_cache_flag(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "ec2:describe-regions"})
        cli_runner.invoke(app, ["--quiet", "exec", path, "--no-cache"])
        cli_runner.invoke(app, ["--quiet", "exec", path, "--no-cache"])
        assert len(remote) == 2

    def test_batch_records_in_input_order(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(
            isolated_config / "batch.json",
            [
                {"target": "ec2:describe-vpcs", "parameters": {"n": 1}},
                {"target": "s3:list-buckets"},
                {"target": "ec2:describe-vpcs", "parameters": {"n": 2}},
            ],
        )
        result = cli_runner.invoke(app, ["--json", "--quiet", "exec", path, "-c", "2"])
        assert result.exit_code == 0, result.output
        records = json.loads(result.stdout)
        assert [r["target"] for r in records] == ["ec2:describe-vpcs", "s3:list-buckets", "ec2:describe-vpcs"]
        assert records[2]["value"]["parameters"] == {"n": 2}
        assert all(r["ok"] for r in records)

    def test_failed_request_exit_code(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "iam:list-users"})
        result = cli_runner.invoke(app, ["exec", path])
        assert result.exit_code == 5
        assert "AccessDenied" in result.output

    def test_batch_with_failure(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(
            isolated_config / "batch.json",
            [{"target": "ec2:describe-vpcs"}, {"target": "iam:list-users"}],
        )
        result = cli_runner.invoke(app, ["--plain", "exec", path])
        assert result.exit_code == 5
        assert "1 of 2 requests failed" in result.output

    def test_missing_file(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["exec", str(isolated_config / "missing.json")])
        assert result.exit_code == 2
        assert "Cannot read request file" in result.output

    def test_invalid_request(self, cli_runner, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "no-separator"})
        result = cli_runner.invoke(app, ["exec", path])
        assert result.exit_code == 2

    def test_invalid_config(self, cli_runner, isolated_config: Path) -> None:
        (isolated_config / "cliaccel.json").write_text('{"concurrency": {"max_limit": 0}}')
        path = _write_request(isolated_config / "req.json", {"target": "ec2:describe-regions"})
        result = cli_runner.invoke(app, ["exec", path])
        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# paginate
# ---------------------------------------------------------------------------


class TestPaginate:
    def test_prints_json_lines(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "ec2:describe-instances"})
        result = cli_runner.invoke(app, ["--quiet", "paginate", path, "--items-key", "Reservations"])
        assert result.exit_code == 0, result.output
        items = [json.loads(line) for line in result.stdout.splitlines()]
        assert [item["Id"] for item in items] == ["r-0-0", "r-0-1", "r-1-0", "r-1-1", "r-2-0", "r-2-1"]

    def test_limit(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "ec2:describe-instances"})
        result = cli_runner.invoke(app, ["--quiet", "paginate", path, "-k", "Reservations", "--limit", "3"])
        assert result.exit_code == 0, result.output
        assert len(result.stdout.splitlines()) == 3

    def test_rejects_batch_file(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", [{"target": "ec2:describe-instances"}])
        result = cli_runner.invoke(app, ["paginate", path, "-k", "Reservations"])
        assert result.exit_code == 2

    def test_items_key_not_a_list(self, cli_runner, remote, isolated_config: Path) -> None:
        path = _write_request(isolated_config / "req.json", {"target": "ec2:describe-regions"})
        result = cli_runner.invoke(app, ["paginate", path, "-k", "target"])
        assert result.exit_code == 5
        assert "MalformedPage" in result.output


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


class TestConfigCommands:
    def test_show(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["--json", "--quiet", "config", "show"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["concurrency"]["max_limit"] == 32

    def test_show_effective_applies_env(self, cli_runner, isolated_config: Path, monkeypatch) -> None:
        monkeypatch.setenv("CLIACCEL_MAX_CONCURRENCY", "7")
        result = cli_runner.invoke(app, ["--json", "--quiet", "config", "show", "--effective"])
        assert json.loads(result.stdout)["concurrency"]["max_limit"] == 7

    def test_set_int(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "concurrency.max_limit", "16"])
        assert result.exit_code == 0, result.output
        assert load_engine_config().concurrency.max_limit == 16

    def test_set_rules_table(self, cli_runner, isolated_config: Path) -> None:
        rules = '{"ec2:describe-*": 30, "*": 300}'
        result = cli_runner.invoke(app, ["config", "set", "cache.ttl.rules", rules])
        assert result.exit_code == 0, result.output
        assert load_engine_config().cache.ttl.rules == {"ec2:describe-*": 30.0, "*": 300.0}

    def test_set_unknown_key(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "concurrency.nope", "1"])
        assert result.exit_code == 2

    def test_set_invalid_value(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "concurrency.max_limit", "0"])
        assert result.exit_code == 2
        assert load_engine_config().concurrency.max_limit == 32

    def test_reset(self, cli_runner, isolated_config: Path) -> None:
        cli_runner.invoke(app, ["config", "set", "dedup.window", "0.5"])
        result = cli_runner.invoke(app, ["config", "reset", "--force"])
        assert result.exit_code == 0
        assert load_engine_config().dedup.window == 0.0


# ---------------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------------


class TestCacheCommands:
    def _populate(self, cli_runner, isolated_config: Path) -> None:
        batch = [
            {"target": "ec2:describe-regions"},
            {"target": "ec2:describe-vpcs"},
            {"target": "s3:list-buckets"},
        ]
        path = _write_request(isolated_config / "batch.json", batch)
        result = cli_runner.invoke(app, ["--quiet", "exec", path])
        assert result.exit_code == 0, result.output

    def test_stats(self, cli_runner, remote, isolated_config: Path) -> None:
        self._populate(cli_runner, isolated_config)
        result = cli_runner.invoke(app, ["--json", "--quiet", "cache", "stats"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == [{"Tier": "disk", "Entries": "3", "Evictions": "0"}]

    def test_stats_help_describes_columns(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["cache", "stats", "--help"])
        assert result.exit_code == 0
        assert "entry and eviction counts" in result.output
        assert "byte" not in result.output

    def test_invalidate(self, cli_runner, remote, isolated_config: Path) -> None:
        self._populate(cli_runner, isolated_config)
        result = cli_runner.invoke(app, ["cache", "invalidate", "ec2:*"])
        assert result.exit_code == 0, result.output
        assert "Removed 2 cached responses" in result.output

    def test_clear(self, cli_runner, remote, isolated_config: Path) -> None:
        self._populate(cli_runner, isolated_config)
        result = cli_runner.invoke(app, ["cache", "clear", "--force"])
        assert result.exit_code == 0, result.output
        stats = cli_runner.invoke(app, ["--json", "--quiet", "cache", "stats"])
        assert json.loads(stats.stdout)[0]["Entries"] == "0"

    def test_clear_declined(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["cache", "clear"], input="n\n")
        assert result.exit_code == 0
        assert "Cancelled" in result.output

    def test_no_disk_tier(self, cli_runner, isolated_config: Path) -> None:
        (isolated_config / "cliaccel.json").write_text(
            json.dumps({"cache": {"tiers": [{"kind": "memory", "max_entries": 10}]}})
        )
        result = cli_runner.invoke(app, ["cache", "stats"])
        assert result.exit_code == 3
