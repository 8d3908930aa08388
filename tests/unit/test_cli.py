"""
Unit tests for CLI module

Tests for the command-line interface functionality including
argument parsing, credential handling, and command execution.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from table_mirror.cli import (
    cmd_report,
    cmd_run,
    cmd_schedule,
    cmd_validate,
    create_parser,
    get_connection_configs,
    main,
)
from table_mirror.engine import RunResult, RunState
from table_mirror.errors import ConfigurationError

DESCRIPTOR = [
    {
        "sourceDatabase": "Sales",
        "tablesForChanges": [
            {"sourceSchema": "dbo", "sourceTable": "Customer", "primaryKey": ["Id"],
             "targetSchema": "bronze", "targetTable": "Customer"},
            {"sourceSchema": "dbo", "sourceTable": "Orders", "primaryKey": ["Id"],
             "targetSchema": "bronze", "targetTable": "Orders", "strategy": "point"},
        ],
    }
]

CONNECTION_ARGS = [
    "--source-host", "src.example", "--source-database", "Sales",
    "--source-user", "reader", "--source-password", "s3cret",
    "--target-host", "tgt.example", "--target-database", "Sales",
    "--target-user", "writer", "--target-password", "s3cret",
]


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "table-update.json"
    path.write_text(json.dumps(DESCRIPTOR))
    return str(path)


def _parse(*argv):
    return create_parser().parse_args(list(argv))


def _result(name, success=True):
    result = RunResult(mapping=name, state=RunState.DONE, success=success, inserted=1)
    if not success:
        result.fail(ConfigurationError("bad mapping"))
    return result


# ============================================================================
# Parser
# ============================================================================

class TestParser:
    """Tests for argument parsing"""

    def test_run_defaults(self, config_file):
        args = _parse("run", "--config", config_file)

        assert args.command == "run"
        assert args.format == "console"
        assert args.parallel is False
        assert args.parallel_workers == 4
        assert args.chunk_size is None
        assert args.no_cleanup is False
        assert args.log_level == "INFO"

    def test_global_logging_options(self, config_file):
        args = _parse("--log-level", "DEBUG", "--log-json", "--log-file", "m.log",
                      "validate", "--config", config_file)
        assert args.log_level == "DEBUG"
        assert args.log_json is True
        assert args.log_file == "m.log"

    def test_schedule_requires_trigger(self, config_file):
        with pytest.raises(SystemExit):
            _parse("schedule", "--config", config_file)

    def test_schedule_trigger_is_exclusive(self, config_file):
        with pytest.raises(SystemExit):
            _parse("schedule", "--config", config_file, "--cron", "0 * * * *", "--interval", "60")

    def test_run_requires_config(self):
        with pytest.raises(SystemExit):
            _parse("run")


# ============================================================================
# Credentials
# ============================================================================

class TestConnectionConfigs:
    """Tests for get_connection_configs"""

    def test_from_args(self, config_file):
        source, target = get_connection_configs(_parse("run", "--config", config_file, *CONNECTION_ARGS))

        assert source == {
            "db_type": "sqlserver", "host": "src.example", "port": 1433,
            "database": "Sales", "user": "reader", "password": "s3cret",
        }
        assert target["host"] == "tgt.example"
        assert target["db_type"] == "sqlserver"

    def test_role_env_then_driver_env(self, config_file, monkeypatch):
        monkeypatch.setenv("SOURCE_DB_TYPE", "postgresql")
        monkeypatch.setenv("SOURCE_DB_HOST", "pg.example")
        monkeypatch.setenv("POSTGRES_DB", "warehouse")
        monkeypatch.setenv("POSTGRES_USER", "postgres")
        monkeypatch.setenv("POSTGRES_PASSWORD", "pw")
        monkeypatch.setenv("TARGET_DB_HOST", "mssql.example")
        monkeypatch.setenv("TARGET_DB_DRIVER", "ODBC Driver 17 for SQL Server")
        monkeypatch.setenv("SQLSERVER_DATABASE", "Mirror")
        monkeypatch.setenv("SQLSERVER_USER", "sa")
        monkeypatch.setenv("SQLSERVER_PASSWORD", "pw")

        source, target = get_connection_configs(_parse("run", "--config", config_file))

        assert source["db_type"] == "postgresql"
        assert source["host"] == "pg.example"
        assert source["port"] == 5432
        assert source["database"] == "warehouse"
        assert target["host"] == "mssql.example"
        assert target["driver"] == "ODBC Driver 17 for SQL Server"

    def test_args_override_env(self, config_file, monkeypatch):
        monkeypatch.setenv("SOURCE_DB_HOST", "env.example")
        source, _ = get_connection_configs(_parse("run", "--config", config_file, *CONNECTION_ARGS))
        assert source["host"] == "src.example"

    def test_missing_password(self, config_file):
        args = _parse("run", "--config", config_file, *CONNECTION_ARGS[:-2])
        with pytest.raises(ConfigurationError, match="target connection settings: password"):
            get_connection_configs(args)

    def test_invalid_port(self, config_file, monkeypatch):
        monkeypatch.setenv("SOURCE_DB_PORT", "abc")
        with pytest.raises(ConfigurationError, match="port"):
            get_connection_configs(_parse("run", "--config", config_file, *CONNECTION_ARGS))

    @patch("table_mirror.cli.credentials.VaultClient")
    def test_from_vault(self, mock_vault_class, config_file):
        vault = mock_vault_class.return_value
        vault.get_connection_config.side_effect = lambda role: {
            "db_type": "sqlserver", "host": f"{role}.example", "port": 1433,
            "database": "Sales", "user": role, "password": "pw",
        }

        source, target = get_connection_configs(_parse("run", "--config", config_file, "--use-vault"))

        assert source["host"] == "source.example"
        assert target["user"] == "target"

    @patch("table_mirror.cli.credentials.VaultClient")
    def test_vault_failure(self, mock_vault_class, config_file):
        mock_vault_class.side_effect = ValueError("Vault token not provided")
        with pytest.raises(ConfigurationError, match="Vault"):
            get_connection_configs(_parse("run", "--config", config_file, "--use-vault"))

    @patch("table_mirror.cli.credentials.VaultClient")
    def test_vault_target_must_be_sql_server(self, mock_vault_class, config_file):
        mock_vault_class.return_value.get_connection_config.return_value = {
            "db_type": "postgresql", "host": "h", "port": 5432,
            "database": "d", "user": "u", "password": "p",
        }
        with pytest.raises(ConfigurationError, match="SQL Server"):
            get_connection_configs(_parse("run", "--config", config_file, "--use-vault"))


# ============================================================================
# Commands
# ============================================================================

@pytest.fixture
def run_env():
    """Patch out pools, tracing, signals and the service for cmd_run / cmd_schedule."""
    with patch("table_mirror.cli.commands.db_pool") as pools, \
            patch("table_mirror.cli.commands.initialize_tracing"), \
            patch("table_mirror.cli.commands.shutdown_tracing"), \
            patch("table_mirror.cli.commands.signal"), \
            patch("table_mirror.cli.commands.MirrorService") as service_class:
        yield pools, service_class


class TestCmdRun:
    """Tests for cmd_run"""

    def test_success(self, config_file, run_env, capsys):
        pools, service_class = run_env
        service_class.return_value.run_all.return_value = [
            _result("bronze.Customer"), _result("bronze.Orders"),
        ]

        code = cmd_run(_parse("run", "--config", config_file, *CONNECTION_ARGS))

        assert code == 0
        pools.initialize_pools.assert_called_once()
        pools.close_pools.assert_called_once()
        mappings = service_class.return_value.run_all.call_args[0][0]
        assert [m.label for m in mappings] == ["bronze.Customer", "bronze.Orders"]
        assert "Status: PASS" in capsys.readouterr().out

    def test_options_reach_service(self, config_file, run_env):
        _, service_class = run_env
        service_class.return_value.run_all.return_value = []

        cmd_run(_parse("run", "--config", config_file, "--tables", "orders",
                       "--chunk-size", "50", "--page-size", "1000", "--no-cleanup",
                       "--parallel", "--parallel-workers", "3", "--fail-fast",
                       *CONNECTION_ARGS))

        kwargs = service_class.call_args.kwargs
        assert kwargs["max_workers"] == 3
        assert kwargs["fail_fast"] is True
        assert kwargs["settings"].chunk_size == 50
        assert kwargs["settings"].page_size == 1000
        assert kwargs["settings"].cleanup is False
        mappings = service_class.return_value.run_all.call_args[0][0]
        assert [m.target_table for m in mappings] == ["Orders"]

    def test_failed_run_exits_non_zero(self, config_file, run_env):
        _, service_class = run_env
        service_class.return_value.run_all.return_value = [
            _result("bronze.Customer"), _result("bronze.Orders", success=False),
        ]

        assert cmd_run(_parse("run", "--config", config_file, *CONNECTION_ARGS)) == 1

    def test_json_output(self, config_file, run_env, tmp_path):
        _, service_class = run_env
        service_class.return_value.run_all.return_value = [_result("bronze.Customer")]
        output = tmp_path / "out" / "report.json"

        cmd_run(_parse("run", "--config", config_file, "--output", str(output),
                       "--format", "json", *CONNECTION_ARGS))

        assert json.loads(output.read_text())["status"] == "PASS"

    def test_bad_config_fails_before_connecting(self, tmp_path, run_env):
        pools, _ = run_env
        bad = tmp_path / "bad.json"
        bad.write_text("[{}]")

        assert cmd_run(_parse("run", "--config", str(bad), *CONNECTION_ARGS)) == 1
        pools.initialize_pools.assert_not_called()

    def test_unknown_table(self, config_file, run_env):
        assert cmd_run(_parse("run", "--config", config_file, "--tables", "nope",
                              *CONNECTION_ARGS)) == 1

    def test_missing_credentials(self, config_file, run_env):
        assert cmd_run(_parse("run", "--config", config_file)) == 1


class TestCmdSchedule:
    """Tests for cmd_schedule"""

    @patch("table_mirror.cli.commands.MirrorScheduler")
    def test_cron(self, mock_scheduler_class, config_file, run_env, tmp_path):
        scheduler = mock_scheduler_class.return_value
        output_dir = tmp_path / "reports"

        code = cmd_schedule(_parse("schedule", "--config", config_file, "--cron", "0 */6 * * *",
                                   "--output-dir", str(output_dir), *CONNECTION_ARGS))

        assert code == 0
        args, kwargs = scheduler.add_cron_job.call_args
        assert args[1:] == ("0 */6 * * *", "mirror_job")
        assert kwargs["output_dir"] == str(output_dir)
        assert len(kwargs["mappings"]) == 2
        scheduler.start.assert_called_once()
        assert output_dir.is_dir()

    @patch("table_mirror.cli.commands.MirrorScheduler")
    def test_interval(self, mock_scheduler_class, config_file, run_env, tmp_path):
        scheduler = mock_scheduler_class.return_value

        cmd_schedule(_parse("schedule", "--config", config_file, "--interval", "3600",
                            "--output-dir", str(tmp_path), *CONNECTION_ARGS))

        assert scheduler.add_interval_job.call_args[0][1:] == (3600, "mirror_job")

    @patch("table_mirror.cli.commands.MirrorScheduler")
    def test_invalid_cron(self, mock_scheduler_class, config_file, run_env, tmp_path):
        mock_scheduler_class.return_value.add_cron_job.side_effect = ValueError("bad cron")

        code = cmd_schedule(_parse("schedule", "--config", config_file, "--cron", "x",
                                   "--output-dir", str(tmp_path), *CONNECTION_ARGS))

        assert code == 1
        mock_scheduler_class.return_value.start.assert_not_called()


class TestCmdReport:
    """Tests for cmd_report"""

    @pytest.fixture
    def saved_report(self, tmp_path):
        path = tmp_path / "mirror.json"
        path.write_text(json.dumps([_result("bronze.Customer").to_dict()]))
        return str(path)

    def test_console(self, saved_report, capsys):
        assert cmd_report(_parse("report", "--input", saved_report)) == 0
        assert "bronze.Customer" in capsys.readouterr().out

    def test_csv(self, saved_report, tmp_path):
        output = tmp_path / "report.csv"
        assert cmd_report(_parse("report", "--input", saved_report,
                                 "--format", "csv", "--output", str(output))) == 0
        assert output.read_text().startswith("mapping,")

    def test_csv_requires_output(self, saved_report):
        assert cmd_report(_parse("report", "--input", saved_report, "--format", "csv")) == 1

    def test_missing_input(self, tmp_path):
        assert cmd_report(_parse("report", "--input", str(tmp_path / "none.json"))) == 1


class TestCmdValidate:
    """Tests for cmd_validate"""

    def test_valid(self, config_file, capsys):
        assert cmd_validate(_parse("validate", "--config", config_file)) == 0
        out = capsys.readouterr().out
        assert "dbo.Customer -> bronze.Customer [Sales -> Sales]" in out
        assert "strategy=point" in out
        assert "2 mapping(s) OK" in out

    def test_invalid(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- sourceSchema: dbo\n")
        assert cmd_validate(_parse("validate", "--config", str(path))) == 1


# ============================================================================
# main
# ============================================================================

class TestMain:
    """Tests for main dispatch"""

    @patch("table_mirror.cli.setup_logging")
    @patch("table_mirror.cli.cmd_validate", return_value=0)
    def test_dispatch_and_exit_code(self, mock_validate, mock_setup_logging, config_file):
        with patch.dict("table_mirror.cli.COMMANDS", {"validate": mock_validate}):
            with pytest.raises(SystemExit) as exc_info:
                main(["--log-level", "DEBUG", "validate", "--config", config_file])

        assert exc_info.value.code == 0
        mock_setup_logging.assert_called_once_with(level="DEBUG", log_file=None, json_format=False)

    @patch("table_mirror.cli.setup_logging")
    def test_no_command_prints_help(self, mock_setup_logging, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 1
        assert "usage: table-mirror" in capsys.readouterr().out
