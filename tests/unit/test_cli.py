"""Tests for the click-based CLI."""

import logging
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from box_migrator.cli.commands import cli, handle_exception
from box_migrator.exceptions import (
    BoxAPIError,
    ConfigError,
    MigratorError,
    PermanentFault,
    RateLimited,
    WorkflowAbortedError,
)


@pytest.fixture(autouse=True)
def _clean_logger():
    """Detach handlers the commands attach to the box_migrator logger."""
    logger = logging.getLogger("box_migrator")
    before = list(logger.handlers)
    yield
    for handler in logger.handlers[:]:
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()


def _outcome(job_id=1, login="alice@example.edu", failures=0):
    outcome = MagicMock()
    outcome.job.job_id = job_id
    outcome.job.user_login = login
    outcome.report.item_failures = failures
    return outcome


class TestCLIGroup:
    """Tests for the CLI group structure."""

    def test_cli_has_all_subcommands(self):
        expected = {"seed", "run-next", "deprovision", "list-subfolders", "serve", "init-config"}
        assert set(cli.commands.keys()) == expected

    def test_version_flag(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "box-migrator" in result.output

    def test_help_output(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for name in ("seed", "run-next", "deprovision", "list-subfolders"):
            assert name in result.output

    def test_short_help_flag(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["-h"])
        assert result.exit_code == 0
        assert "run-next" in result.output


class TestInitConfigCommand:
    """Tests for the init-config subcommand."""

    def test_writes_file(self, tmp_path):
        target = tmp_path / "config.yaml"
        runner = CliRunner()
        result = runner.invoke(cli, ["init-config", "--output", str(target)])
        assert result.exit_code == 0
        assert target.exists()
        assert "box:" in target.read_text()

    def test_refuses_to_overwrite(self, tmp_path):
        target = tmp_path / "config.yaml"
        target.write_text("keep: me\n")
        runner = CliRunner()
        result = runner.invoke(cli, ["init-config", "--output", str(target)])
        assert result.exit_code == 1
        assert target.read_text() == "keep: me\n"


class TestSeedCommand:
    """Tests for the seed subcommand."""

    @patch("box_migrator.cli.jobs_cmd.seed_jobs")
    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_reports_count(self, mock_load, mock_seed):
        mock_seed.return_value = 3
        runner = CliRunner()
        result = runner.invoke(cli, ["seed", "--config", "c.yaml"])
        assert result.exit_code == 0
        assert "Seeded 3 job(s)." in result.output
        assert mock_load.call_args.kwargs["require_managed_user"] is False

    def test_missing_credentials_exit_with_code_1(self, tmp_path, monkeypatch):
        for name in ("BOX_CLIENT_ID", "BOX_CLIENT_SECRET", "BOX_ENTERPRISE_ID"):
            monkeypatch.delenv(name, raising=False)
        runner = CliRunner()
        result = runner.invoke(cli, ["seed", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1


class TestRunNextCommand:
    """Tests for the run-next subcommand."""

    @patch("box_migrator.cli.jobs_cmd.run_next_job")
    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_runs_one_job(self, mock_load, mock_run):
        mock_run.side_effect = [_outcome(7), _outcome(8)]
        runner = CliRunner()
        result = runner.invoke(cli, ["run-next"])
        assert result.exit_code == 0
        assert "Job 7 (alice@example.edu) finished: 0 item failure(s)." in result.output
        assert mock_run.call_count == 1
        mock_load.return_value.store.close.assert_called_once()

    @patch("box_migrator.cli.jobs_cmd.run_next_job")
    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_empty_queue(self, mock_load, mock_run):
        mock_run.return_value = None
        runner = CliRunner()
        result = runner.invoke(cli, ["run-next"])
        assert result.exit_code == 0
        assert "No unfinished jobs." in result.output

    @patch("box_migrator.cli.jobs_cmd.handle_exception")
    @patch("box_migrator.cli.jobs_cmd.run_next_job")
    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_all_continues_past_failures(self, mock_load, mock_run, mock_handle):
        error = WorkflowAbortedError("boom", phase="bootstrap")
        mock_run.side_effect = [error, _outcome(2), None]
        runner = CliRunner()
        result = runner.invoke(cli, ["run-next", "--all"])
        assert result.exit_code == 1
        assert mock_run.call_count == 3
        mock_handle.assert_called_once_with(error)
        assert "Job 2" in result.output

    @patch("box_migrator.cli.jobs_cmd.run_next_job")
    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_max_jobs(self, mock_load, mock_run):
        mock_run.side_effect = [_outcome(1), _outcome(2), _outcome(3)]
        runner = CliRunner()
        result = runner.invoke(cli, ["run-next", "--all", "--max_jobs", "2"])
        assert result.exit_code == 0
        assert mock_run.call_count == 2

    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_all_moves_past_an_aborted_job(
        self, mock_load, make_context, memory_store, builders
    ):
        memory_store.add_job(builders.job(1, user_login="ghost@example.edu"))
        memory_store.add_job(builders.job(2))
        context = make_context()
        mock_load.return_value = context

        runner = CliRunner()
        result = runner.invoke(cli, ["run-next", "--all", "--max_jobs", "5"])

        assert result.exit_code == 1
        assert "Job 2 (alice@example.edu) finished" in result.output
        assert memory_store.fetch_job(2).is_finished
        assert not memory_store.fetch_job(1).is_finished
        aborts = [m for m in context.notifier.sent if "aborted" in m.subject]
        assert len(aborts) == 1

    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_all_runs_each_job_once_without_retry_delay(
        self, mock_load, make_config, make_context, memory_store, builders
    ):
        config = make_config()
        config.job_store.retry_delay_seconds = 0
        memory_store.add_job(builders.job(1, user_login="ghost@example.edu"))
        memory_store.add_job(builders.job(2))
        context = make_context(config)
        mock_load.return_value = context

        runner = CliRunner()
        result = runner.invoke(cli, ["run-next", "--all", "--max_jobs", "5"])

        assert result.exit_code == 1
        assert memory_store.fetch_job(2).is_finished
        assert len(context.notifier.sent) == 1

    @patch("box_migrator.cli.jobs_cmd.handle_exception")
    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_config_error_exits_with_code_1(self, mock_load, mock_handle):
        mock_load.side_effect = ConfigError("box.client_id is required")
        runner = CliRunner()
        result = runner.invoke(cli, ["run-next"])
        assert result.exit_code == 1
        mock_handle.assert_called_once_with(mock_load.side_effect)


class TestDeprovisionCommand:
    """Tests for the deprovision subcommand."""

    def test_login_is_required(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["deprovision", "--yes"])
        assert result.exit_code != 0
        assert "Missing option" in result.output

    @patch("box_migrator.cli.deprovision_cmd.load_cli_context")
    def test_declining_confirmation_cancels(self, mock_load):
        runner = CliRunner()
        result = runner.invoke(cli, ["deprovision", "--login", "a@example.edu"], input="n\n")
        assert result.exit_code == 0
        assert "Deprovision cancelled." in result.output
        mock_load.assert_not_called()

    @patch("box_migrator.cli.deprovision_cmd.run_deprovision")
    @patch("box_migrator.cli.deprovision_cmd.load_cli_context")
    def test_runs_each_login(self, mock_load, mock_run):
        report = MagicMock(rounds=2, failures=[])
        report.reached.name = "NOTIFIED"
        mock_run.return_value = report
        runner = CliRunner()
        result = runner.invoke(
            cli,
            ["deprovision", "--login", "a@example.edu", "--login", "b@example.edu"],
            input="y\n",
        )
        assert result.exit_code == 0
        assert mock_run.call_count == 2
        assert "b@example.edu: reached NOTIFIED after 2 drain round(s)" in result.output

    @patch("box_migrator.cli.deprovision_cmd.handle_exception")
    @patch("box_migrator.cli.deprovision_cmd.run_deprovision")
    @patch("box_migrator.cli.deprovision_cmd.load_cli_context")
    def test_failed_login_exits_with_code_1(self, mock_load, mock_run, mock_handle):
        mock_run.side_effect = WorkflowAbortedError("no account", phase="resolve")
        runner = CliRunner()
        result = runner.invoke(cli, ["deprovision", "-y", "--login", "a@example.edu"])
        assert result.exit_code == 1
        assert "Deprovision failed for: a@example.edu" in result.output
        mock_load.return_value.store.close.assert_called_once()


class TestListSubfoldersCommand:
    """Tests for the list-subfolders subcommand."""

    @patch("box_migrator.cli.folders_cmd.list_owned_subfolders")
    @patch("box_migrator.cli.folders_cmd.load_cli_context")
    def test_prints_folders(self, mock_load, mock_list):
        folder = MagicMock(id="301")
        folder.name = "Alpha"
        mock_list.return_value = [folder]
        runner = CliRunner()
        result = runner.invoke(cli, ["list-subfolders", "--user_id", "1001"])
        assert result.exit_code == 0
        assert "301\tAlpha" in result.output
        assert mock_list.call_args.args[2] == "0"


class TestDefaultCommand:
    """Tests that flags without a subcommand route to run-next."""

    @patch("box_migrator.cli.jobs_cmd.run_next_job")
    @patch("box_migrator.cli.jobs_cmd.load_cli_context")
    def test_flags_without_subcommand_route_to_run_next(self, mock_load, mock_run):
        mock_run.return_value = None
        runner = CliRunner()
        result = runner.invoke(cli, ["--config", "scheduled.yaml"])
        assert result.exit_code == 0
        assert "No unfinished jobs." in result.output
        assert mock_load.call_args.args[0] == "scheduled.yaml"


class TestHandleException:
    """Tests for handle_exception()."""

    @patch("box_migrator.cli.common.log_with_context")
    def test_handles_migrator_error(self, mock_log):
        handle_exception(MigratorError("test error"))
        mock_log.assert_called_once_with(logging.ERROR, "test error")

    @patch("box_migrator.cli.common.log_with_context")
    def test_handles_config_error(self, mock_log):
        handle_exception(ConfigError("bad config"))
        mock_log.assert_called_once_with(logging.ERROR, "bad config")

    @patch("box_migrator.cli.common.log_with_context")
    def test_handles_workflow_aborted_error(self, mock_log):
        cause = PermanentFault("denied", status_code=403)
        handle_exception(WorkflowAbortedError("aborted", phase="cleanup", cause=cause))
        mock_log.assert_any_call(logging.ERROR, "aborted", phase="cleanup")
        assert mock_log.call_count == 2

    @patch("box_migrator.cli.common.log_with_context")
    def test_abort_after_rate_limiting_gives_guidance(self, mock_log):
        cause = RateLimited("slow down", status_code=429)
        handle_exception(WorkflowAbortedError("aborted", phase="bootstrap", cause=cause))
        messages = [c.args[1] for c in mock_log.call_args_list]
        assert any(m.startswith("Rate limit exceeded") for m in messages)

    @patch("box_migrator.cli.common.log_with_context")
    def test_handles_unauthorized_box_error(self, mock_log):
        handle_exception(BoxAPIError(401, body="invalid_client"))
        first = mock_log.call_args_list[0]
        assert first.args[0] == logging.ERROR
        assert first.args[1].startswith("Box denied the request")
        assert mock_log.call_count == 5

    @patch("box_migrator.cli.common.log_with_context")
    def test_handles_file_not_found(self, mock_log):
        handle_exception(FileNotFoundError("missing.yaml"))
        assert mock_log.call_count == 2
        assert "missing.yaml" in str(mock_log.call_args_list[0])

    @patch("box_migrator.cli.common.log_with_context")
    def test_handles_generic_exception(self, mock_log):
        handle_exception(RuntimeError("unexpected"))
        mock_log.assert_called_once_with(
            logging.ERROR, "Run failed: unexpected", exc_info=True
        )
