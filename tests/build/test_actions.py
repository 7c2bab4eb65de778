"""
Unit tests for the Setup.hs build actions.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from stackkit.build.actions import DEFAULT_SETUP_HS, SetupActions
from stackkit.build.types import (
    FinalAction,
    LocalPackage,
    LocalTask,
    Location,
    NeededSteps,
    Task,
    TaskConfigOpts,
    UpstreamTask,
)
from stackkit.core.exceptions import CabalExitedUnsuccessfully, TestSuiteFailure


def fake_run(returncode=0, output=b""):
    """A subprocess.run replacement that writes ``output`` to the log."""

    def run(cmd, cwd, stdout, stderr):
        stdout.write(output)
        return subprocess.CompletedProcess(cmd, returncode)

    return run


@pytest.fixture
def upstream_task(make_package, base_config_opts):
    package = make_package("text", "1.2.1.3")
    return Task(
        provides=package.identifier,
        kind=UpstreamTask(package, Location.SNAPSHOT),
        config_opts=TaskConfigOpts(
            frozenset(), frozenset(), base_config_opts, False, Location.SNAPSHOT
        ),
    )


@pytest.fixture
def local_task(make_package, base_config_opts, package_dir):
    package = make_package("mypkg")
    local = LocalPackage(package, True, package_dir, package_dir / "mypkg.cabal")
    return Task(
        provides=package.identifier,
        kind=LocalTask(local, NeededSteps.ALL),
        config_opts=TaskConfigOpts(
            frozenset(), frozenset(), base_config_opts, True, Location.LOCAL
        ),
    )


class TestSetupFile:
    """Tests for locating the Setup script."""

    def test_default_is_written(self, package_dir):
        setup = SetupActions(None).setup_file(package_dir)

        assert setup == package_dir / ".stack-work" / "Setup.hs"
        assert setup.read_text() == DEFAULT_SETUP_HS

    def test_package_setup_is_used(self, package_dir):
        (package_dir / "Setup.lhs").write_text("> main = defaultMain\n")

        assert SetupActions(None).setup_file(package_dir) == package_dir / "Setup.lhs"


class TestSteps:
    """Tests for running the Setup steps."""

    def test_configure_command_and_log(self, local_task, package_dir):
        actions = SetupActions(None, runhaskell="/opt/ghc/bin/runhaskell")

        with patch(
            "stackkit.build.actions.subprocess.run", side_effect=fake_run(output=b"ok\n")
        ) as run:
            actions.configure(local_task, package_dir, ["--user", "-ffast"])

        cmd = run.call_args[0][0]
        assert cmd == [
            "/opt/ghc/bin/runhaskell",
            str(package_dir / ".stack-work" / "Setup.hs"),
            "configure",
            "--user",
            "-ffast",
        ]
        assert run.call_args[1]["cwd"] == package_dir
        log = actions.log_file(local_task, package_dir, "configure")
        assert log == package_dir / ".stack-work" / "logs" / "mypkg-1.0-configure.log"
        assert log.read_bytes() == b"ok\n"

    def test_failure_carries_log(self, local_task, package_dir):
        actions = SetupActions(None)

        with patch(
            "stackkit.build.actions.subprocess.run",
            side_effect=fake_run(returncode=2, output=b"Lib.hs:3: parse error\n"),
        ):
            with pytest.raises(CabalExitedUnsuccessfully) as exc_info:
                actions.build(local_task, package_dir)

        error = exc_info.value
        assert error.exit_code == 2
        assert error.ident == local_task.provides
        assert error.arguments[1:] == ["build"]
        assert error.log_contents == b"Lib.hs:3: parse error\n"
        assert "parse error" in str(error)

    def test_install(self, local_task, package_dir):
        with patch("stackkit.build.actions.subprocess.run", side_effect=fake_run()) as run:
            SetupActions(None).install(local_task, package_dir)

        assert run.call_args[0][0][2] == "install"


class TestFinalAction:
    """Tests for tests, benchmarks and documentation."""

    def test_test_suite_failure(self, local_task, package_dir):
        with patch(
            "stackkit.build.actions.subprocess.run", side_effect=fake_run(returncode=1)
        ):
            with pytest.raises(TestSuiteFailure) as exc_info:
                SetupActions(None).final_action(local_task, package_dir, FinalAction.TESTS)

        assert exc_info.value.codes == {"test": 1}
        assert exc_info.value.log_file.name == "mypkg-1.0-test.log"

    @pytest.mark.parametrize(
        "action,step",
        [(FinalAction.BENCHMARKS, "bench"), (FinalAction.HADDOCK, "haddock")],
    )
    def test_steps(self, local_task, package_dir, action, step):
        with patch("stackkit.build.actions.subprocess.run", side_effect=fake_run()) as run:
            SetupActions(None).final_action(local_task, package_dir, action)

        assert run.call_args[0][0][2] == step

    def test_nothing(self, local_task, package_dir):
        with patch("stackkit.build.actions.subprocess.run") as run:
            SetupActions(None).final_action(local_task, package_dir, FinalAction.NOTHING)

        run.assert_not_called()


class TestUnpack:
    """Tests for obtaining upstream sources."""

    def test_delegates_to_fetcher(self, upstream_task, tmp_path):
        fetcher = MagicMock()
        fetcher.unpack.return_value = tmp_path / "text-1.2.1.3"

        assert SetupActions(fetcher).unpack(upstream_task) == tmp_path / "text-1.2.1.3"
        fetcher.unpack.assert_called_once_with(upstream_task.provides)

    def test_local_task(self, local_task):
        with pytest.raises(ValueError, match="not an upstream package"):
            SetupActions(MagicMock()).unpack(local_task)

    def test_without_fetcher(self, upstream_task):
        with pytest.raises(ValueError, match="No fetcher"):
            SetupActions(None).unpack(upstream_task)
