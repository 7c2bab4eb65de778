"""
The steps that build one package.

``BuildActions`` is what the executor calls for each task; ``SetupActions``
implements it by running the package's ``Setup.hs`` through ``runhaskell``,
writing the output of every step to a log file under the package's work
directory.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from stackkit.build.cache import WORK_DIR
from stackkit.build.fetch import PackageFetcher
from stackkit.build.types import FinalAction, Task, UpstreamTask
from stackkit.core.exceptions import CabalExitedUnsuccessfully, TestSuiteFailure

logger = logging.getLogger(__name__)

DEFAULT_SETUP_HS = "import Distribution.Simple\nmain = defaultMain\n"

_FINAL_ACTION_STEPS = {
    FinalAction.TESTS: "test",
    FinalAction.BENCHMARKS: "bench",
    FinalAction.HADDOCK: "haddock",
}


class BuildActions(ABC):
    """Build steps of a single package."""

    @abstractmethod
    def unpack(self, task: Task) -> Path:
        """Make the source of an upstream task available; return its directory."""

    @abstractmethod
    def configure(self, task: Task, directory: Path, options: Sequence[str]):
        """Configure the package with the rendered options."""

    @abstractmethod
    def build(self, task: Task, directory: Path):
        """Build the configured package."""

    @abstractmethod
    def final_action(self, task: Task, directory: Path, action: FinalAction):
        """Run tests, benchmarks or documentation for a wanted package."""

    @abstractmethod
    def install(self, task: Task, directory: Path):
        """Install and register the package. Called under the install lock."""


class SetupActions(BuildActions):
    """
    Build steps run through ``runhaskell Setup.hs``.

    Attributes:
        fetcher: Provides the sources of upstream packages
        runhaskell: The runhaskell executable
    """

    def __init__(self, fetcher: Optional[PackageFetcher], runhaskell: str = "runhaskell"):
        self.fetcher = fetcher
        self.runhaskell = runhaskell

    def unpack(self, task: Task) -> Path:
        if not isinstance(task.kind, UpstreamTask):
            raise ValueError(f"{task.provides} is not an upstream package")
        if self.fetcher is None:
            raise ValueError(f"No fetcher configured to obtain {task.provides}")
        return self.fetcher.unpack(task.provides)

    def setup_file(self, directory: Path) -> Path:
        """The package's Setup script, or a default one if it has none."""
        for name in ("Setup.hs", "Setup.lhs"):
            candidate = directory / name
            if candidate.exists():
                return candidate
        default = directory / WORK_DIR / "Setup.hs"
        if not default.exists():
            default.parent.mkdir(parents=True, exist_ok=True)
            default.write_text(DEFAULT_SETUP_HS)
        return default

    def log_file(self, task: Task, directory: Path, step: str) -> Path:
        return directory / WORK_DIR / "logs" / f"{task.provides}-{step}.log"

    def _run_setup(self, task: Task, directory: Path, step: str, args: Sequence[str]) -> int:
        setup = self.setup_file(directory)
        full_args: List[str] = [str(setup), step, *args]
        log_path = self.log_file(task, directory, step)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"{task.provides}: {step}")
        logger.debug(f"Running: {self.runhaskell} {' '.join(full_args)}")
        with open(log_path, "wb") as log:
            result = subprocess.run(
                [self.runhaskell, *full_args],
                cwd=directory,
                stdout=log,
                stderr=subprocess.STDOUT,
            )
        return result.returncode

    def _checked(self, task: Task, directory: Path, step: str, args: Sequence[str] = ()):
        returncode = self._run_setup(task, directory, step, args)
        if returncode != 0:
            log_path = self.log_file(task, directory, step)
            raise CabalExitedUnsuccessfully(
                exit_code=returncode,
                ident=task.provides,
                executable=self.runhaskell,
                args=[str(self.setup_file(directory)), step, *args],
                log_file=log_path,
                log_contents=log_path.read_bytes(),
            )

    def configure(self, task: Task, directory: Path, options: Sequence[str]):
        self._checked(task, directory, "configure", options)

    def build(self, task: Task, directory: Path):
        self._checked(task, directory, "build")

    def final_action(self, task: Task, directory: Path, action: FinalAction):
        step = _FINAL_ACTION_STEPS.get(action)
        if step is None:
            return
        if action is FinalAction.TESTS:
            returncode = self._run_setup(task, directory, step, ())
            if returncode != 0:
                raise TestSuiteFailure(
                    task.provides,
                    {"test": returncode},
                    self.log_file(task, directory, step),
                )
            return
        self._checked(task, directory, step)

    def install(self, task: Task, directory: Path):
        self._checked(task, directory, "install")


__all__ = ["BuildActions", "SetupActions"]
