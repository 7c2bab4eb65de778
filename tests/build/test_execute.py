"""
Unit tests for plan execution.

Build steps and the package database are replaced by in-memory fakes that
record what was called, so the tests can check ordering, skipping of
dependents and cache updates without a Haskell toolchain.
"""

import threading
from dataclasses import replace
from unittest.mock import patch

import pytest

from stackkit.build.actions import BuildActions
from stackkit.build.construct_plan import construct_plan
from stackkit.build.execute import ExecuteEnv, execute_plan, get_concurrency
from stackkit.build.local import load_local_package
from stackkit.build.package_db import PackageDatabase
from stackkit.build.types import (
    BuildOpts,
    ConfigCache,
    FinalAction,
    InstalledPackage,
    Location,
    NeededSteps,
    Plan,
)
from stackkit.core.exceptions import (
    CabalExitedUnsuccessfully,
    CouldntFindPkgId,
    ExecutionFailure,
)
from stackkit.core.types import GhcPkgId, PackageIdentifier, PackageName


class InMemoryDatabase(PackageDatabase):
    """Package databases kept in memory."""

    def __init__(self, events):
        self.events = events
        self.ids = {Location.SNAPSHOT: [], Location.LOCAL: []}
        self._lock = threading.Lock()

    def register(self, location, gid):
        with self._lock:
            self.ids[location].append(gid)

    def list_installed(self, location):
        with self._lock:
            return list(self.ids[location])

    def unregister(self, gid):
        with self._lock:
            self.events.append(("unregister", str(gid)))
            for ids in self.ids.values():
                if gid in ids:
                    ids.remove(gid)


class RecordingActions(BuildActions):
    """Build actions that record their calls and register on install."""

    def __init__(self, events, database, source_root, fail=()):
        self.events = events
        self.database = database
        self.source_root = source_root
        self.fail = {PackageName(name) for name in fail}
        self._lock = threading.Lock()

    def record(self, step, task, *extra):
        with self._lock:
            self.events.append((step, str(task.provides)) + extra)

    def steps_of(self, ident):
        return [event[0] for event in self.events if event[1] == ident]

    def unpack(self, task):
        self.record("unpack", task)
        directory = self.source_root / str(task.provides)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def configure(self, task, directory, options):
        self.record("configure", task, tuple(options))

    def build(self, task, directory):
        self.record("build", task)
        if task.package.name in self.fail:
            raise CabalExitedUnsuccessfully(
                1, task.provides, "runhaskell", ["Setup.hs", "build"]
            )

    def final_action(self, task, directory, action):
        self.record(action.value, task)

    def install(self, task, directory):
        self.record("install", task)
        if task.package.has_library:
            self.database.register(task.location, GhcPkgId(task.provides, "abc"))


@pytest.fixture
def events():
    return []


@pytest.fixture
def database(events):
    return InMemoryDatabase(events)


@pytest.fixture
def actions(events, database, tmp_path):
    return RecordingActions(events, database, tmp_path / "unpacked")


@pytest.fixture
def env(base_config_opts, cache_store, database, actions):
    return ExecuteEnv(
        base_config_opts=base_config_opts,
        cache_store=cache_store,
        package_db=database,
        actions=actions,
        jobs=2,
    )


def ident(text):
    return PackageIdentifier.parse(text)


def snapshot_of(*packages):
    return {p.name: p for p in packages}


def targets(*names):
    return {PackageName(n) for n in names}


class TestExecutePlan:
    """Tests for execute_plan."""

    def test_dependency_order_and_id_delivery(self, make_package, env, actions):
        """Test a dependent is configured with the id its dependency produced."""
        a = make_package("a", deps={"b": "-any"})
        b = make_package("b")
        plan = construct_plan(
            targets("a", "b"), [], {}, snapshot_of(a, b), env.base_config_opts
        )

        result = execute_plan(plan, env)

        assert result.installed == {
            ident("a-1.0"): GhcPkgId(ident("a-1.0"), "abc"),
            ident("b-1.0"): GhcPkgId(ident("b-1.0"), "abc"),
        }
        events = actions.events
        install_b = events.index(("install", "b-1.0"))
        configure_a = next(
            i for i, e in enumerate(events) if e[:2] == ("configure", "a-1.0")
        )
        assert install_b < configure_a
        assert "--constraint=b==1.0" in events[configure_a][2]
        assert actions.steps_of("b-1.0") == ["unpack", "configure", "build", "install"]

    def test_failure_skips_dependents(self, make_package, env, actions):
        """Test A is never started when B fails, and only B is reported."""
        a = make_package("a", deps={"b": "-any"})
        b = make_package("b")
        c = make_package("c")
        plan = construct_plan(
            targets("a", "c"), [], {}, snapshot_of(a, b, c), env.base_config_opts
        )
        actions.fail = {PackageName("b")}

        with pytest.raises(ExecutionFailure) as exc_info:
            execute_plan(plan, env)

        failure = exc_info.value
        assert len(failure.failures) == 1
        assert isinstance(failure.failures[0], CabalExitedUnsuccessfully)
        assert failure.failures[0].ident == ident("b-1.0")
        assert failure.skipped == [ident("a-1.0")]
        assert actions.steps_of("a-1.0") == []
        assert "install" in actions.steps_of("c-1.0")

    def test_skipping_is_transitive(self, make_package, env, actions):
        a = make_package("a", deps={"b": "-any"})
        b = make_package("b", deps={"c": "-any"})
        c = make_package("c")
        plan = construct_plan(
            targets("a"), [], {}, snapshot_of(a, b, c), env.base_config_opts
        )
        actions.fail = {PackageName("c")}

        with pytest.raises(ExecutionFailure) as exc_info:
            execute_plan(plan, env)

        assert exc_info.value.skipped == [ident("a-1.0"), ident("b-1.0")]
        assert len(exc_info.value.failures) == 1

    def test_all_failures_are_reported(self, make_package, env, actions):
        plan = construct_plan(
            targets("a", "b"),
            [],
            {},
            snapshot_of(make_package("a"), make_package("b")),
            env.base_config_opts,
        )
        actions.fail = {PackageName("a"), PackageName("b")}

        with pytest.raises(ExecutionFailure) as exc_info:
            execute_plan(plan, env)

        assert sorted(str(f.ident) for f in exc_info.value.failures) == ["a-1.0", "b-1.0"]
        assert exc_info.value.skipped == []

    def test_unregister_runs_first(self, make_package, env, actions, database):
        b = make_package("b", "1.1")
        stale = GhcPkgId.parse("b-1.0-old")
        database.register(Location.SNAPSHOT, stale)
        installed = {stale.name: InstalledPackage(stale, Location.SNAPSHOT)}
        plan = construct_plan(
            targets("b"), [], installed, snapshot_of(b), env.base_config_opts
        )

        execute_plan(plan, env)

        assert actions.events[0] == ("unregister", "b-1.0-old")
        assert stale not in database.list_installed(Location.SNAPSHOT)

    def test_dry_run(self, make_package, env, actions, database):
        """Test nothing is run or unregistered in a dry run."""
        env.base_config_opts = replace(
            env.base_config_opts, build_opts=BuildOpts(dry_run=True)
        )
        b = make_package("b", "1.1")
        stale = GhcPkgId.parse("b-1.0-old")
        plan = Plan(
            tasks=construct_plan(
                targets("b"), [], {}, snapshot_of(b), env.base_config_opts
            ).tasks,
            unregister=frozenset({stale}),
        )

        result = execute_plan(plan, env)

        assert result.installed == {}
        assert actions.events == []

    def test_upstream_writes_flag_cache(self, make_package, env, cache_store):
        plan = construct_plan(
            targets("b"), [], {}, snapshot_of(make_package("b")), env.base_config_opts
        )
        options = plan.tasks[PackageName("b")].config_opts.render({})

        execute_plan(plan, env)

        gid = GhcPkgId(ident("b-1.0"), "abc")
        assert cache_store.try_get_flag_cache(gid) == ConfigCache.from_options(
            options, []
        )

    def test_upstream_reuses_unpacked_configuration(
        self, make_package, env, actions, cache_store, tmp_path
    ):
        """Test an unpacked package with a matching config cache is not reconfigured."""
        plan = construct_plan(
            targets("b"), [], {}, snapshot_of(make_package("b")), env.base_config_opts
        )
        options = plan.tasks[PackageName("b")].config_opts.render({})
        cache_store.write_config_cache(tmp_path / "unpacked" / "b-1.0", options, [])

        execute_plan(plan, env)

        assert actions.steps_of("b-1.0") == ["unpack", "build", "install"]

    def test_missing_package_id(self, make_package, env, actions):
        """Test a library whose id cannot be found after install fails."""
        actions.install = lambda task, directory: None
        plan = construct_plan(
            targets("b"), [], {}, snapshot_of(make_package("b")), env.base_config_opts
        )

        with pytest.raises(ExecutionFailure) as exc_info:
            execute_plan(plan, env)

        (failure,) = exc_info.value.failures
        assert isinstance(failure, CouldntFindPkgId)
        assert failure.name == PackageName("b")

    def test_executable_only_package(self, make_package, env, cache_store):
        happy = make_package("happy", has_library=False, executables=("happy",))
        plan = construct_plan(
            targets("happy"), [], {}, snapshot_of(happy), env.base_config_opts
        )

        result = execute_plan(plan, env)

        assert result.installed == {ident("happy-1.0"): None}
        assert cache_store.get_installed_exes(Location.SNAPSHOT) == [ident("happy-1.0")]

    def test_jobs_run_in_parallel(self, make_package, env, actions):
        """Test independent tasks run concurrently up to the job limit."""
        barrier = threading.Barrier(2, timeout=10)
        original_build = actions.build

        def build(task, directory):
            barrier.wait()
            original_build(task, directory)

        actions.build = build
        plan = construct_plan(
            targets("a", "b"),
            [],
            {},
            snapshot_of(make_package("a"), make_package("b")),
            env.base_config_opts,
        )

        result = execute_plan(plan, env)

        assert set(result.installed) == {ident("a-1.0"), ident("b-1.0")}

    def test_job_limit(self, make_package, env, actions):
        env.jobs = 1
        running = []
        overlaps = []
        original_build = actions.build

        def build(task, directory):
            running.append(task.provides)
            if len(running) > 1:
                overlaps.append(task.provides)
            original_build(task, directory)
            running.remove(task.provides)

        actions.build = build
        packages = [make_package(name) for name in ("a", "b", "c", "d")]
        plan = construct_plan(
            targets("a", "b", "c", "d"), [], {}, snapshot_of(*packages), env.base_config_opts
        )

        execute_plan(plan, env)

        assert overlaps == []

    def test_unknown_dependency_in_plan(self, make_package, env):
        a = make_package("a", deps={"b": "-any"})
        b = make_package("b")
        full = construct_plan(targets("a"), [], {}, snapshot_of(a, b), env.base_config_opts)
        plan = Plan(tasks={PackageName("a"): full.tasks[PackageName("a")]})

        with pytest.raises(ValueError, match="b-1.0"):
            execute_plan(plan, env)


class TestLocalPackages:
    """Execution of local packages and their caches."""

    @pytest.fixture
    def app(self, make_package, package_dir):
        return make_package("mypkg")

    def test_rebuild_is_skipped_when_clean(
        self, app, package_dir, env, actions, cache_store, database
    ):
        """Test a second run of an unchanged package does no work."""
        cabal_file = package_dir / "mypkg.cabal"
        local = load_local_package(app, cabal_file, True, cache_store)
        plan = construct_plan(set(), [local], {}, {}, env.base_config_opts)

        execute_plan(plan, env)

        assert actions.steps_of("mypkg-1.0") == ["configure", "build", "install"]
        assert cache_store.try_get_build_cache(package_dir) is not None

        actions.events.clear()
        local = load_local_package(app, cabal_file, True, cache_store)
        assert local.dirty is False
        installed = {
            gid.name: InstalledPackage(gid, Location.LOCAL)
            for gid in database.list_installed(Location.LOCAL)
        }
        plan = construct_plan(set(), [local], installed, {}, env.base_config_opts)
        assert plan.tasks[PackageName("mypkg")].kind.steps is NeededSteps.JUST_FINAL

        result = execute_plan(plan, env)

        assert actions.events == []
        assert result.installed == {
            ident("mypkg-1.0"): GhcPkgId(ident("mypkg-1.0"), "abc")
        }

    def test_final_action_for_wanted(self, app, package_dir, env, actions, cache_store):
        env.base_config_opts = replace(
            env.base_config_opts, build_opts=BuildOpts(final_action=FinalAction.TESTS)
        )
        local = load_local_package(app, package_dir / "mypkg.cabal", True, cache_store)
        plan = construct_plan(set(), [local], {}, {}, env.base_config_opts)

        execute_plan(plan, env)

        steps = actions.steps_of("mypkg-1.0")
        assert steps == ["configure", "build", "tests", "install"]
        configure = next(e for e in actions.events if e[0] == "configure")
        assert "--enable-tests" in configure[2]

    def test_dirty_package_is_rebuilt_without_configure(
        self, app, package_dir, env, actions, cache_store, database
    ):
        cabal_file = package_dir / "mypkg.cabal"
        local = load_local_package(app, cabal_file, True, cache_store)
        execute_plan(construct_plan(set(), [local], {}, {}, env.base_config_opts), env)
        actions.events.clear()

        (package_dir / "src" / "New.hs").write_text("module New where\n")
        local = load_local_package(app, cabal_file, True, cache_store)
        installed = {
            gid.name: InstalledPackage(gid, Location.LOCAL)
            for gid in database.list_installed(Location.LOCAL)
        }
        plan = construct_plan(set(), [local], installed, {}, env.base_config_opts)

        execute_plan(plan, env)

        assert actions.steps_of("mypkg-1.0") == ["build", "install"]


class TestGetConcurrency:
    """Tests for get_concurrency."""

    def test_positive(self):
        assert get_concurrency() >= 1

    def test_without_affinity(self):
        with patch(
            "stackkit.build.execute.os.sched_getaffinity",
            side_effect=AttributeError,
            create=True,
        ):
            with patch("stackkit.build.execute.os.cpu_count", return_value=3):
                assert get_concurrency() == 3
