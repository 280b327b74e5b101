import io
import tempfile
import threading
import unittest
import zipfile
from pathlib import Path

from loadout.archive import read_metadata
from loadout.cache import DiskCache
from loadout.errors import FetchCancelledError, FetchError, InstallError, MetadataError
from loadout.fetcher import ArtifactFetcher
from loadout.installer import (
    DirectoryScanner,
    ExtractingInstaller,
    InstallationOrchestrator,
    InstallItem,
    InstallResult,
)
from loadout.lockfile import Artifact, Dependency, LockFile, PathSource, Scope
from loadout.metadata import Metadata
from loadout.scope import CurrentScope
from loadout.tracker import InstalledArtifact, InstallTracker, TrackerKey, validate_installed_state

REPO = "https://github.com/org/repo"


def _archive(name: str, version: str = "1.0.0", *, prompt: bool = True) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(
            "metadata.toml",
            f'[asset]\nname = "{name}"\nversion = "{version}"\ntype = "skill"\n\n[skill]\nprompt-file = "SKILL.md"\n',
        )
        if prompt:
            zf.writestr("SKILL.md", f"# {name}")
    return buf.getvalue()


def _artifact(name: str, version: str = "1.0.0", *deps: str, scopes: tuple[Scope, ...] = ()) -> Artifact:
    return Artifact(
        name=name,
        version=version,
        type="skill",
        source_path=PathSource(f"./{name}"),
        dependencies=tuple(Dependency(d) for d in deps),
        scopes=scopes,
    )


class RecordingInstaller:
    def __init__(self, log: list[tuple[str, str]], name: str, fail: bool = False) -> None:
        self.log = log
        self.name = name
        self.fail = fail

    def install(self, archive: bytes, target_base: Path) -> None:
        if self.fail:
            raise InstallError("disk full")
        self.log.append(("install", self.name))

    def remove(self, target_base: Path) -> None:
        if self.fail:
            raise InstallError("busy")
        self.log.append(("remove", self.name))

    def verify_installed(self, target_base: Path) -> tuple[bool, str]:
        return (not self.fail, "checked")


def _factory(log: list[tuple[str, str]], failing: tuple[str, ...] = ()):
    def make(artifact: Artifact, metadata: Metadata | None) -> RecordingInstaller:
        return RecordingInstaller(log, artifact.name, fail=artifact.name in failing)

    return make


class FakeSources:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, artifact: Artifact) -> bytes:
        with self._lock:
            self.calls.append(artifact.name)
        if artifact.name == "broken":
            raise FetchError("unreachable")
        return _archive(artifact.name, artifact.version)


class TestExtractingInstaller(unittest.TestCase):
    def test_install_verify_remove(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td)
            inst = ExtractingInstaller("a", "1.0.0", "skill")
            inst.install(_archive("a"), target)
            self.assertTrue((target / "skills" / "a" / "SKILL.md").is_file())
            self.assertEqual(inst.verify_installed(target), (True, "installed"))

            ok, message = ExtractingInstaller("a", "2.0.0", "skill").verify_installed(target)
            self.assertFalse(ok)
            self.assertIn("does not match", message)

            inst.remove(target)
            self.assertFalse((target / "skills" / "a").exists())
            self.assertFalse(inst.verify_installed(target)[0])
            inst.remove(target)

    def test_reinstall_replaces_old_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td)
            inst = ExtractingInstaller("a", "1.0.0", "skill")
            inst.install(_archive("a"), target)
            (target / "skills" / "a" / "stale.txt").write_text("old", encoding="utf-8")
            inst.install(_archive("a"), target)
            self.assertFalse((target / "skills" / "a" / "stale.txt").exists())
            self.assertFalse((target / "skills" / ".a.tmp").exists())

    def test_missing_prompt_file_is_rejected(self) -> None:
        data = _archive("a", prompt=False)
        inst = ExtractingInstaller.for_artifact(_artifact("a"), read_metadata(data))
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(MetadataError):
                inst.install(data, Path(td))
            self.assertFalse((Path(td) / "skills" / "a").exists())

    def test_directory_scanner(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td)
            ExtractingInstaller("a", "1.0.0", "skill").install(_archive("a"), target)
            ExtractingInstaller("b", "2.0.0", "skill").install(_archive("b", "2.0.0"), target)
            (target / "skills" / "junk").mkdir()
            found = DirectoryScanner().scan_installed(target)
        self.assertEqual([(f.name, f.version) for f in found], [("a", "1.0.0"), ("b", "2.0.0")])


class TestInstallAll(unittest.TestCase):
    def test_failures_do_not_stop_the_rest(self) -> None:
        log: list[tuple[str, str]] = []
        orch = InstallationOrchestrator(_factory(log, failing=("b",)), "/unused")
        items = [InstallItem(_artifact(n), b"") for n in ("a", "b", "c")]
        result = orch.install_all(items)
        self.assertEqual(result.installed, ["a", "c"])
        self.assertEqual(result.failed, ["b"])
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(log, [("install", "a"), ("install", "c")])

    def test_cancellation_reports_partial_result(self) -> None:
        log: list[tuple[str, str]] = []
        cancel = threading.Event()

        def make(artifact: Artifact, metadata: Metadata | None) -> RecordingInstaller:
            inst = RecordingInstaller(log, artifact.name)
            if artifact.name == "a":
                cancel.set()
            return inst

        orch = InstallationOrchestrator(make, "/unused")
        items = [InstallItem(_artifact(n), b"") for n in ("a", "b")]
        with self.assertRaises(FetchCancelledError) as ctx:
            orch.install_all(items, cancel_event=cancel)
        partial = ctx.exception.partial
        self.assertIsInstance(partial, InstallResult)
        self.assertEqual(partial.installed, ["a"])
        self.assertEqual(log, [("install", "a")])

    def test_remove_artifacts_aggregates_errors(self) -> None:
        log: list[tuple[str, str]] = []
        orch = InstallationOrchestrator(_factory(log, failing=("x", "z")), "/unused")
        with self.assertRaises(InstallError) as ctx:
            orch.remove_artifacts([InstalledArtifact("x", "1.0.0"), InstalledArtifact("y", "1.0.0"), InstalledArtifact("z", "1.0.0")])
        self.assertEqual(len(ctx.exception.errors), 2)
        self.assertTrue(str(ctx.exception).startswith("cleanup errors:"))
        self.assertEqual(log, [("remove", "y")])

        orch.remove_artifacts([InstalledArtifact("y", "1.0.0")])

    def test_verify_all(self) -> None:
        orch = InstallationOrchestrator(_factory([], failing=("b",)), "/unused")
        result = orch.verify_all([_artifact("a"), _artifact("b")])
        self.assertEqual(result, {"a": (True, "checked"), "b": (False, "checked")})


class TestSync(unittest.TestCase):
    def _setup(self, td: str) -> tuple[InstallationOrchestrator, DiskCache, Path]:
        target = Path(td) / "target"
        cache = DiskCache(Path(td) / "cache")
        return InstallationOrchestrator(ExtractingInstaller.for_artifact, target), cache, target

    def test_second_run_is_a_no_op(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch, cache, target = self._setup(td)
            sources = FakeSources()
            lock = LockFile(version="v1", created_by="t", artifacts=[_artifact("app", "1.0.0", "base"), _artifact("base")])

            tracker = InstallTracker.load(target, cache)
            report = orch.sync(lock, tracker, ArtifactFetcher(sources, cache), clients=["claude-code"])  # type: ignore[arg-type]
            self.assertEqual(report.installed, ["base", "app"])
            self.assertTrue(report.ok)
            self.assertTrue((target / "skills" / "app" / "SKILL.md").is_file())

            tracker = InstallTracker.load(target, cache)
            self.assertEqual(tracker.lock_file_version, "v1")
            self.assertEqual(tracker.find_artifact(TrackerKey("app")).clients, ["claude-code"])

            report = orch.sync(lock, tracker, ArtifactFetcher(sources, cache), clients=["claude-code"])  # type: ignore[arg-type]
            self.assertEqual(report.installed, [])
            self.assertEqual(sorted(report.unchanged), ["app", "base"])
            self.assertEqual(sources.calls.count("app"), 1)

            scan = validate_installed_state(tracker.artifacts, [DirectoryScanner()], target)
            self.assertTrue(scan.is_consistent)

    def test_version_bump_and_removal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch, cache, target = self._setup(td)
            sources = FakeSources()
            first = LockFile(version="v1", created_by="t", artifacts=[_artifact("a"), _artifact("b")])
            orch.sync(first, InstallTracker.load(target, cache), ArtifactFetcher(sources, cache), clients=[])  # type: ignore[arg-type]

            second = LockFile(version="v2", created_by="t", artifacts=[_artifact("a", "1.1.0")])
            tracker = InstallTracker.load(target, cache)
            report = orch.sync(second, tracker, ArtifactFetcher(sources, cache), clients=[])  # type: ignore[arg-type]

            self.assertEqual(report.installed, ["a"])
            self.assertEqual(report.removed, ["b"])
            self.assertFalse((target / "skills" / "b").exists())
            self.assertEqual([(a.name, a.version) for a in InstallTracker.load(target, cache).artifacts], [("a", "1.1.0")])

    def test_fetch_failure_is_reported_and_others_install(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch, cache, target = self._setup(td)
            lock = LockFile(version="v1", created_by="t", artifacts=[_artifact("broken"), _artifact("fine")])
            tracker = InstallTracker.load(target, cache)
            report = orch.sync(lock, tracker, ArtifactFetcher(FakeSources(), cache), clients=[])  # type: ignore[arg-type]

            self.assertFalse(report.ok)
            self.assertEqual(report.failed, ["broken"])
            self.assertEqual(report.installed, ["fine"])
            self.assertEqual([a.name for a in InstallTracker.load(target, cache).artifacts], ["fine"])

    def test_scope_and_client_filtering(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch, cache, target = self._setup(td)
            scoped = _artifact("scoped", scopes=(Scope(REPO, ("services/api",)),))
            other_client = Artifact(
                name="cursor-only", version="1.0.0", type="skill", clients=("cursor",), source_path=PathSource("./c")
            )
            lock = LockFile(version="v1", created_by="t", artifacts=[_artifact("everywhere"), scoped, other_client])

            report = orch.sync(
                lock,
                InstallTracker.load(target, cache),
                ArtifactFetcher(FakeSources(), cache),  # type: ignore[arg-type]
                clients=["claude-code"],
                current=CurrentScope.for_repo("git@github.com:org/repo.git", "services/api"),
            )
            self.assertEqual(sorted(report.installed), ["everywhere", "scoped"])

            tracked = InstallTracker.load(target, cache).find_artifact(
                TrackerKey("scoped", "git@github.com:org/repo.git", "services/api")
            )
            self.assertIsNotNone(tracked)

    def test_switching_clients_keeps_artifacts_still_in_the_lock_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch, cache, target = self._setup(td)
            cur = Artifact(name="cur", version="1.0.0", type="skill", clients=("cursor",), source_path=PathSource("./cur"))
            cc = Artifact(name="cc", version="1.0.0", type="skill", clients=("claude-code",), source_path=PathSource("./cc"))
            lock = LockFile(version="v1", created_by="t", artifacts=[cur, cc])

            first = orch.sync(lock, InstallTracker.load(target, cache), ArtifactFetcher(FakeSources(), cache), clients=["cursor"])  # type: ignore[arg-type]
            self.assertEqual(first.installed, ["cur"])

            second = orch.sync(lock, InstallTracker.load(target, cache), ArtifactFetcher(FakeSources(), cache), clients=["claude-code"])  # type: ignore[arg-type]
            self.assertEqual(second.installed, ["cc"])
            self.assertEqual(second.removed, [])
            self.assertTrue((target / "skills" / "cur" / "SKILL.md").is_file())
            self.assertEqual(sorted(a.name for a in InstallTracker.load(target, cache).artifacts), ["cc", "cur"])

    def test_out_of_scope_artifact_is_not_removed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch, cache, target = self._setup(td)
            scoped = _artifact("scoped", scopes=(Scope(REPO, ()),))
            lock = LockFile(version="v1", created_by="t", artifacts=[scoped, _artifact("g")])
            orch.sync(
                lock,
                InstallTracker.load(target, cache),
                ArtifactFetcher(FakeSources(), cache),  # type: ignore[arg-type]
                clients=[],
                current=CurrentScope.for_repo(REPO),
            )

            report = orch.sync(lock, InstallTracker.load(target, cache), ArtifactFetcher(FakeSources(), cache), clients=[])  # type: ignore[arg-type]
            self.assertEqual(report.removed, [])
            self.assertIsNotNone(InstallTracker.load(target, cache).find_artifact(TrackerKey("scoped", REPO)))

    def test_cancelled_sync_saves_progress(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            orch, cache, target = self._setup(td)
            cancel = threading.Event()
            cancel.set()
            lock = LockFile(version="v1", created_by="t", artifacts=[_artifact("a")])
            tracker = InstallTracker.load(target, cache)
            with self.assertRaises(FetchCancelledError):
                orch.sync(lock, tracker, ArtifactFetcher(FakeSources(), cache), clients=[], cancel_event=cancel)  # type: ignore[arg-type]
            self.assertTrue(tracker.path.exists())
            self.assertEqual(InstallTracker.load(target, cache).artifacts, [])


if __name__ == "__main__":
    unittest.main()
