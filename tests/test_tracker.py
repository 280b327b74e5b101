import json
import tempfile
import unittest
from pathlib import Path

from loadout.cache import DiskCache
from loadout.errors import CacheError
from loadout.lockfile import Artifact, PathSource
from loadout.tracker import (
    InstalledArtifact,
    InstallTracker,
    TrackerKey,
    find_artifacts_to_install_for_clients,
    find_changed_or_new_artifacts,
    find_removed_artifacts,
    list_tracker_files,
    reconcile_state,
    scope_key_for,
    validate_installed_state,
)

REPO = "https://github.com/org/repo"


def _installed(name: str, version: str = "1.0.0", **kwargs) -> InstalledArtifact:
    return InstalledArtifact(name=name, version=version, type="skill", **kwargs)


def _artifact(name: str, version: str = "1.0.0") -> Artifact:
    return Artifact(name=name, version=version, type="skill", source_path=PathSource(f"./{name}"))


class FakeScanner:
    def __init__(self, *found: InstalledArtifact) -> None:
        self.found = list(found)
        self.bases: list[Path] = []

    def scan_installed(self, target_base: Path) -> list[InstalledArtifact]:
        self.bases.append(target_base)
        return list(self.found)


class TestTrackerKey(unittest.TestCase):
    def test_for_scope(self) -> None:
        self.assertEqual(TrackerKey.for_scope("a", "global", REPO, "x"), TrackerKey("a"))
        self.assertEqual(TrackerKey.for_scope("a", "repo", REPO, "x"), TrackerKey("a", REPO))
        self.assertEqual(TrackerKey.for_scope("a", "path", REPO, "x"), TrackerKey("a", REPO, "x"))


class TestInstallTracker(unittest.TestCase):
    def test_missing_file_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tracker = InstallTracker.load_path(Path(td) / "t.json")
        self.assertEqual(tracker.artifacts, [])
        self.assertEqual(tracker.version, "1.0")

    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cache = DiskCache(Path(td) / "cache")
            tracker = InstallTracker.load(Path(td) / "target", cache)
            tracker.lock_file_version = "abc"
            tracker.upsert_artifact(_installed("a", repository=REPO, path="svc", install_path="/t", clients=["claude-code"]))
            path = tracker.save()

            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["lockFileVersion"], "abc")
            self.assertIsNotNone(raw["installedAt"])
            self.assertEqual(
                raw["artifacts"][0],
                {
                    "name": "a",
                    "version": "1.0.0",
                    "type": "skill",
                    "repository": REPO,
                    "path": "svc",
                    "installPath": "/t",
                    "clients": ["claude-code"],
                },
            )

            again = InstallTracker.load(Path(td) / "target", cache)
            self.assertEqual(again.artifacts, tracker.artifacts)
            self.assertEqual(again.installed_at, tracker.installed_at)
            self.assertEqual([f.scope_key for f in list_tracker_files(cache)], [path.stem])

            again.delete()
            self.assertFalse(path.exists())

    def test_corrupt_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "t.json"
            path.write_text("{", encoding="utf-8")
            with self.assertRaises(CacheError):
                InstallTracker.load_path(path)

    def test_scope_key(self) -> None:
        self.assertEqual(scope_key_for("~/.claude"), "global")
        self.assertEqual(scope_key_for("/g", global_base="/g"), "global")
        self.assertEqual(len(scope_key_for("/work/repo/.claude")), 16)
        self.assertNotEqual(scope_key_for("/a"), scope_key_for("/b"))

    def test_upsert_and_remove(self) -> None:
        tracker = InstallTracker(Path("unused.json"))
        tracker.upsert_artifact(_installed("a"))
        tracker.upsert_artifact(_installed("a", "2.0.0"))
        tracker.upsert_artifact(_installed("a", repository=REPO))
        self.assertEqual(len(tracker.artifacts), 2)
        self.assertEqual(tracker.find_artifact(TrackerKey("a")).version, "2.0.0")

        self.assertTrue(tracker.remove_artifact(TrackerKey("a", REPO)))
        self.assertFalse(tracker.remove_artifact(TrackerKey("a", REPO)))
        self.assertTrue(tracker.remove_artifact(TrackerKey("a")))
        self.assertEqual(tracker.artifacts, [])

    def test_needs_install(self) -> None:
        tracker = InstallTracker(Path("unused.json"), artifacts=[_installed("a", clients=["claude-code"])])
        key = TrackerKey("a")
        self.assertFalse(tracker.needs_install(key, "1.0.0", ["claude-code"]))
        self.assertTrue(tracker.needs_install(key, "1.1.0", ["claude-code"]))
        self.assertTrue(tracker.needs_install(key, "1.0.0", ["claude-code", "cursor"]))
        self.assertTrue(tracker.needs_install(TrackerKey("b"), "1.0.0", []))

    def test_scope_lookups(self) -> None:
        tracker = InstallTracker(
            Path("unused.json"),
            artifacts=[
                _installed("g"),
                _installed("r", repository=REPO),
                _installed("p", repository=REPO, path="services/api"),
                _installed("o", repository="https://github.com/org/other"),
            ],
        )
        self.assertEqual([a.name for a in tracker.find_global()], ["g"])
        self.assertEqual([a.name for a in tracker.find_by_scope(REPO, "services/api")], ["p"])
        self.assertEqual(
            [a.name for a in tracker.find_for_scope("git@github.com:org/repo.git", "services/api/v2")],
            ["g", "r", "p"],
        )
        self.assertEqual([a.name for a in tracker.find_for_scope(REPO)], ["g", "r"])
        self.assertEqual([a.name for a in tracker.find_for_scope("")], ["g"])

        found = tracker.find_artifact_with_matcher("p", "git@github.com:org/repo.git", "services/api")
        self.assertIsNotNone(found)
        self.assertIsNone(tracker.find_artifact_with_matcher("p", REPO, "other"))
        self.assertEqual(tracker.find_artifact_with_matcher("g", "", "").name, "g")

        groups = tracker.group_by_scope()
        self.assertEqual(
            sorted(groups),
            sorted(["Global", REPO, f"{REPO}:services/api", "https://github.com/org/other"]),
        )
        self.assertEqual(tracker.remove_by_scope(REPO, ""), 1)


class TestValidateInstalledState(unittest.TestCase):
    def test_buckets(self) -> None:
        tracked = [_installed("same"), _installed("gone"), _installed("drift", "1.0.0")]
        scanner = FakeScanner(
            _installed("same"),
            _installed("drift", "1.1.0", install_path="/t/skills/drift"),
            _installed("stray"),
        )
        result = validate_installed_state(tracked, [scanner], "/t")

        self.assertEqual(scanner.bases, [Path("/t")])
        self.assertEqual([a.name for a in result.consistent], ["same"])
        self.assertEqual([a.name for a in result.tracker_only], ["gone"])
        self.assertEqual([a.name for a in result.filesystem_only], ["stray"])
        (mismatch,) = result.version_mismatch
        self.assertEqual((mismatch.name, mismatch.tracker_version, mismatch.filesystem_version), ("drift", "1.0.0", "1.1.0"))
        self.assertFalse(result.is_consistent)

    def test_clean_state(self) -> None:
        result = validate_installed_state([_installed("a")], [FakeScanner(_installed("a"))], "/t")
        self.assertTrue(result.is_consistent)
        self.assertTrue(validate_installed_state([], [], "/t").is_consistent)

    def test_same_name_in_two_scopes(self) -> None:
        tracked = [_installed("x", repository=REPO, path="a"), _installed("x", repository=REPO, path="b")]
        result = validate_installed_state(tracked, [FakeScanner(_installed("x"))], "/t")

        self.assertEqual([(a.repository, a.path) for a in result.consistent], [(REPO, "a"), (REPO, "b")])
        self.assertEqual(result.filesystem_only, [])
        kept = reconcile_state(result, prefer_tracker=False)
        self.assertEqual(sorted((a.repository, a.path) for a in kept), [(REPO, "a"), (REPO, "b")])

    def test_reconcile(self) -> None:
        tracked = [_installed("same"), _installed("gone"), _installed("drift", clients=["claude-code"])]
        found = FakeScanner(_installed("same"), _installed("drift", "1.1.0", install_path="/new"), _installed("stray"))
        result = validate_installed_state(tracked, [found], "/t")

        keep_tracker = reconcile_state(result, prefer_tracker=True)
        self.assertEqual(sorted((a.name, a.version) for a in keep_tracker), [("drift", "1.0.0"), ("gone", "1.0.0"), ("same", "1.0.0")])

        keep_disk = reconcile_state(result, prefer_tracker=False)
        self.assertEqual(sorted((a.name, a.version) for a in keep_disk), [("drift", "1.1.0"), ("same", "1.0.0"), ("stray", "1.0.0")])
        drift = next(a for a in keep_disk if a.name == "drift")
        self.assertEqual(drift.install_path, "/new")
        self.assertEqual(drift.clients, ["claude-code"])


class TestDeltas(unittest.TestCase):
    def test_removed_and_changed(self) -> None:
        previous = [_installed("keep"), _installed("bump"), _installed("drop")]
        current = [_artifact("keep"), _artifact("bump", "2.0.0"), _artifact("new")]
        self.assertEqual([a.name for a in find_removed_artifacts(previous, current)], ["drop"])
        self.assertEqual([a.name for a in find_changed_or_new_artifacts(previous, current)], ["bump", "new"])

    def test_client_coverage(self) -> None:
        previous = [_installed("a", clients=["claude-code"]), _installed("b", clients=["claude-code", "cursor"])]
        current = [_artifact("a"), _artifact("b")]
        self.assertEqual(find_artifacts_to_install_for_clients(previous, current, ["claude-code"]), [])
        self.assertEqual(
            [a.name for a in find_artifacts_to_install_for_clients(previous, current, ["cursor"])],
            ["a"],
        )


if __name__ == "__main__":
    unittest.main()
