"""
Tests for core.pipeline - pre-process, install strategies and cleanup.
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import os
import stat
import tempfile
import unittest
from unittest.mock import patch
from modupdate.core.pipeline import (
    OutcomeStatus,
    UpdatePipeline,
    force_remove,
    read_installed_version,
    verify_installed,
)
from modupdate.core.resolver import UpdateDecision
from modupdate.core.version import parse_version
from modupdate.plugins.base import InstallResult, UninstallResult
from modupdate.plugins.local_folder import LocalFolderPlugin
from modupdate.plugins.powershellget import PowerShellGetPlugin

sys.path.insert(0, str(Path(__file__).parent))
from test_local_folder import make_nupkg
from test_manifest import write_manifest, write_record


class ScriptedFolderPlugin(LocalFolderPlugin):
    """Folder repository that can refuse destinations or fail its first calls."""

    def __init__(self, name, path, refuse=(), fail_first=0, events=None):
        super().__init__(name, {"path": str(path)})
        self.refuse = {Path(p) for p in refuse}
        self.fail_first = fail_first
        self.events = events
        self.calls = []

    def install(self, package_name, version, destination):
        self.calls.append(Path(destination))
        if self.events is not None:
            self.events.append(("install", package_name))
        if Path(destination) in self.refuse or len(self.calls) <= self.fail_first:
            return InstallResult(success=False, error_message="access denied")
        return super().install(package_name, version, destination)


class FakeLegacyBackend:

    def __init__(self, repository, root):
        self.repository = repository
        self.root = root
        self.calls = []

    def install_module(self, package_name, version):
        self.calls.append(package_name)
        return self.repository.install(package_name, version, self.root)


class RecordingUninstaller:

    def __init__(self):
        self.calls = []

    def uninstall(self, package_name, version, base_path):
        self.calls.append((package_name, str(version), Path(base_path)))
        return UninstallResult(success=False, error_message="not managed here")


class RaisingUninstaller:

    def __init__(self, error):
        self.error = error
        self.calls = 0

    def uninstall(self, package_name, version, base_path):
        self.calls += 1
        raise self.error


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        self.repo_dir = self.dir / "repo"
        self.modules = self.dir / "Modules"
        self.modules.mkdir()
        for name, version in (("Foo", "1.1.0"), ("Foo", "2.0.0-rc1"), ("PowerShellGet", "3.0.0")):
            make_nupkg(self.repo_dir, name, version)

    def tearDown(self):
        self.tmp.cleanup()

    def install_local(self, root, name, version):
        base = parse_version(version).base_string
        write_manifest(root / name / base / f"{name}.psd1", base)
        return root / name

    def decision(self, name, version, *locations, repository="Local"):
        return UpdateDecision(
            name=name,
            target_version=parse_version(version),
            repository=repository,
            outdated_locations=tuple(locations),
            installed_version=parse_version("1.0.0"),
        )


class TestInstallPhase(PipelineTestCase):

    def test_direct_install(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir)
        outcome = UpdatePipeline([plugin]).run([self.decision("Foo", "1.1.0", base)])[0]

        self.assertEqual(outcome.status, OutcomeStatus.UPDATED)
        self.assertTrue(outcome.overall_success)
        self.assertEqual(outcome.updated_paths, [base])
        self.assertEqual(outcome.strategies, {str(base): "direct"})
        self.assertTrue((base / "1.1.0" / "Foo.psd1").is_file())
        self.assertTrue((base / "1.0.0").is_dir())
        self.assertEqual(plugin.calls, [self.modules])

    def test_prerelease_install(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir)
        outcome = UpdatePipeline([plugin]).run([self.decision("Foo", "2.0.0-rc1", base)])[0]
        self.assertEqual(outcome.status, OutcomeStatus.UPDATED)
        self.assertEqual(outcome.target_version, "2.0.0-rc1")
        self.assertEqual(str(read_installed_version(base / "2.0.0", "Foo")), "2.0.0-rc1")

    def test_partial_failure(self):
        other = self.dir / "System"
        good = self.install_local(self.modules, "Foo", "1.0.0")
        bad = self.install_local(other, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir, refuse=[other])
        outcome = UpdatePipeline([plugin]).run([self.decision("Foo", "1.1.0", good, bad)])[0]

        self.assertEqual(outcome.updated_paths, [good])
        self.assertEqual(outcome.failed_paths, [bad])
        self.assertFalse(outcome.overall_success)
        self.assertEqual(outcome.status, OutcomeStatus.PARTIAL)
        self.assertTrue(any("access denied" in m for m in outcome.messages))

    def test_scope_fallback(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir, fail_first=1)
        pipeline = UpdatePipeline([plugin], default_install_root=self.modules)
        outcome = pipeline.run([self.decision("Foo", "1.1.0", base)])[0]
        self.assertEqual(outcome.status, OutcomeStatus.UPDATED)
        self.assertEqual(outcome.strategies, {str(base): "scope"})

    def test_scope_elsewhere_does_not_count(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        user_root = self.dir / "UserModules"
        plugin = ScriptedFolderPlugin("Local", self.repo_dir, refuse=[self.modules])
        outcome = UpdatePipeline([plugin], default_install_root=user_root).run(
            [self.decision("Foo", "1.1.0", base)]
        )[0]
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.failed_paths, [base])
        self.assertTrue((user_root / "Foo" / "1.1.0").is_dir())

    def test_scope_attempted_once_per_package(self):
        first = self.install_local(self.modules, "Foo", "1.0.0")
        other = self.dir / "System"
        second = self.install_local(other, "Foo", "1.0.0")
        user_root = self.dir / "UserModules"
        plugin = ScriptedFolderPlugin("Local", self.repo_dir, refuse=[self.modules, other, user_root])
        UpdatePipeline([plugin], default_install_root=user_root).run(
            [self.decision("Foo", "1.1.0", first, second)]
        )
        self.assertEqual(plugin.calls.count(user_root), 1)
        self.assertEqual(len(plugin.calls), 3)

    def test_legacy_fallback(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir, refuse=[self.modules])
        legacy = FakeLegacyBackend(LocalFolderPlugin("Local", {"path": str(self.repo_dir)}), self.modules)
        outcome = UpdatePipeline([plugin], legacy_installer=legacy).run(
            [self.decision("Foo", "1.1.0", base)]
        )[0]
        self.assertEqual(outcome.status, OutcomeStatus.UPDATED)
        self.assertEqual(outcome.strategies, {str(base): "legacy"})
        self.assertEqual(legacy.calls, ["Foo"])

    def test_location_folder_spelling_kept(self):
        make_nupkg(self.repo_dir, "Pester", "5.0.0")
        lower = self.install_local(self.dir / "r1", "pester", "4.0.0")
        upper = self.install_local(self.dir / "r2", "Pester", "4.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir)
        outcome = UpdatePipeline([plugin]).run([self.decision("Pester", "5.0.0", lower, upper)])[0]

        self.assertEqual(outcome.status, OutcomeStatus.UPDATED)
        self.assertEqual(outcome.updated_paths, [lower, upper])
        self.assertEqual(os.listdir(self.dir / "r1"), ["pester"])
        self.assertTrue((lower / "5.0.0" / "Pester.psd1").is_file())
        self.assertTrue((upper / "5.0.0" / "Pester.psd1").is_file())

    def test_install_exception_is_failure(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir)
        plugin.install = lambda *args: 1 / 0
        outcome = UpdatePipeline([plugin]).run([self.decision("Foo", "1.1.0", base)])[0]
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.failed_paths, [base])


class TestPreProcess(PipelineTestCase):

    def test_missing_location_skipped(self):
        gone = self.modules / "Foo"
        outcome = UpdatePipeline([ScriptedFolderPlugin("Local", self.repo_dir)]).run(
            [self.decision("Foo", "1.1.0", gone)]
        )[0]
        self.assertEqual(outcome.status, OutcomeStatus.SKIPPED)
        self.assertEqual(outcome.skipped_paths, [gone])

    def test_unknown_repository(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        outcome = UpdatePipeline([ScriptedFolderPlugin("Local", self.repo_dir)]).run(
            [self.decision("Foo", "1.1.0", base, repository="Elsewhere")]
        )[0]
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertIn("not configured", outcome.messages[0])

    def test_dry_run(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir)
        outcome = UpdatePipeline([plugin], dry_run=True).run([self.decision("Foo", "1.1.0", base)])[0]
        self.assertEqual(outcome.status, OutcomeStatus.PLANNED)
        self.assertEqual(plugin.calls, [])
        self.assertFalse((base / "1.1.0").exists())

    def test_declined(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir)
        outcome = UpdatePipeline([plugin], confirm=lambda d: False).run(
            [self.decision("Foo", "1.1.0", base)]
        )[0]
        self.assertEqual(outcome.status, OutcomeStatus.DECLINED)
        self.assertEqual(plugin.calls, [])

    def test_confirmation_precedes_every_install(self):
        events = []
        plugin = ScriptedFolderPlugin("Local", self.repo_dir, events=events)
        foo = self.install_local(self.modules, "Foo", "1.0.0")
        psget = self.install_local(self.modules, "PowerShellGet", "2.0.0")

        def confirm(decision):
            events.append(("confirm", decision.name))
            return True

        UpdatePipeline([plugin], confirm=confirm).run([
            self.decision("Foo", "1.1.0", foo),
            self.decision("PowerShellGet", "3.0.0", psget),
        ])
        kinds = [kind for kind, _ in events]
        self.assertEqual(kinds[:2], ["confirm", "confirm"])
        self.assertNotIn("confirm", kinds[2:])

    def test_one_outcome_per_decision_in_order(self):
        foo = self.install_local(self.modules, "Foo", "1.0.0")
        psget = self.install_local(self.modules, "PowerShellGet", "2.0.0")
        decisions = [
            self.decision("PowerShellGet", "3.0.0", psget),
            self.decision("Missing", "1.0.0", self.modules / "Missing"),
            self.decision("Foo", "1.1.0", foo),
        ]
        outcomes = UpdatePipeline([ScriptedFolderPlugin("Local", self.repo_dir)]).run(decisions)
        self.assertEqual([o.name for o in outcomes], ["PowerShellGet", "Missing", "Foo"])


class TestCleanPhase(PipelineTestCase):

    def test_clean_removes_old_versions_only(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        self.install_local(self.modules, "Foo", "0.9.0")
        uninstaller = RecordingUninstaller()
        pipeline = UpdatePipeline(
            [ScriptedFolderPlugin("Local", self.repo_dir)], uninstaller=uninstaller, clean=True,
        )
        outcome = pipeline.run([self.decision("Foo", "1.1.0", base)])[0]

        self.assertEqual(sorted(outcome.cleaned_paths), [base / "0.9.0", base / "1.0.0"])
        self.assertNotIn(base / "1.1.0", outcome.cleaned_paths)
        self.assertEqual(sorted(p.name for p in base.iterdir()), ["1.1.0"])
        self.assertEqual(len(uninstaller.calls), 2)

    def test_clean_keeps_same_base_prerelease_directory(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        write_manifest(base / "2.0.0" / "Foo.psd1", "2.0.0", prerelease="beta1")
        pipeline = UpdatePipeline([ScriptedFolderPlugin("Local", self.repo_dir)], clean=True)
        outcome = pipeline.run([self.decision("Foo", "2.0.0-rc1", base)])[0]
        self.assertEqual(outcome.cleaned_paths, [base / "1.0.0"])
        self.assertEqual(str(read_installed_version(base / "2.0.0", "Foo")), "2.0.0-rc1")

    def test_no_clean_by_default(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        outcome = UpdatePipeline([ScriptedFolderPlugin("Local", self.repo_dir)]).run(
            [self.decision("Foo", "1.1.0", base)]
        )[0]
        self.assertEqual(outcome.cleaned_paths, [])
        self.assertTrue((base / "1.0.0").is_dir())

    def test_do_not_clean(self):
        base = self.install_local(self.modules, "PowerShellGet", "2.0.0")
        pipeline = UpdatePipeline([ScriptedFolderPlugin("Local", self.repo_dir)], clean=True)
        outcome = pipeline.run([self.decision("PowerShellGet", "3.0.0", base)])[0]
        self.assertEqual(outcome.status, OutcomeStatus.UPDATED)
        self.assertEqual(outcome.cleaned_paths, [])
        self.assertTrue((base / "2.0.0").is_dir())

    def test_failed_install_cleans_nothing(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        plugin = ScriptedFolderPlugin("Local", self.repo_dir, refuse=[self.modules])
        outcome = UpdatePipeline([plugin], clean=True).run([self.decision("Foo", "1.1.0", base)])[0]
        self.assertEqual(outcome.cleaned_paths, [])
        self.assertTrue((base / "1.0.0").is_dir())

    def test_uninstaller_raising_still_removes(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        uninstaller = RaisingUninstaller(PermissionError(13, "Permission denied"))
        pipeline = UpdatePipeline(
            [ScriptedFolderPlugin("Local", self.repo_dir)], uninstaller=uninstaller, clean=True,
        )
        outcome = pipeline.run([self.decision("Foo", "1.1.0", base)])[0]

        self.assertEqual(uninstaller.calls, 1)
        self.assertEqual(outcome.status, OutcomeStatus.UPDATED)
        self.assertEqual(outcome.cleaned_paths, [base / "1.0.0"])
        self.assertFalse((base / "1.0.0").exists())

    @patch("modupdate.plugins.powershellget.subprocess.run", side_effect=PermissionError(13, "Permission denied"))
    def test_unrunnable_powershell_uninstaller(self, mock_run):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        uninstaller = PowerShellGetPlugin("PSGallery", {"executable": str(self.dir / "pwsh")})
        pipeline = UpdatePipeline(
            [ScriptedFolderPlugin("Local", self.repo_dir)], uninstaller=uninstaller, clean=True,
        )
        outcomes = pipeline.run([self.decision("Foo", "1.1.0", base)])

        self.assertEqual(len(outcomes), 1)
        self.assertEqual(outcomes[0].cleaned_paths, [base / "1.0.0"])
        mock_run.assert_called_once()

    def test_read_only_version_removed(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        locked = base / "1.0.0" / "Foo.psd1"
        os.chmod(locked, stat.S_IRUSR)
        pipeline = UpdatePipeline(
            [ScriptedFolderPlugin("Local", self.repo_dir)], uninstaller=RecordingUninstaller(), clean=True,
        )
        outcome = pipeline.run([self.decision("Foo", "1.1.0", base)])[0]
        self.assertEqual(outcome.cleaned_paths, [base / "1.0.0"])
        self.assertFalse((base / "1.0.0").exists())


class TestHelpers(PipelineTestCase):

    def test_read_installed_version_prefers_record(self):
        version_dir = self.modules / "Foo" / "1.0.0"
        write_manifest(version_dir / "Foo.psd1", "1.0.0")
        write_record(version_dir / "PSGetModuleInfo.xml", "Foo", "1.0.0-preview3")
        self.assertEqual(str(read_installed_version(version_dir, "Foo")), "1.0.0-preview3")

    def test_read_installed_version_missing(self):
        self.assertIsNone(read_installed_version(self.modules / "Foo" / "1.0.0", "Foo"))

    def test_verify_installed(self):
        base = self.install_local(self.modules, "Foo", "1.0.0")
        self.assertTrue(verify_installed(base, "Foo", parse_version("1.0.0")))
        self.assertFalse(verify_installed(base, "Foo", parse_version("1.0.0-rc1")))
        self.assertFalse(verify_installed(base, "Foo", parse_version("1.1.0")))

    def test_force_remove(self):
        tree = self.dir / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "sub" / "file.txt").write_text("x")
        os.chmod(tree / "sub" / "file.txt", stat.S_IRUSR)
        os.chmod(tree / "sub", stat.S_IRUSR | stat.S_IXUSR)
        force_remove(tree)
        self.assertFalse(tree.exists())


if __name__ == "__main__":
    unittest.main()
