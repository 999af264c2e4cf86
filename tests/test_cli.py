import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from skillsync.autodetect import AutoDetectResult, GithubSource
from skillsync.cli import build_parser, main
from skillsync.client import Account
from skillsync.config import Config
from skillsync.manifest import load_manifest
from skillsync.refs import AbsolutePath, ClaudePluginDeclaration, GithubDeclaration, GithubRef, GitRef, NonEmptyString
from skillsync.sync import SyncError, SyncOptions, SyncSummary


def _summary(**overrides) -> SyncSummary:
    values = dict(agents=("claude-code",), dry_run=False, installed=2, removed=1, packages=1, manifests=1)
    values.update(overrides)
    return SyncSummary(**values)


class TestParser(unittest.TestCase):
    def test_sync_flags(self) -> None:
        args = build_parser().parse_args(["sync", "--dry-run", "--global", "--agent", "codex", "--agent", "factory"])
        self.assertTrue(args.dry_run)
        self.assertTrue(args.global_scope)
        self.assertEqual(args.agents, ["codex", "factory"])

    def test_detect_refs_are_exclusive(self) -> None:
        with patch("sys.stderr", new=io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["detect", "https://github.com/o/r", "--tag", "v1", "--branch", "main"])


class TestSyncCommand(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch("skillsync.cli.load_config", return_value=Config())
        patcher.start()
        self.addCleanup(patcher.stop)
        ctx_patcher = patch("skillsync.cli.SyncContext")
        ctx_patcher.start()
        self.addCleanup(ctx_patcher.stop)

    def test_prints_summary(self) -> None:
        with (
            patch("skillsync.cli.run_sync", return_value=_summary(warnings=("heads up",))) as run,
            patch("sys.stdout", new=io.StringIO()) as stdout,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = main(["sync", "--agent", "codex"])

        self.assertEqual(rc, 0)
        options: SyncOptions = run.call_args.args[0]
        self.assertEqual(options.agents, ("codex",))
        self.assertEqual(options.scope, "local")
        self.assertIn("Installed 2 skill(s), removed 1 stale skill(s).", stdout.getvalue())
        self.assertIn("warning: heads up", stderr.getvalue())

    def test_dry_run_wording(self) -> None:
        with (
            patch("skillsync.cli.run_sync", return_value=_summary(dry_run=True)),
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            rc = main(["sync", "--dry-run"])
        self.assertEqual(rc, 0)
        self.assertIn("Would install 2 skill(s), remove 1 stale skill(s).", stdout.getvalue())

    def test_json_summary(self) -> None:
        with (
            patch("skillsync.cli.run_sync", return_value=_summary(no_op_reason="no-dependencies", installed=0)),
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            rc = main(["sync", "--json"])
        self.assertEqual(rc, 0)
        payload = json.loads(stdout.getvalue())
        self.assertTrue(payload["ok"])
        self.assertEqual(payload["summary"]["no_op_reason"], "no-dependencies")

    def test_stage_error(self) -> None:
        with (
            patch("skillsync.cli.run_sync", side_effect=SyncError("fetch", "Unable to clone x")),
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = main(["sync"])
        self.assertEqual(rc, 1)
        self.assertIn("[fetch] Unable to clone x", stderr.getvalue())
        self.assertIn("Sync failed.", stderr.getvalue())


class TestOtherCommands(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.config_file = Path(self._td.name) / "config.json"
        env = patch.dict(os.environ, {"SK_CONFIG_PATH": str(self.config_file)})
        env.start()
        self.addCleanup(env.stop)
        for name in ("SK_TOKEN", "SK_BASE_URL", "SK_TIMEOUT_S"):
            os.environ.pop(name, None)

    def test_agents_json(self) -> None:
        with (
            patch("skillsync.cli.detect_agent", side_effect=lambda a: a.id == "codex"),
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            rc = main(["agents", "--json"])
        self.assertEqual(rc, 0)
        rows = json.loads(stdout.getvalue())
        self.assertEqual([r["id"] for r in rows], ["claude-code", "codex", "opencode", "factory"])
        self.assertEqual([r["installed"] for r in rows], ["no", "yes", "no", "no"])

    def test_detect_rejects_unsupported_url(self) -> None:
        with patch("sys.stderr", new=io.StringIO()) as stderr:
            rc = main(["detect", "owner/repo"])
        self.assertEqual(rc, 1)
        self.assertIn("Unsupported URL format", stderr.getvalue())

    def test_config_set_and_show_redacts_token(self) -> None:
        with patch("sys.stdout", new=io.StringIO()):
            self.assertEqual(main(["config", "set", "--token", "tok_1234567890", "--timeout-s", "5"]), 0)
        with patch("sys.stdout", new=io.StringIO()) as stdout:
            self.assertEqual(main(["config", "show"]), 0)
        shown = json.loads(stdout.getvalue())
        self.assertEqual(shown["token"], "tok_12...7890")
        self.assertEqual(shown["timeout_s"], 5.0)
        self.assertEqual(json.loads(self.config_file.read_text(encoding="utf-8"))["token"], "tok_1234567890")

    def test_whoami(self) -> None:
        client = MagicMock()
        client.__enter__.return_value = client
        client.me.return_value = Account(email="a@example.com", username="ada")
        with (
            patch("skillsync.cli.AccountClient", return_value=client) as client_cls,
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            os.environ["SK_TOKEN"] = "tok"
            try:
                rc = main(["whoami"])
            finally:
                os.environ.pop("SK_TOKEN", None)
        self.assertEqual(rc, 0)
        self.assertEqual(client_cls.call_args.kwargs["token"], "tok")
        self.assertEqual(stdout.getvalue().strip(), "ada")

    def test_logout_forgets_stored_token(self) -> None:
        self.config_file.write_text(json.dumps({"token": "tok_abc"}), encoding="utf-8")
        client = MagicMock()
        client.__enter__.return_value = client
        with (
            patch("skillsync.cli.AccountClient", return_value=client),
            patch("sys.stdout", new=io.StringIO()) as stdout,
        ):
            rc = main(["logout"])
        self.assertEqual(rc, 0)
        client.revoke_token.assert_called_once_with()
        self.assertIn("Logged out.", stdout.getvalue())
        self.assertIsNone(json.loads(self.config_file.read_text(encoding="utf-8"))["token"])

class TestManifestCommands(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.home = Path(self._td.name).resolve()
        self.project = self.home / "proj"
        self.project.mkdir()
        self.manifest = self.project / "agents.toml"
        env = patch.dict(os.environ, {"HOME": str(self.home), "SK_CONFIG_PATH": str(self.home / "config.json")})
        env.start()
        self.addCleanup(env.stop)
        self.addCleanup(os.chdir, os.getcwd())
        os.chdir(self.project)

    def _run(self, *argv: str) -> tuple[int, str, str]:
        with (
            patch("sys.stdout", new=io.StringIO()) as stdout,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = main(list(argv))
        return rc, stdout.getvalue(), stderr.getvalue()

    def test_init_with_agents(self) -> None:
        rc, out, _ = self._run("init", "--agents", "codex,factory")
        self.assertEqual(rc, 0)
        self.assertIn(f"Created {self.manifest}.", out)
        self.assertEqual(load_manifest(AbsolutePath(str(self.manifest))).agents, {"codex": True, "factory": True})

        rc, _, err = self._run("init")
        self.assertEqual(rc, 1)
        self.assertIn("Manifest already exists at", err)

    def test_init_without_detected_agents(self) -> None:
        rc, _, err = self._run("init", "--global")
        self.assertEqual(rc, 0)
        self.assertIn("No installed agents detected", err)
        self.assertIn("[agents]", (self.home / ".sk" / "agents.toml").read_text(encoding="utf-8"))
        self.assertFalse(self.manifest.exists())

    def test_pkg_add_and_remove(self) -> None:
        self._run("init", "--agents", "codex")

        rc, out, _ = self._run("pkg", "add", "gh", "acme/skills", "--tag", "v1")
        self.assertEqual(rc, 0)
        self.assertIn("Added dependency: skills.", out)
        rc, out, _ = self._run("pkg", "add", "gh", "acme/skills", "--tag", "v1")
        self.assertIn("Dependency already present: skills.", out)
        self.assertIn("(no changes)", out)
        self._run("pkg", "add", "path", "./vendor/local", "--as", "mine")

        loaded = load_manifest(AbsolutePath(str(self.manifest)))
        self.assertEqual([d.alias.unwrap() for d in loaded.dependencies], ["skills", "mine"])
        expected = GithubDeclaration(gh=GithubRef("acme/skills"), ref=GitRef(tag="v1"))
        self.assertEqual(loaded.dependencies[0].declaration, expected)
        self.assertIn('path = "./vendor/local"', self.manifest.read_text(encoding="utf-8"))

        rc, out, _ = self._run("pkg", "remove", "skills")
        self.assertEqual(rc, 0)
        self.assertIn("Removed dependency: skills.", out)
        rc, _, err = self._run("pkg", "remove", "skills")
        self.assertEqual(rc, 1)
        self.assertIn("Dependency not found: skills", err)

    def test_pkg_add_needs_manifest_unless_init(self) -> None:
        rc, _, err = self._run("pkg", "add", "registry", "tools@1.0.0")
        self.assertEqual(rc, 1)
        self.assertIn("Run `sk init` or pass --init.", err)

        rc, out, _ = self._run("pkg", "add", "registry", "tools@1.0.0", "--init")
        self.assertEqual(rc, 0)
        self.assertIn(f"Created {self.manifest}.", out)
        self.assertIn('tools = "tools@1.0.0"', self.manifest.read_text(encoding="utf-8"))

    def test_pkg_add_rejects_bad_options(self) -> None:
        self._run("init", "--agents", "codex")
        rc, _, err = self._run("pkg", "add", "plugin", "fmt@acme/market", "--tag", "v1")
        self.assertEqual(rc, 1)
        self.assertIn("not valid for Claude plugins", err)
        rc, _, err = self._run("pkg", "add", "gh")
        self.assertEqual(rc, 1)
        self.assertIn("Package spec is required.", err)

    def test_pkg_add_from_url_uses_detection(self) -> None:
        self._run("init", "--agents", "codex")
        detected = AutoDetectResult(
            source=GithubSource(slug="acme/market"),
            method="marketplace",
            marketplace_name="acme",
            marketplace_plugins=("fmt",),
        )
        with (
            patch("skillsync.cli.load_config", return_value=Config()),
            patch("skillsync.cli.SyncContext"),
            patch("skillsync.cli.auto_detect_package", return_value=detected) as detect,
        ):
            rc, out, _ = self._run("pkg", "add", "https://github.com/acme/market")

        self.assertEqual(rc, 0)
        self.assertEqual(detect.call_args.args[0], "https://github.com/acme/market")
        self.assertIn("Added dependency: fmt.", out)
        dep = load_manifest(AbsolutePath(str(self.manifest))).dependencies[0]
        self.assertEqual(
            dep.declaration,
            ClaudePluginDeclaration(marketplace=GithubRef("acme/market"), plugin=NonEmptyString("fmt")),
        )

    def test_pkg_add_then_sync_uses_that_manifest(self) -> None:
        self._run("init", "--agents", "codex")
        with (
            patch("skillsync.cli.load_config", return_value=Config()),
            patch("skillsync.cli.SyncContext"),
            patch("skillsync.cli.run_sync", return_value=_summary()) as run,
        ):
            rc, out, _ = self._run("pkg", "add", "gh", "acme/skills", "--sync")

        self.assertEqual(rc, 0)
        options: SyncOptions = run.call_args.args[0]
        self.assertEqual(options.manifest_paths, (self.manifest,))
        self.assertEqual(options.scope, "local")
        self.assertIn("Installed 2 skill(s)", out)

    def test_agent_add_and_remove(self) -> None:
        self._run("init", "--agents", "codex")

        rc, out, _ = self._run("agent", "add", "codex")
        self.assertEqual(rc, 0)
        self.assertIn("Agent already enabled: Codex (codex).", out)
        rc, out, _ = self._run("agent", "add", "opencode")
        self.assertIn("Enabled agent: OpenCode (opencode).", out)
        rc, out, _ = self._run("agent", "remove", "codex")
        self.assertIn("Disabled agent: Codex (codex).", out)
        agents = load_manifest(AbsolutePath(str(self.manifest))).agents
        self.assertEqual(agents, {"codex": False, "opencode": True})

        rc, _, err = self._run("agent", "add", "nope")
        self.assertEqual(rc, 1)
        self.assertIn("Unknown agent: nope", err)



if __name__ == "__main__":
    unittest.main()
