import tempfile
import unittest
from pathlib import Path

from skillsync.autodetect import AutoDetectResult, GithubSource, GitSource
from skillsync.edit import (
    PackageSpec,
    build_package_spec,
    is_auto_detect_url,
    new_manifest,
    open_manifest,
    option_value,
    parse_agent_list,
    spec_from_detection,
)
from skillsync.errors import ConflictError, NotFoundError, ValidationError
from skillsync.refs import GitDeclaration, GitRef, GitUrl, LocalDeclaration


class TestBuildPackageSpec(unittest.TestCase):
    def test_github_with_ref_and_path(self) -> None:
        spec = build_package_spec("GitHub", "acme/skills.git", ref=GitRef(tag="v1"), path="packs/core")
        self.assertEqual(spec, PackageSpec("skills", {"gh": "acme/skills.git", "tag": "v1", "path": "packs/core"}))

    def test_git_alias_comes_from_repository_name(self) -> None:
        self.assertEqual(build_package_spec("git", "git@git.example.com:team/tools.git").alias, "tools")
        self.assertEqual(build_package_spec("git", "https://git.example.com/team/x.git/").alias, "x")
        self.assertEqual(build_package_spec("git", "https://git.example.com/team/x.git", alias="mine").alias, "mine")

    def test_local_path(self) -> None:
        spec = build_package_spec("path", "./vendor/my-skills/")
        self.assertEqual(spec, PackageSpec("my-skills", {"path": "./vendor/my-skills/"}))
        with self.assertRaises(ValidationError):
            build_package_spec("local", "./x", ref=GitRef(branch="main"))
        with self.assertRaises(ValidationError):
            build_package_spec("local", "./x", path="sub")

    def test_claude_plugin(self) -> None:
        spec = build_package_spec("plugin", "fmt@acme/market")
        self.assertEqual(spec.alias, "fmt")
        self.assertEqual(spec.value, {"marketplace": "acme/market", "plugin": "fmt", "type": "claude-plugin"})
        for bad in ("fmt", "@acme/market", "fmt@"):
            with self.assertRaises(ValidationError):
                build_package_spec("claude-plugin", bad)
        with self.assertRaises(ValidationError):
            build_package_spec("claude", "fmt@acme/market", ref=GitRef(tag="v1"))

    def test_registry(self) -> None:
        self.assertEqual(build_package_spec("registry", "@acme/tools@^2"), PackageSpec("tools", "@acme/tools@^2"))
        self.assertEqual(build_package_spec("registry", "tools@1.0.0").alias, "tools")
        with self.assertRaises(ValidationError):
            build_package_spec("registry", "tools")

    def test_unknown_type_and_empty_spec(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            build_package_spec("npm", "left-pad")
        self.assertIn("Unsupported package type: npm", str(ctx.exception))
        with self.assertRaises(ValidationError):
            build_package_spec("gh", "   ")

    def test_to_declaration_validates_alias_and_value(self) -> None:
        alias, decl = PackageSpec("x", {"path": "./x"}).to_declaration("/work")
        self.assertEqual(alias.unwrap(), "x")
        assert isinstance(decl, LocalDeclaration)
        self.assertEqual(decl.path.unwrap(), "/work/x")
        with self.assertRaises(ValidationError):
            PackageSpec("a.b", {"path": "./x"}).to_declaration("/work")

    def test_option_value(self) -> None:
        self.assertIsNone(option_value(None, "--tag"))
        self.assertEqual(option_value(" v1 ", "--tag"), "v1")
        with self.assertRaises(ValidationError) as ctx:
            option_value("  ", "--as")
        self.assertIn("--as must not be empty.", str(ctx.exception))

    def test_is_auto_detect_url(self) -> None:
        self.assertTrue(is_auto_detect_url("https://github.com/acme/skills"))
        self.assertTrue(is_auto_detect_url("git@git.example.com:team/x.git"))
        self.assertTrue(is_auto_detect_url("https://git.example.com/team/x.git"))
        self.assertFalse(is_auto_detect_url("gh"))
        self.assertFalse(is_auto_detect_url("https://example.com/page"))


class TestSpecFromDetection(unittest.TestCase):
    def test_plain_repository(self) -> None:
        result = AutoDetectResult(source=GitSource(url="https://git.example.com/team/x"), method="subdir")
        spec = spec_from_detection(result, ref=GitRef(rev="abc123"), path="skills")
        url = "https://git.example.com/team/x"
        self.assertEqual(spec, PackageSpec("x", {"git": url, "rev": "abc123", "path": "skills"}))
        _, decl = spec.to_declaration("/work")
        self.assertEqual(decl, GitDeclaration(url=GitUrl(url), ref=GitRef(rev="abc123"), path="skills"))

    def test_single_plugin_marketplace_is_selected(self) -> None:
        result = AutoDetectResult(
            source=GithubSource(slug="acme/market"),
            method="marketplace",
            marketplace_name="acme",
            marketplace_plugins=("only",),
        )
        spec = spec_from_detection(result)
        self.assertEqual(spec.alias, "only")
        self.assertEqual(spec.value, {"marketplace": "acme/market", "plugin": "only", "type": "claude-plugin"})

    def test_marketplace_needs_a_single_plugin_and_no_ref(self) -> None:
        result = AutoDetectResult(
            source=GithubSource(slug="acme/market"),
            method="marketplace",
            marketplace_name="acme",
            marketplace_plugins=("a", "b"),
        )
        with self.assertRaises(ValidationError) as ctx:
            spec_from_detection(result)
        self.assertIn("multiple plugins (a, b)", str(ctx.exception))
        self.assertIn("sk pkg add plugin <plugin>@acme/market", str(ctx.exception))

        single = AutoDetectResult(
            source=GithubSource(slug="acme/market"),
            method="marketplace",
            marketplace_name="acme",
            marketplace_plugins=("a",),
        )
        with self.assertRaises(ValidationError):
            spec_from_detection(single, ref=GitRef(tag="v1"))


class TestManifestSelection(unittest.TestCase):
    def test_parse_agent_list(self) -> None:
        self.assertEqual([a.id for a in parse_agent_list("codex, claude-code,codex")], ["codex", "claude-code"])
        with self.assertRaises(NotFoundError):
            parse_agent_list("codex,nope")
        with self.assertRaises(ValidationError):
            parse_agent_list(" , ")

    def test_new_manifest_detects_agents(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            manifest, warnings = new_manifest(home / "p" / "agents.toml", home=home)
            self.assertEqual(manifest.agents, {})
            self.assertEqual(warnings, ["No installed agents detected; created manifest with empty [agents]."])

            (home / ".codex").mkdir()
            manifest, warnings = new_manifest(home / "p" / "agents.toml", home=home)
            self.assertEqual(manifest.agents, {"codex": True})
            self.assertEqual(warnings, [])

    def test_new_manifest_refuses_existing_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "agents.toml"
            path.write_text("", encoding="utf-8")
            with self.assertRaises(ConflictError) as ctx:
                new_manifest(path, agents=[], home=Path(td))
        self.assertIn("Manifest already exists at", str(ctx.exception))

    def test_open_manifest_finds_project_from_subdirectory(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            project = home / "proj"
            (project / "src" / "deep").mkdir(parents=True)
            (project / "agents.toml").write_text("[agents]\ncodex = true\n", encoding="utf-8")

            target = open_manifest(global_scope=False, cwd=project / "src" / "deep", home=home)

            self.assertFalse(target.created)
            self.assertEqual(target.path, project / "agents.toml")
            self.assertEqual(target.manifest.agents, {"codex": True})

    def test_open_manifest_missing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            cwd = home / "proj"
            cwd.mkdir()
            with self.assertRaises(NotFoundError) as ctx:
                open_manifest(global_scope=False, cwd=cwd, home=home)
            self.assertIn("Run `sk init` or pass --init.", str(ctx.exception))

            target = open_manifest(global_scope=True, cwd=cwd, home=home, create=True)
            self.assertTrue(target.created)
            self.assertEqual(target.path, home / ".sk" / "agents.toml")
            self.assertFalse(target.path.exists())


if __name__ == "__main__":
    unittest.main()
