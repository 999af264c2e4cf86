import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

import httpx

from skillsync.errors import NotFoundError, ParseError, ValidationError
from skillsync.marketplace import MarketplaceResolver, parse_marketplace_json
from skillsync.refs import (
    AbsolutePath,
    Alias,
    ClaudePluginDeclaration,
    GitDeclaration,
    GithubDeclaration,
    GithubRef,
    LocalDeclaration,
    NonEmptyString,
    RemoteMarketplaceUrl,
)
from skillsync.resolve import PackageOrigin, resolve_declaration


def _plugin_package(marketplace, plugin: str, alias: str = "plug"):
    decl = ClaudePluginDeclaration(marketplace=marketplace, plugin=NonEmptyString(plugin))
    origin = PackageOrigin(alias=Alias(alias), manifest_path=AbsolutePath("/work/agents.toml"))
    return resolve_declaration(decl, origin)


def _write_marketplace(root: Path, data: dict) -> None:
    (root / ".claude-plugin").mkdir(parents=True, exist_ok=True)
    (root / ".claude-plugin" / "marketplace.json").write_text(json.dumps(data), encoding="utf-8")


class TestParseMarketplaceJson(unittest.TestCase):
    def test_plugins_keep_declared_order(self) -> None:
        m = parse_marketplace_json(
            json.dumps(
                {
                    "name": " acme ",
                    "metadata": {"pluginRoot": "./plugins"},
                    "plugins": [
                        {"name": "zeta", "source": "./zeta"},
                        {"name": "alpha", "source": {"source": "github", "repo": "acme/alpha"}},
                    ],
                }
            ),
            "/m/.claude-plugin/marketplace.json",
        )
        self.assertEqual(m.name, "acme")
        self.assertEqual(m.plugin_root, "./plugins")
        self.assertEqual([p.name for p in m.plugins], ["zeta", "alpha"])
        self.assertEqual(m.find("alpha").source, {"source": "github", "repo": "acme/alpha"})  # type: ignore[union-attr]
        self.assertIsNone(m.find("missing"))

    def test_plugins_must_be_a_non_empty_array(self) -> None:
        for plugins in ([], None, {"a": 1}):
            with self.assertRaises(ParseError) as ctx:
                parse_marketplace_json(json.dumps({"name": "acme", "plugins": plugins}), "m.json")
            self.assertIn("plugins array", str(ctx.exception))

    def test_plugin_missing_source(self) -> None:
        with self.assertRaises(ParseError) as ctx:
            parse_marketplace_json(json.dumps({"name": "acme", "plugins": [{"name": "x"}]}), "m.json")
        self.assertIn('Marketplace plugin "x" is missing source.', str(ctx.exception))

    def test_invalid_json(self) -> None:
        with self.assertRaises(ParseError):
            parse_marketplace_json("{nope", "m.json")

    def test_missing_name(self) -> None:
        with self.assertRaises(ParseError):
            parse_marketplace_json(json.dumps({"plugins": [{"name": "x", "source": "./x"}]}), "m.json")


class TestMarketplaceResolver(unittest.TestCase):
    def test_local_marketplace_relative_source_becomes_local_package(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_marketplace(
                root,
                {"name": "acme", "metadata": {"pluginRoot": "./plugins"}, "plugins": [{"name": "p", "source": "./p"}]},
            )
            (root / "plugins" / "p").mkdir(parents=True)
            fetcher = Mock()
            resolver = MarketplaceResolver(fetcher=fetcher, http=Mock())

            resolved = resolver.resolve_plugin(_plugin_package(AbsolutePath(td), "p", alias="mine"))

        self.assertEqual(resolved.declaration, LocalDeclaration(path=AbsolutePath(str(root / "plugins" / "p"))))
        self.assertEqual(resolved.prefix, "mine")
        self.assertEqual(resolved.fetch_mode, "symlink")
        fetcher.fetch_repository.assert_not_called()

    def test_github_marketplace_is_cloned_once(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_marketplace(
                root,
                {
                    "name": "acme",
                    "plugins": [
                        {"name": "a", "source": {"source": "github", "repo": "acme/a"}},
                        {"name": "b", "source": {"source": "url", "url": "https://git.example.com/b.git"}},
                    ],
                },
            )
            fetcher = Mock()
            fetcher.fetch_repository.return_value = root
            resolver = MarketplaceResolver(fetcher=fetcher, http=Mock())

            packages = resolver.resolve_all(
                [
                    _plugin_package(GithubRef("acme/marketplace"), "a", alias="a"),
                    _plugin_package(GithubRef("acme/marketplace"), "b", alias="b"),
                ]
            )

        self.assertEqual(packages[0].declaration, GithubDeclaration(gh=GithubRef("acme/a")))
        self.assertIsInstance(packages[1].declaration, GitDeclaration)
        self.assertEqual(packages[1].fetch_mode, "clone")
        fetcher.fetch_repository.assert_called_once_with("https://github.com/acme/marketplace.git", label="marketplace")

    def test_relative_source_in_cloned_marketplace_points_at_repository(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "repo"
            _write_marketplace(
                root,
                {
                    "name": "acme",
                    "metadata": {"pluginRoot": "./plugins"},
                    "plugins": [{"name": "tools", "source": "./tools"}, {"name": "up", "source": "../../elsewhere"}],
                },
            )
            (root / "plugins" / "tools").mkdir(parents=True)
            (Path(td) / "elsewhere").mkdir()
            fetcher = Mock()
            fetcher.fetch_repository.return_value = root
            resolver = MarketplaceResolver(fetcher=fetcher, http=Mock())

            resolved = resolver.resolve_plugin(_plugin_package(GithubRef("acme/market"), "tools"))
            with self.assertRaises(ValidationError):
                resolver.resolve_plugin(_plugin_package(GithubRef("acme/market"), "up"))

        self.assertEqual(resolved.declaration, GithubDeclaration(gh=GithubRef("acme/market"), path="plugins/tools"))
        self.assertEqual(resolved.fetch_mode, "sparse-clone")

    def test_unknown_plugin(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            _write_marketplace(Path(td), {"name": "acme", "plugins": [{"name": "a", "source": "./a"}]})
            resolver = MarketplaceResolver(fetcher=Mock(), http=Mock())
            with self.assertRaises(NotFoundError) as ctx:
                resolver.resolve_plugin(_plugin_package(AbsolutePath(td), "zzz"))
        self.assertIn('does not contain plugin "zzz"', str(ctx.exception))

    def test_remote_marketplace_over_http(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(
                200,
                json={
                    "name": "remote",
                    "plugins": [
                        {"name": "gh", "source": {"source": "github", "repo": "github:acme/gh"}},
                        {"name": "rel", "source": "./rel"},
                    ],
                },
            )

        http = httpx.Client(transport=httpx.MockTransport(handler))
        try:
            resolver = MarketplaceResolver(fetcher=Mock(), http=http, max_retries=0)
            url = RemoteMarketplaceUrl("https://example.com/.claude-plugin/marketplace.json")
            resolved = resolver.resolve_plugin(_plugin_package(url, "gh"))
            with self.assertRaises(ValidationError) as ctx:
                resolver.resolve_plugin(_plugin_package(url, "rel"))
        finally:
            http.close()

        self.assertEqual(resolved.declaration, GithubDeclaration(gh=GithubRef("acme/gh")))
        self.assertIn("relative", str(ctx.exception))
        self.assertEqual(seen, ["https://example.com/.claude-plugin/marketplace.json"])

    def test_non_plugin_packages_pass_through(self) -> None:
        pkg = resolve_declaration(
            GithubDeclaration(gh=GithubRef("o/r")),
            PackageOrigin(alias=Alias("r"), manifest_path=AbsolutePath("/w/agents.toml")),
        )
        resolver = MarketplaceResolver(fetcher=Mock(), http=Mock())
        self.assertIs(resolver.resolve_plugin(pkg), pkg)

    def test_unsupported_source_type(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            _write_marketplace(Path(td), {"name": "acme", "plugins": [{"name": "a", "source": {"source": "npm"}}]})
            resolver = MarketplaceResolver(fetcher=Mock(), http=Mock())
            with self.assertRaises(ValidationError):
                resolver.resolve_plugin(_plugin_package(AbsolutePath(td), "a"))


if __name__ == "__main__":
    unittest.main()
