import json
import tempfile
import unittest
from pathlib import Path

from skillsync.errors import DetectionError
from skillsync.refs import AbsolutePath
from skillsync.structure import (
    ManifestStructure,
    MarketplaceStructure,
    PluginStructure,
    SingleStructure,
    SubdirStructure,
    detect_structure,
    structure_kind,
)


def _skill(d: Path, name: str) -> None:
    d.mkdir(parents=True, exist_ok=True)
    (d / "SKILL.md").write_text(f"---\nname: {name}\n---\n", encoding="utf-8")


def _detect(root: Path):
    return detect_structure(AbsolutePath(str(root)))


class TestDetectStructure(unittest.TestCase):
    def test_manifest_wins_over_plugin(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "agents.toml").write_text("", encoding="utf-8")
            (root / ".claude-plugin").mkdir()
            (root / ".claude-plugin" / "plugin.json").write_text("{}", encoding="utf-8")
            _skill(root / "skills" / "one", "one")

            structure = _detect(root)

        self.assertIsInstance(structure, ManifestStructure)
        self.assertEqual(structure_kind(structure), "manifest")

    def test_plugin_with_skills_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".claude-plugin").mkdir()
            (root / ".claude-plugin" / "plugin.json").write_text("{}", encoding="utf-8")
            (root / "skills").mkdir()

            structure = _detect(root)

        self.assertIsInstance(structure, PluginStructure)
        assert isinstance(structure, PluginStructure)
        self.assertEqual(structure.skills_dir, root / "skills")

    def test_plugin_without_skills_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".claude-plugin").mkdir()
            (root / ".claude-plugin" / "plugin.json").write_text("{}", encoding="utf-8")

            structure = _detect(root)

        assert isinstance(structure, PluginStructure)
        self.assertIsNone(structure.skills_dir)

    def test_marketplace(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".claude-plugin").mkdir()
            (root / ".claude-plugin" / "marketplace.json").write_text(
                json.dumps({"name": "m", "plugins": []}), encoding="utf-8"
            )

            structure = _detect(root)

        self.assertIsInstance(structure, MarketplaceStructure)

    def test_plugin_dir_without_known_files_is_an_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".claude-plugin").mkdir()
            with self.assertRaises(DetectionError):
                _detect(root)

    def test_subdirs_are_sorted_and_ignored_dirs_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _skill(root / "zeta", "zeta")
            _skill(root / "alpha", "alpha")
            _skill(root / "node_modules", "vendored")
            (root / "docs").mkdir()

            structure = _detect(root)

        assert isinstance(structure, SubdirStructure)
        self.assertEqual([p.name for p in structure.skill_dirs], ["alpha", "zeta"])

    def test_single_skill_fallback(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _skill(root, "solo")

            structure = _detect(root)

        self.assertIsInstance(structure, SingleStructure)

    def test_missing_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(DetectionError):
                _detect(Path(td) / "nope")

    def test_file_is_not_a_package(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            f = Path(td) / "file.txt"
            f.write_text("x", encoding="utf-8")
            with self.assertRaises(DetectionError):
                _detect(f)


if __name__ == "__main__":
    unittest.main()
