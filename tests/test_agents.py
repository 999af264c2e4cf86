import tempfile
import unittest
from pathlib import Path

from skillsync.agents import AGENTS, detect_agent, detect_installed_agents, get_agent, list_agents, resolve_agent
from skillsync.errors import IoError, NotFoundError


class TestAgentRegistry(unittest.TestCase):
    def test_known_agents(self) -> None:
        self.assertEqual([a.id for a in list_agents()], ["claude-code", "codex", "opencode", "factory"])
        self.assertEqual(get_agent("opencode").skills_dir, "skill")

    def test_unknown_agent(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            get_agent("emacs")
        self.assertEqual(str(ctx.exception), "Unknown agent: emacs")

    def test_detection_uses_home_config_dirs(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            (home / ".codex").mkdir()
            (home / ".config" / "opencode").mkdir(parents=True)
            (home / ".factory").write_text("not a dir", encoding="utf-8")

            with self.assertRaises(IoError):
                detect_agent(get_agent("factory"), home=home)
            found, warnings = detect_installed_agents(home=home)

        self.assertEqual([a.id for a in found], ["codex", "opencode"])
        self.assertEqual(len(warnings), 1)
        self.assertIn("Factory", warnings[0])

    def test_resolve_local_and_global(self) -> None:
        claude = get_agent("claude-code")
        local = resolve_agent(claude, scope="local", project_root=Path("/work/proj"), home=Path("/home/u"))
        self.assertEqual(local.root_path, Path("/work/proj/.claude"))
        self.assertEqual(local.skills_path, Path("/work/proj/.claude/skills"))

        opencode = resolve_agent(get_agent("opencode"), scope="global", home=Path("/home/u"))
        self.assertEqual(opencode.skills_path, Path("/home/u/.config/opencode/skill"))

    def test_local_scope_needs_project_root(self) -> None:
        with self.assertRaises(NotFoundError):
            resolve_agent(AGENTS[0], scope="local", project_root=None)


if __name__ == "__main__":
    unittest.main()
