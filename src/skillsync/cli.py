from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .agents import AGENTS, detect_agent, get_agent
from .autodetect import auto_detect_package
from .client import AccountClient, AuthRequiredError
from .config import Config, apply_env, config_path, load_config, redact_token, save_config
from .edit import (
    build_package_spec,
    is_auto_detect_url,
    new_manifest,
    open_manifest,
    option_value,
    parse_agent_list,
    spec_from_detection,
)
from .errors import IoError, NotFoundError, SkillsyncError, ValidationError
from .manifest import (
    find_dependency,
    global_manifest_path,
    with_agent,
    with_dependency,
    without_dependency,
    write_manifest,
)
from .refs import Alias, GitRef
from .structure import MANIFEST_FILENAME
from .sync import SyncContext, SyncError, SyncOptions, SyncSummary, run_sync


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _runtime_config() -> Config:
    return apply_env(load_config())


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sk",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Sync agent skills declared in agents.toml into coding-agent config directories.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SK_CONFIG_PATH, SK_BASE_URL, SK_TOKEN, SK_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"sk {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="cmd", required=True)

    # sync
    sync = sub.add_parser("sync", help="Install declared skills and remove stale ones")
    sync.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    sync.add_argument("--global", dest="global_scope", action="store_true", help="Use ~/.sk/agents.toml and home dirs")
    sync.add_argument(
        "--agent",
        dest="agents",
        action="append",
        default=[],
        metavar="ID",
        help="Target agent id (repeatable). Overrides [agents] in the manifest.",
    )
    sync.add_argument(
        "--manifest",
        dest="manifests",
        action="append",
        default=[],
        metavar="PATH",
        help="Explicit manifest path (repeatable, earlier wins on conflicts)",
    )
    sync.add_argument("--json", action="store_true", help="Print the summary as JSON")

    # agents
    agents = sub.add_parser("agents", help="List supported agents and whether they are installed")
    agents.add_argument("--json", action="store_true")

    # detect
    detect = sub.add_parser("detect", help="Clone a repository and report what sk would install from it")
    detect.add_argument("url", help="GitHub URL, git@host:path, or https://host/repo.git")
    detect.add_argument("--path", help="Subdirectory inside the repository")
    ref = detect.add_mutually_exclusive_group()
    ref.add_argument("--tag")
    ref.add_argument("--branch")
    ref.add_argument("--rev")
    detect.add_argument("--json", action="store_true")

    # init
    init = sub.add_parser("init", help="Create agents.toml enabling the installed agents")
    init.add_argument("--global", dest="global_scope", action="store_true", help="Create ~/.sk/agents.toml instead")
    init.add_argument("--agents", metavar="IDS", help="Comma-separated agent ids to enable instead of detecting them")

    # pkg
    pkg = sub.add_parser("pkg", help="Add or remove dependencies in agents.toml")
    pkg_sub = pkg.add_subparsers(dest="subcmd", required=True)

    pkg_add = pkg_sub.add_parser(
        "add",
        help="Add a dependency",
        description="Add a dependency as TYPE SPEC (gh, git, path, claude-plugin, registry) or from a repository URL.",
    )
    pkg_add.add_argument("type", metavar="TYPE_OR_URL", help="Package type, or a repository URL to inspect")
    pkg_add.add_argument("spec", nargs="?", help="owner/repo, git URL, local path, plugin@marketplace or name@version")
    pkg_ref = pkg_add.add_mutually_exclusive_group()
    pkg_ref.add_argument("--tag")
    pkg_ref.add_argument("--branch")
    pkg_ref.add_argument("--rev")
    pkg_add.add_argument("--path", help="Subdirectory inside the repository")
    pkg_add.add_argument("--as", dest="alias", metavar="ALIAS", help="Dependency alias (default: derived from SPEC)")
    pkg_add.add_argument("--global", dest="global_scope", action="store_true", help="Edit ~/.sk/agents.toml")
    pkg_add.add_argument("--init", action="store_true", help="Create the manifest if it does not exist")
    pkg_add.add_argument("--sync", action="store_true", help="Run sync after updating the manifest")

    pkg_rm = pkg_sub.add_parser("remove", help="Remove a dependency by alias")
    pkg_rm.add_argument("alias")
    pkg_rm.add_argument("--global", dest="global_scope", action="store_true", help="Edit ~/.sk/agents.toml")
    pkg_rm.add_argument("--sync", action="store_true", help="Run sync after updating the manifest")

    # agent
    agent = sub.add_parser("agent", help="Enable or disable an agent in agents.toml")
    agent_sub = agent.add_subparsers(dest="subcmd", required=True)
    for name, verb in (("add", "Enable"), ("remove", "Disable")):
        agent_cmd = agent_sub.add_parser(name, help=f"{verb} an agent")
        agent_cmd.add_argument("id", help="Agent id, see `sk agents`")
        agent_cmd.add_argument("--global", dest="global_scope", action="store_true", help="Edit ~/.sk/agents.toml")

    # account
    whoami = sub.add_parser("whoami", help="Show the account for the configured token")
    whoami.add_argument("--json", action="store_true")
    sub.add_parser("logout", help="Revoke the configured token and forget it")

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--base-url")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-retries", type=int)
    cfg_set.add_argument("--backoff-s", type=float)
    cfg_set.add_argument("--git-executable")
    cfg_set.add_argument("--max-workers", type=int)

    return p


def _format_summary(summary: SyncSummary) -> str:
    if summary.no_op_reason == "no-agents":
        return "No agents enabled; nothing to do."
    if summary.no_op_reason == "no-dependencies":
        return "No dependencies declared; nothing to do."
    if summary.dry_run:
        return f"Would install {summary.installed} skill(s), remove {summary.removed} stale skill(s)."
    return f"Installed {summary.installed} skill(s), removed {summary.removed} stale skill(s)."


def _run_and_report(options: SyncOptions, *, as_json: bool = False) -> int:
    try:
        with SyncContext(config=_runtime_config()) as ctx:
            summary = run_sync(options, ctx)
    except SyncError as e:
        if as_json:
            _print_json({"ok": False, "error": e.to_dict()})
        print(f"[{e.stage}] {e.message}", file=sys.stderr)
        print("Sync failed.", file=sys.stderr)
        return 1

    if as_json:
        _print_json({"ok": True, "summary": summary.to_dict()})
        return 0

    for warning in summary.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if summary.agents:
        print(f"Agents: {', '.join(summary.agents)}")
    print(_format_summary(summary))
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    options = SyncOptions(
        dry_run=args.dry_run,
        scope="global" if args.global_scope else "local",
        agents=tuple(args.agents),
        manifest_paths=tuple(Path(m) for m in args.manifests),
    )
    return _run_and_report(options, as_json=args.json)


def _sync_after_edit(args: argparse.Namespace, manifest_path: Path) -> int:
    if not args.sync:
        return 0
    return _run_and_report(
        SyncOptions(scope="global" if args.global_scope else "local", manifest_paths=(manifest_path,))
    )


def cmd_init(args: argparse.Namespace) -> int:
    home = Path.home()
    path = global_manifest_path(home) if args.global_scope else Path.cwd() / MANIFEST_FILENAME
    agents = parse_agent_list(args.agents) if args.agents is not None else None
    manifest, warnings = new_manifest(path, agents=agents, home=home)
    for warning in warnings:
        print(f"warning: {warning}", file=sys.stderr)
    write_manifest(manifest, include_empty_agents=True)
    print(f"Created {manifest.path.unwrap()}.")
    if manifest.agents:
        print(f"Agents: {', '.join(manifest.agents)}")
    return 0


def _pkg_add(args: argparse.Namespace) -> int:
    ref = GitRef(
        tag=option_value(args.tag, "--tag"),
        branch=option_value(args.branch, "--branch"),
        rev=option_value(args.rev, "--rev"),
    )
    sub_path = option_value(args.path, "--path")
    alias = option_value(args.alias, "--as")
    if args.spec is not None:
        spec = build_package_spec(args.type, args.spec, alias=alias, ref=ref, path=sub_path)
    elif is_auto_detect_url(args.type):
        with SyncContext(config=_runtime_config()) as ctx:
            result = auto_detect_package(args.type, fetcher=ctx.fetcher, path=sub_path, ref=ref)
        print(f"Detected {result.method} package.")
        spec = spec_from_detection(result, alias=alias, ref=ref, path=sub_path)
    else:
        raise ValidationError("Package spec is required.", field="spec")

    target = open_manifest(global_scope=args.global_scope, cwd=Path.cwd(), home=Path.home(), create=args.init)
    dep_alias, declaration = spec.to_declaration(target.manifest.root)
    current = find_dependency(target.manifest, dep_alias)
    if current is not None and current.declaration == declaration:
        print(f"Dependency already present: {spec.alias}. Manifest: {target.path} (no changes).")
        return _sync_after_edit(args, target.path)

    write_manifest(with_dependency(target.manifest, dep_alias, declaration), include_empty_agents=target.created)
    if target.created:
        print(f"Created {target.path}.")
    print(f"Added dependency: {spec.alias}.")
    return _sync_after_edit(args, target.path)


def _pkg_remove(args: argparse.Namespace) -> int:
    target = open_manifest(global_scope=args.global_scope, cwd=Path.cwd(), home=Path.home())
    alias = Alias(args.alias, field="alias")
    if find_dependency(target.manifest, alias) is None:
        raise NotFoundError(f"Dependency not found: {alias.unwrap()}", target=alias.unwrap())
    write_manifest(without_dependency(target.manifest, alias))
    print(f"Removed dependency: {alias.unwrap()}.")
    return _sync_after_edit(args, target.path)


def cmd_pkg(args: argparse.Namespace) -> int:
    if args.subcmd == "add":
        return _pkg_add(args)
    if args.subcmd == "remove":
        return _pkg_remove(args)
    raise AssertionError("unreachable")


def cmd_agent(args: argparse.Namespace) -> int:
    agent = get_agent(args.id.strip())
    enabled = args.subcmd == "add"
    target = open_manifest(global_scope=args.global_scope, cwd=Path.cwd(), home=Path.home())
    label = f"{agent.display_name} ({agent.id})"
    if target.manifest.agents.get(agent.id) is enabled:
        state = "enabled" if enabled else "disabled"
        print(f"Agent already {state}: {label}. Manifest: {target.path} (no changes).")
        return 0
    write_manifest(with_agent(target.manifest, agent.id, enabled))
    print(f"{'Enabled' if enabled else 'Disabled'} agent: {label}.")
    return 0


def cmd_agents(args: argparse.Namespace) -> int:
    rows: list[dict[str, Any]] = []
    for agent in AGENTS:
        try:
            installed: str = "yes" if detect_agent(agent) else "no"
        except IoError as e:
            installed = f"error: {e}"
        rows.append(
            {
                "id": agent.id,
                "name": agent.display_name,
                "skills_dir": f"{agent.base_path}/{agent.skills_dir}",
                "installed": installed,
            }
        )

    if args.json:
        _print_json(rows)
        return 0

    table = [["ID", "NAME", "SKILLS DIR", "INSTALLED"]]
    for r in rows:
        table.append([r["id"], r["name"], r["skills_dir"], r["installed"]])
    _print_table(table)
    return 0


def cmd_detect(args: argparse.Namespace) -> int:
    ref = GitRef(tag=args.tag, branch=args.branch, rev=args.rev)
    with SyncContext(config=_runtime_config()) as ctx:
        result = auto_detect_package(args.url, fetcher=ctx.fetcher, path=args.path, ref=ref)

    if args.json:
        _print_json(
            {
                "source": {"type": result.source.type, "value": result.source.clone_url()},
                "method": result.method,
                "skills": list(result.skills),
                "marketplace": (
                    {"name": result.marketplace_name, "plugins": list(result.marketplace_plugins)}
                    if result.marketplace_name is not None
                    else None
                ),
            }
        )
        return 0

    print(f"source: {result.source.type} {result.source.clone_url()}")
    print(f"structure: {result.method}")
    if result.marketplace_name is not None:
        print(f"marketplace: {result.marketplace_name}")
        for name in result.marketplace_plugins:
            print(f"  plugin: {name}")
    for name in result.skills:
        print(f"  skill: {name}")
    return 0


def cmd_whoami(args: argparse.Namespace) -> int:
    cfg = _runtime_config()
    with AccountClient(base_url=cfg.base_url, token=cfg.token, timeout_s=cfg.timeout_s) as client:
        account = client.me()
    if args.json:
        _print_json({"email": account.email, "username": account.username})
        return 0
    print(account.username or account.email or "(unknown)")
    return 0


def cmd_logout(args: argparse.Namespace) -> int:
    stored = load_config()
    cfg = apply_env(stored)
    if not cfg.token:
        print("Not logged in.")
        return 0

    revoked = True
    with AccountClient(base_url=cfg.base_url, token=cfg.token, timeout_s=cfg.timeout_s) as client:
        try:
            client.revoke_token()
        except AuthRequiredError:
            # Already invalid on the server; still forget it locally.
            revoked = False

    if stored.token:
        save_config(replace(stored, token=None))
    print("Logged out." if revoked else "Token was already invalid; removed it from config.")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = cfg.__dict__.copy()
        d["token"] = redact_token(cfg.token)
        _print_json(d)
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        updates: dict[str, Any] = {}
        for name in ("base_url", "token", "timeout_s", "max_retries", "backoff_s", "git_executable", "max_workers"):
            value = getattr(args, name)
            if value is not None:
                updates[name] = value
        path = save_config(replace(cfg, **updates))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.cmd == "sync":
            return cmd_sync(args)
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd == "pkg":
            return cmd_pkg(args)
        if args.cmd == "agent":
            return cmd_agent(args)
        if args.cmd == "agents":
            return cmd_agents(args)
        if args.cmd == "detect":
            return cmd_detect(args)
        if args.cmd == "whoami":
            return cmd_whoami(args)
        if args.cmd == "logout":
            return cmd_logout(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except SkillsyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
