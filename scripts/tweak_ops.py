#!/usr/bin/env python3
"""
Command-line front end for the engine: apply a loadout, undo it, verify it,
or list backups.
"""

import argparse
import json
import sys
from pathlib import Path

# Add the repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from tweakguard.core.config import validate_config
from tweakguard.core.context import build_context
from tweakguard.core.loadout import load_loadout
from tweakguard.core.mutator import as_key
from tweakguard.core.orchestrator import FatalTierFailure, SessionState
from tweakguard.core.schema import TweakGuardError
from tweakguard.core.verify import expectations_from_tiers, verify


def parse_guards(values):
    """Turn `name=true` arguments into a guard registry."""
    guards = {}
    for item in values or []:
        name, sep, raw = item.partition("=")
        if not sep or raw.lower() not in ("true", "false", "1", "0", "yes", "no"):
            raise ValueError(f"Invalid guard '{item}', expected name=true|false")
        guards[name] = raw.lower() in ("true", "1", "yes")
    return guards


def print_session(report, as_json=False):
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return

    for tier in report.tiers:
        print(f"[{tier.status.value.upper()}] {tier.name} ({tier.risk.value}): "
              f"{tier.succeeded} ok, {tier.failed} failed, {tier.skipped} skipped"
              + (f", {tier.planned} planned" if tier.planned else ""))
        for record in tier.records:
            if record.outcome.value == "failed":
                print(f"   ❌ {record.label}: {record.message}")

    print(f"Session {report.session_id}: {report.state.value}")
    if report.restore_point_recommended:
        print(f"⚠️  Risk profile {report.risk_profile.value}: create a system restore point first")
    if report.reboot_reasons:
        print("🔄 Reboot required:")
        for reason in report.reboot_reasons:
            print(f"   - {reason}")


def cmd_apply(ctx, args):
    loadout = load_loadout(args.loadout, parse_guards(args.guard), ctx.services(), ctx.boot_config())
    if args.tier:
        loadout.enable_only(args.tier)

    try:
        report = ctx.orchestrator(dry_run=args.dry_run).apply(loadout.tiers)
    except FatalTierFailure as e:
        print_session(e.report, args.json)
        print(f"❌ {e}")
        return 2

    print_session(report, args.json)
    return 0 if report.state == SessionState.COMPLETED else 1


def cmd_undo(ctx, args):
    keys = [as_key(k) for k in args.key or []]
    actions = []

    if args.loadout:
        loadout = load_loadout(args.loadout, None, ctx.services(), ctx.boot_config(), ignore_guards=True)
        modules = loadout.modules
        if args.module:
            modules = []
            for name in args.module:
                module = loadout.module(name)
                if module is None:
                    print(f"ERROR: Unknown module: {name}")
                    return 1
                modules.append(module)
        for module in modules:
            keys.extend(module.keys)
            actions.extend(module.compensating)

    if not keys and not actions:
        print("ERROR: Nothing to undo, pass --key or a loadout")
        return 1

    report = ctx.rollback().undo(keys, actions)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        for record in report.keys:
            icon = {"restored": "✅", "no_backup": "➖", "failed": "❌"}[record.outcome.value]
            print(f"{icon} {record.key}: {record.outcome.value}" + (f" ({record.message})" if record.message and record.outcome.value == "failed" else ""))
        for action in report.actions:
            print(f"{'✅' if action.success else '❌'} {action.name}" + (f" ({action.message})" if action.message else ""))
        print(f"Restored {report.restored}, no backup {report.no_backup}, failed {report.failed}")
    return 0 if report.success else 1


def cmd_verify(ctx, args):
    loadout = load_loadout(args.loadout, parse_guards(args.guard), ctx.services(), ctx.boot_config())
    if args.tier:
        loadout.enable_only(args.tier)

    report = verify(ctx.store, expectations_from_tiers(loadout.tiers), ctx.logger)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        for result in report.checks:
            icon = {"pass": "✅", "fail": "❌", "skip": "➖"}[result.status.value]
            print(f"{icon} {result.label}" + (f": {result.message}" if result.message else ""))
        print(f"Passed {report.passed}, failed {report.failed}, skipped {report.skipped}")
    return 0 if report.success else 1


def cmd_backups(ctx, args):
    key = as_key(args.key) if args.key else None

    if args.prune is not None:
        if key is None:
            print("ERROR: --prune requires --key")
            return 1
        removed = ctx.backups.prune(key, args.prune)
        print(f"🧹 Removed {removed} backup(s) of {key}")
        return 0

    handles = ctx.backups.list_backups(key)
    if args.json:
        print(json.dumps([
            {"key": str(h.key), "captured_at": h.captured_at.isoformat(), "artifact": h.path.name}
            for h in handles
        ], indent=2))
        return 0

    if not handles:
        print("No backups found")
        return 0
    for handle in handles:
        print(f"{handle.captured_at.isoformat()}  {handle.key}  {handle.path.name}")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        description="Apply, undo and verify reversible configuration loadouts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s apply loadout.json --tier Safe --dry-run
  %(prog)s apply loadout.json --guard is_laptop=false
  %(prog)s undo --loadout loadout.json --module Safe
  %(prog)s undo --key "HKLM\\SOFTWARE\\Example"
  %(prog)s verify loadout.json
  %(prog)s backups --key "HKLM\\SOFTWARE\\Example"

Environment variables:
- STORE_BACKEND=registry|sqlite
- BACKUP_DIR=./data/backups
- BACKUP_POLICY=best_effort|require
        """
    )
    parser.add_argument("--db", help="SQLite store path (sqlite backend)")
    parser.add_argument("--backup-dir", help="Backup artifact directory")
    parser.add_argument("--policy", choices=["best_effort", "require"], help="Backup policy")
    parser.add_argument("--json", action="store_true", help="Print reports as JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    apply_p = sub.add_parser("apply", help="Run the enabled tiers of a loadout")
    apply_p.add_argument("loadout", help="Loadout JSON file")
    apply_p.add_argument("--tier", action="append", help="Enable only these tiers (repeatable)")
    apply_p.add_argument("--guard", action="append", help="Guard value, name=true|false (repeatable)")
    apply_p.add_argument("--dry-run", "-n", action="store_true", help="Report planned steps without writing")
    apply_p.set_defaults(func=cmd_apply)

    undo_p = sub.add_parser("undo", help="Restore keys from their latest backups")
    undo_p.add_argument("--loadout", help="Loadout JSON file whose modules to undo")
    undo_p.add_argument("--module", action="append", help="Only these modules (repeatable)")
    undo_p.add_argument("--key", action="append", help="Extra key to restore (repeatable)")
    undo_p.set_defaults(func=cmd_undo)

    verify_p = sub.add_parser("verify", help="Check that a loadout's values are in place")
    verify_p.add_argument("loadout", help="Loadout JSON file")
    verify_p.add_argument("--tier", action="append", help="Verify only these tiers (repeatable)")
    verify_p.add_argument("--guard", action="append", help="Guard value, name=true|false (repeatable)")
    verify_p.set_defaults(func=cmd_verify)

    backups_p = sub.add_parser("backups", help="List or prune backup artifacts")
    backups_p.add_argument("--key", help="Only this key")
    backups_p.add_argument("--prune", type=int, metavar="KEEP", help="Keep only the newest KEEP backups of --key")
    backups_p.set_defaults(func=cmd_backups)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    issues = validate_config()
    if issues and not args.json:
        print("⚠️  Configuration issues:")
        for issue in issues:
            print(f"   - {issue}")

    try:
        ctx = build_context(db_path=args.db, backup_dir=args.backup_dir, policy=args.policy)
        return args.func(ctx, args)
    except (TweakGuardError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
