import argparse
import asyncio
import json
import os
import sys
from types import SimpleNamespace
from typing import Any, Dict

import cleaner
from core.config import ConfigAccessor, load_yaml
from core.errors import ConfigError
from core.intervals import RuleIntervalValidator
from core.rule_manager import RuleManager


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _config_path(args) -> str:
    return getattr(args, 'config', None) or _env('CONFIG_PATH', '/app/config.yaml')


def _queue_cleaner(args):
    return ConfigAccessor(load_yaml(_config_path(args))).queue_cleaner()


def cmd_validate(args):
    try:
        qc = _queue_cleaner(args)
        qc.validate()
        ConfigAccessor(load_yaml(_config_path(args))).download_cleaner().validate()
    except ConfigError as e:
        print(f"invalid configuration: {e}")
        for conflict in e.conflicts:
            print(f"  {conflict}")
        sys.exit(1)
    print(
        json.dumps(
            {
                "valid": True,
                "stall_rules": [r.name for r in qc.enabled_stall_rules()],
                "slow_rules": [r.name for r in qc.enabled_slow_rules()],
            },
            indent=2,
        )
    )


def cmd_gaps(args):
    try:
        qc = _queue_cleaner(args)
    except ConfigError as e:
        print(f"invalid configuration: {e}")
        sys.exit(1)
    validator = RuleIntervalValidator()
    print(
        json.dumps(
            {
                "stall": [g.to_dict() for g in validator.find_gaps_in_coverage(qc.enabled_stall_rules())],
                "slow": [g.to_dict() for g in validator.find_gaps_in_coverage(qc.enabled_slow_rules())],
            },
            indent=2,
        )
    )


def load_item(path: str) -> SimpleNamespace:
    with open(path, 'r') as f:
        data: Dict[str, Any] = json.load(f)
    return SimpleNamespace(
        name=str(data.get('name') or ''),
        is_private=bool(data.get('is_private', False)),
        completion_percentage=float(data.get('completion_percentage') or 0.0),
        size=int(data.get('size') or 0),
    )


def cmd_match(args):
    try:
        qc = _queue_cleaner(args)
    except ConfigError as e:
        print(f"invalid configuration: {e}")
        sys.exit(1)
    item = load_item(args.item_json)
    manager = RuleManager(qc.enabled_stall_rules(), qc.enabled_slow_rules())
    stall = manager.match_stall(item)
    slow = manager.match_slow(item)
    print(
        json.dumps(
            {
                "stall_candidates": [r.name for r in manager.stall_rules if r.matches(item)],
                "slow_candidates": [r.name for r in manager.slow_rules if r.matches(item)],
                "stall_rule": stall.name if stall else None,
                "slow_rule": slow.name if slow else None,
            },
            indent=2,
        )
    )


def cmd_once(args):
    cleaner.CONFIG_PATH = _config_path(args)
    summary = asyncio.run(cleaner.main(once=True))
    print(json.dumps(summary or {}, indent=2, default=str))


def main(argv=None):
    ap = argparse.ArgumentParser(description="Arr Queue Cleaner CLI")
    ap.add_argument('--config', help='Path to config.yaml (default: $CONFIG_PATH)')
    sub = ap.add_subparsers(dest='cmd')

    p_validate = sub.add_parser('validate', help='Load and validate the rule configuration')
    p_validate.set_defaults(func=cmd_validate)

    p_gaps = sub.add_parser('gaps', help='Show completion ranges no stall or slow rule covers')
    p_gaps.set_defaults(func=cmd_gaps)

    p_match = sub.add_parser('match', help='Show which rules a download would match')
    p_match.add_argument('item_json', help='Path to item JSON file (name, is_private, completion_percentage, size)')
    p_match.set_defaults(func=cmd_match)

    p_once = sub.add_parser('once', help='Run every enabled job once and print the summary')
    p_once.set_defaults(func=cmd_once)

    args = ap.parse_args(argv)
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == '__main__':
    main()
