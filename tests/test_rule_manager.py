import importlib
import logging
from types import SimpleNamespace


rules = importlib.import_module('core.rules')
rm = importlib.import_module('core.rule_manager')


def _item(completion, private=False, size=0):
    return SimpleNamespace(name='Show.S01E01', completion_percentage=completion, is_private=private, size=size)


def test_single_match_returns_rule():
    low = rules.StallRule(name='low', max_completion_percentage=50)
    high = rules.StallRule(name='high', min_completion_percentage=50)
    manager = rm.RuleManager([low, high], [])
    assert manager.match_stall(_item(10)).name == 'low'
    assert manager.match_stall(_item(90)).name == 'high'
    assert manager.match_slow(_item(90)) is None


def test_no_match_for_other_privacy():
    manager = rm.RuleManager([rules.StallRule(name='pub')], [])
    assert manager.match_stall(_item(10, private=True)) is None


def test_multiple_matches_fail_safe(caplog):
    a = rules.SlowRule(name='a', min_speed='1MB')
    b = rules.SlowRule(name='b', min_speed='1MB', privacy_type=rules.PrivacyType.BOTH)
    manager = rm.RuleManager([], [a, b])
    with caplog.at_level(logging.WARNING):
        assert manager.match_slow(_item(30)) is None
    assert 'multiple slow rules matched (a, b)' in caplog.text


def test_disabled_rules_never_match():
    manager = rm.RuleManager([rules.StallRule(name='off', enabled=False)], [])
    assert manager.match_stall(_item(10)) is None
