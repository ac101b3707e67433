import importlib
from types import SimpleNamespace

import pytest


rules = importlib.import_module('core.rules')


def _item(completion, private=False, size=0):
    return SimpleNamespace(name='x', completion_percentage=completion, is_private=private, size=size)


@pytest.mark.parametrize('lo,hi,completion,expected', [
    (0, 50, 0, True),
    (0, 50, 50, True),
    (0, 50, 50.1, False),
    (50, 100, 50, False),
    (50, 100, 50.01, True),
    (50, 100, 100, True),
    (30, 30, 30, False),
    (0, 0, 0, True),
])
def test_completion_bounds(lo, hi, completion, expected):
    rule = rules.StallRule(name='r', min_completion_percentage=lo, max_completion_percentage=hi)
    assert rule.matches(_item(completion)) is expected


@pytest.mark.parametrize('privacy,private,expected', [
    ('public', False, True),
    ('public', True, False),
    ('private', True, True),
    ('private', False, False),
    ('both', True, True),
    ('both', False, True),
])
def test_privacy_matrix(privacy, private, expected):
    rule = rules.StallRule(name='r', privacy_type=rules.PrivacyType.parse(privacy))
    assert rule.matches(_item(10, private=private)) is expected


@pytest.mark.parametrize('limit,size,expected', [
    (None, 10 ** 12, True),
    ('1 GB', 1024 ** 3 - 1, True),
    ('1 GB', 1024 ** 3, False),
])
def test_slow_rule_size_ceiling(limit, size, expected):
    rule = rules.SlowRule(name='s', min_speed='1 KB', ignore_above_size=limit)
    assert rule.matches(_item(10, size=size)) is expected
