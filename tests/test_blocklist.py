import importlib

import aiohttp
import pytest
from aioresponses import aioresponses


blocklist = importlib.import_module('core.blocklist')
errors = importlib.import_module('core.errors')


def test_split_patterns_skips_comments_and_compiles_regexes():
    bl = blocklist.split_patterns(['# comment', '', '*.EXE', 'regex:^sample\\.', '  *.iso  '])
    assert bl.patterns == ['*.exe', '*.iso']
    assert [r.pattern for r in bl.regexes] == ['^sample\\.']


def test_invalid_regex_is_a_config_error():
    with pytest.raises(errors.ConfigError):
        blocklist.split_patterns(['regex:(unclosed'])


def test_blacklist_and_whitelist_evaluation():
    ev = blocklist.FilenameEvaluator()
    bl = blocklist.split_patterns(['*.exe', 'regex:sample'])
    assert not ev.is_valid('Movie/setup.EXE', bl)
    assert not ev.is_valid('Movie/Sample.mkv', bl)
    assert ev.is_valid('Movie/movie.mkv', bl)
    wl = blocklist.split_patterns(['*.mkv'])
    wl.type = blocklist.BlocklistType.WHITELIST
    assert ev.is_valid('Movie/movie.mkv', wl)
    assert not ev.is_valid('Movie/readme.txt', wl)
    assert ev.is_valid('anything', None)
    assert ev.is_valid('anything', blocklist.Blocklist())


def test_known_malware_detection():
    ev = blocklist.FilenameEvaluator(['*.scr', 'virus*'])
    assert ev.is_malware('Movie/movie.mkv.lnk')
    assert ev.is_malware('pack.ZIPX')
    assert ev.is_malware('dir/screen.scr')
    assert ev.is_malware('virus.bin')
    assert not ev.is_malware('movie.mkv')


def test_blocklist_type_parse():
    assert blocklist.BlocklistType.parse(None) == blocklist.BlocklistType.BLACKLIST
    assert blocklist.BlocklistType.parse('Whitelist') == blocklist.BlocklistType.WHITELIST
    with pytest.raises(errors.ConfigError):
        blocklist.BlocklistType.parse('greylist')


@pytest.mark.asyncio
async def test_provider_merges_inline_and_file_patterns(tmp_path):
    path = tmp_path / 'sonarr.txt'
    path.write_text('*.exe\n# skip\nregex:sample\n', encoding='utf-8')
    provider = blocklist.BlocklistProvider({
        'sonarr': {'type': 'blacklist', 'patterns': ['*.iso'], 'path': str(path)},
    })
    async with aiohttp.ClientSession() as session:
        loaded = await provider.load_all(session)
    bl = loaded['sonarr']
    assert bl.patterns == ['*.iso', '*.exe']
    assert len(bl.regexes) == 1
    assert provider.get('radarr') is None


@pytest.mark.asyncio
async def test_provider_fetches_remote_lists_and_survives_failures():
    provider = blocklist.BlocklistProvider({
        'radarr': {'type': 'whitelist', 'path': 'https://lists.example.org/radarr.txt'},
        'lidarr': {'path': 'https://lists.example.org/missing.txt'},
    })
    with aioresponses() as m:
        m.get('https://lists.example.org/radarr.txt', status=200, body='*.mkv\n*.mp4\n')
        m.get('https://lists.example.org/missing.txt', status=404)
        async with aiohttp.ClientSession() as session:
            loaded = await provider.load_all(session)
    assert loaded['radarr'].type == blocklist.BlocklistType.WHITELIST
    assert loaded['radarr'].patterns == ['*.mkv', '*.mp4']
    assert 'lidarr' not in loaded
