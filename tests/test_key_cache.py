"""
Tests for the on-disk key cache.
"""

import json

from core.key_cache import KeyCache


class TestKeyCache:
    def test_missing_file_loads_empty(self, tmp_path):
        assert KeyCache(tmp_path / 'missing.json').load() == []

    def test_save_then_load(self, tmp_path):
        cache = KeyCache(tmp_path / 'keys.json')

        assert cache.save(['sk-a', 'sk-b']) is True
        assert cache.load() == ['sk-a', 'sk-b']

    def test_saved_file_format(self, tmp_path):
        path = tmp_path / 'keys.json'
        KeyCache(path).save(['sk-a'])

        data = json.loads(path.read_text(encoding='utf-8'))
        assert data['keys'] == ['sk-a']
        assert 'updatedAt' in data

    def test_corrupt_file_loads_empty(self, tmp_path):
        path = tmp_path / 'keys.json'
        path.write_text('not json', encoding='utf-8')

        assert KeyCache(path).load() == []

    def test_non_list_keys_ignored(self, tmp_path):
        path = tmp_path / 'keys.json'
        path.write_text(json.dumps({'keys': 'sk-a'}), encoding='utf-8')

        assert KeyCache(path).load() == []

    def test_invalid_entries_dropped(self, tmp_path):
        path = tmp_path / 'keys.json'
        path.write_text(json.dumps({'keys': ['sk-a', 5, '', None, 'sk-b']}), encoding='utf-8')

        assert KeyCache(path).load() == ['sk-a', 'sk-b']

    def test_save_failure_returns_false(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('x', encoding='utf-8')

        assert KeyCache(blocker / 'keys.json').save(['sk-a']) is False
