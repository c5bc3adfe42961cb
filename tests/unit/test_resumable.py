"""
Unit tests for the resumable transfer ledger (chbackup/backup/resumable.py).
"""

import json
import os
import threading

import pytest

from chbackup.backup.resumable import ResumableState


@pytest.fixture
def state_path(tmp_path):
    return str(tmp_path / "backup" / "b1" / "upload.state")


class TestResumableState:
    """Test ledger persistence and lookups."""

    def test_new_ledger_writes_params_header(self, state_path):
        with ResumableState(state_path, params={'table_pattern': '*.*'}):
            pass

        with open(state_path) as f:
            assert json.loads(f.readline()) == {'params': {'table_pattern': '*.*'}}

    def test_done_units_survive_restart(self, state_path):
        """Test N of M units done before a crash are skipped on resume."""
        keys = [f"b1/shadow/db/t/default_{i}.tar.gz" for i in range(1, 6)]

        with ResumableState(state_path, params={'p': 1}) as state:
            for key in keys[:3]:
                state.mark_done(key, 100)
            state.mark_pending(keys[3])

        with ResumableState(state_path, params={'p': 1}) as state:
            assert state.done_count == 3
            assert [state.is_done(k) for k in keys] == [True, True, True, False, False]
            assert state.get_size(keys[0]) == 100

    def test_changed_params_start_fresh(self, state_path):
        with ResumableState(state_path, params={'p': 1}) as state:
            state.mark_done('key', 1)

        with ResumableState(state_path, params={'p': 2}) as state:
            assert state.done_count == 0
            assert not state.is_done('key')

    def test_corrupted_line_is_ignored(self, state_path):
        """Test a torn trailing write doesn't prevent resuming."""
        with ResumableState(state_path, params={}) as state:
            state.mark_done('a', 1)
        with open(state_path, 'a') as f:
            f.write('{"key": "b", "sta')

        with ResumableState(state_path, params={}) as state:
            assert state.is_done('a')
            assert not state.is_done('b')
            state.mark_done('c', 1)

        with ResumableState(state_path, params={}) as state:
            assert state.is_done('c')

    def test_entries_buffered_until_interval(self, state_path):
        """Test entries reach the file on flush, not on every mark."""
        state = ResumableState(state_path, params={}, flush_interval=3600)
        state.mark_done('a', 1)

        with open(state_path) as f:
            assert len(f.read().splitlines()) == 1

        state.flush()
        with open(state_path) as f:
            assert len(f.read().splitlines()) == 2
        state.close()

    def test_zero_interval_flushes_every_entry(self, state_path):
        state = ResumableState(state_path, params={}, flush_interval=0)
        state.mark_done('a', 1)

        with open(state_path) as f:
            assert len(f.read().splitlines()) == 2
        state.close()

    def test_mark_after_close(self, state_path):
        state = ResumableState(state_path)
        state.close()
        state.close()

        with pytest.raises(ValueError, match="closed"):
            state.mark_done('a')

    def test_remove(self, state_path):
        """Test removing the ledger closes it and deletes the file."""
        state = ResumableState(state_path, params={'p': 1})
        state.mark_done('a', 1)

        state.remove()

        assert not os.path.exists(state_path)
        with pytest.raises(ValueError, match="closed"):
            state.mark_done('b')
        with ResumableState(state_path, params={'p': 1}) as fresh:
            assert not fresh.is_done('a')

    def test_concurrent_marks(self, state_path):
        """Test concurrent writers don't lose entries."""
        state = ResumableState(state_path, params={})

        def worker(n):
            for i in range(50):
                state.mark_done(f"{n}/{i}", i)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        state.close()

        with ResumableState(state_path, params={}) as reloaded:
            assert reloaded.done_count == 200
