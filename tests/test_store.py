"""
Tests for the sqlite history store.
"""

import sqlite3
from datetime import datetime

import pytest

from ptguard.errors import PersistenceFailure, SnapshotNotFound
from ptguard.snapshot import Snapshot
from ptguard import store as store_module
from ptguard.store import HistoryStore

from tests.conftest import MB, T0, snap


class TestSaveAndQuery:
    def test_save_assigns_id(self, store):
        saved = store.save(snap(10, 5, 2.0))
        assert saved.id is not None
        assert saved.up == 10 * MB

    def test_most_recent_newest_first(self, store):
        for i in range(4):
            store.save(snap(10 + i, 5, 2.0, T0 + i * 60))
        entries = store.most_recent("alpha", 2)
        assert [e.timestamp for e in entries] == [T0 + 180, T0 + 120]

    def test_most_recent_empty_raises(self, store):
        with pytest.raises(SnapshotNotFound):
            store.most_recent("alpha", 1)

    def test_most_recent_ignores_synthetic_entries(self, store):
        store.save(snap(10, 5, 2.0, T0))
        store.save(Snapshot(tracker="alpha", up=1, down=1, ratio=1.0, timestamp=T0 + 60,
                            collected=False, start_of_day=True))
        entries = store.most_recent("alpha", 5)
        assert len(entries) == 1
        assert entries[0].collected

    def test_trackers_are_separate(self, store):
        store.save(snap(10, 5, 2.0, tracker="alpha"))
        store.save(snap(10, 5, 2.0, tracker="beta"))
        assert store.count("alpha") == 1
        assert store.count("beta") == 1

    def test_unknown_kind(self, store):
        with pytest.raises(ValueError):
            store.filter_by_tracker("alpha", "start_of_year")

    def test_save_many_round_trip(self, store):
        saved = store.save_many([snap(1, 1, 1.0, T0), snap(2, 1, 2.0, T0 + 1)])
        assert len({s.id for s in saved}) == 2
        assert [s.up for s in store.filter_by_tracker("alpha")] == [MB, 2 * MB]

    def test_previous_collected_by_insertion_order(self, store):
        later = store.save(snap(10, 5, 2.0, T0 + 3600))
        earlier = store.save(snap(11, 5, 2.2, T0 - 3600))
        current = store.save(snap(12, 5, 2.4, T0))
        assert store.previous_collected("alpha", current.id).id == earlier.id
        assert store.previous_collected("alpha", earlier.id).id == later.id
        assert store.previous_collected("alpha", later.id) is None

    def test_unwritable_path_fails(self, tmp_path):
        with pytest.raises(PersistenceFailure):
            HistoryStore(str(tmp_path / "missing-dir" / "history.db"))


class TestMigration:
    def test_legacy_rows_upgraded_on_open(self, tmp_path):
        path = str(tmp_path / "history.db")
        HistoryStore(path)
        conn = sqlite3.connect(path)
        conn.execute('''INSERT INTO stats_entries (tracker, up, down, ratio, timestamp, collected, schema_version)
                        VALUES ('alpha', 10, 5, 2.0, ?, 0, 0)''', (T0,))
        conn.commit()
        conn.close()

        store = HistoryStore(path)
        entries = store.most_recent("alpha", 1)
        assert entries[0].collected
        assert entries[0].schema_version == 1

    def test_failed_migration_rolls_back(self, tmp_path, monkeypatch):
        path = str(tmp_path / "history.db")
        HistoryStore(path)
        conn = sqlite3.connect(path)
        conn.execute('''INSERT INTO stats_entries (tracker, up, down, ratio, timestamp, collected, schema_version)
                        VALUES ('alpha', 10, 5, 2.0, ?, 0, 0)''', (T0,))
        conn.commit()
        conn.close()

        def broken(cursor):
            cursor.execute("UPDATE stats_entries SET collected = 1")
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setitem(store_module.MIGRATIONS, 0, broken)
        with pytest.raises(PersistenceFailure):
            HistoryStore(path)
        monkeypatch.undo()

        store = HistoryStore(path)
        entries = store.most_recent("alpha", 1)
        assert entries[0].schema_version == 1
        store.save(snap(20, 5, 4.0, T0 + 60))
        assert store.count("alpha") == 2


class TestAggregates:
    def _ts(self, day, hour=12):
        return datetime(2024, 1, day, hour).timestamp()

    def test_daily_entries(self, store):
        # 2024-01-01 是周一
        store.save(snap(100, 0, 1.0, self._ts(1)))
        store.save(snap(200, 0, 2.0, self._ts(2)))
        store.save(snap(300, 0, 3.0, self._ts(3)))

        added = store.update_aggregates(["alpha"], now=self._ts(3, 18))
        assert added == 2

        daily = store.filter_by_tracker("alpha", "start_of_day")
        assert [d.timestamp for d in daily] == [self._ts(1, 0), self._ts(2, 0)]
        assert daily[0].up == 100 * MB
        assert daily[1].up == 150 * MB
        assert not any(d.collected for d in daily)

        assert len(store.filter_by_tracker("alpha", "start_of_week")) == 1
        assert len(store.filter_by_tracker("alpha", "start_of_month")) == 1

    def test_aggregates_are_idempotent(self, store):
        store.save(snap(100, 0, 1.0, self._ts(1)))
        store.save(snap(200, 0, 2.0, self._ts(2)))
        now = self._ts(3, 1)
        first = store.update_aggregates(["alpha"], now=now)
        assert store.update_aggregates(["alpha"], now=now) == 0
        assert store.count("alpha", "start_of_day") == first

    def test_tracker_without_data_skipped(self, store):
        assert store.update_aggregates(["alpha"], now=T0) == 0


class TestCSV:
    def test_import_semicolon_file(self, store, tmp_path):
        path = tmp_path / "alpha_stats.csv"
        path.write_text(f"{int(T0)};1000;500;2.0\n{int(T0) + 3600};2000;600;3.33\n", encoding="utf-8")
        assert store.import_csv("alpha", str(path)) == 2
        assert not path.exists()
        assert (tmp_path / "alpha_stats.csv.imported").exists()
        entries = store.most_recent("alpha", 5)
        assert entries[0].up == 2000
        assert entries[1].ratio == 2.0

    def test_import_comma_file(self, store, tmp_path):
        path = tmp_path / "alpha_stats.csv"
        path.write_text(f"{int(T0)},1000,500,2.0\n", encoding="utf-8")
        assert store.import_csv("alpha", str(path)) == 1

    def test_import_skips_bad_rows(self, store, tmp_path):
        path = tmp_path / "alpha_stats.csv"
        path.write_text(f"{int(T0)};1000;500;2.0\nbroken;row\n", encoding="utf-8")
        assert store.import_csv("alpha", str(path)) == 1

    def test_import_missing_file(self, store, tmp_path):
        assert store.import_csv("alpha", str(tmp_path / "none.csv")) == 0

    def test_export(self, store, tmp_path):
        store.save(Snapshot(tracker="alpha", up=1000, down=500, ratio=2.0, timestamp=T0))
        store.save(Snapshot(tracker="alpha", up=2000, down=500, ratio=4.0, timestamp=T0 + 60))
        path = tmp_path / "alpha.csv"
        assert store.export_csv("alpha", str(path)) == 2
        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines[0] == f"{int(T0)},1000,500,2.0"
        assert len(lines) == 2
