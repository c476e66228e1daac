import sqlite3
import tempfile
import unittest
from pathlib import Path

from askgate.db_migrations import SqliteMigration, applied_versions, apply_sqlite_migrations
from askgate.history_log import HistoryLog


class TestHistoryLog(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "chat_history.sqlite"
        self.history = HistoryLog(self.db_path)

    def tearDown(self):
        self.history.close()
        self.tmp.cleanup()

    def _backdate(self, row_id, created_at):
        with self.history._connection() as conn:
            conn.execute("UPDATE chat_logs SET created_at = ? WHERE id = ?", (created_at, row_id))

    def test_append_returns_row_id_and_persists_fields(self):
        row_id = self.history.append("alice", "ping", "pong\n", 2)
        self.assertEqual(self.history.count(), 1)
        chats = self.history.list_chats("alice")
        self.assertEqual(len(chats), 1)
        self.assertEqual(chats[0]["id"], row_id)
        self.assertEqual(chats[0]["question"], "ping")
        self.assertEqual(chats[0]["answer"], "pong\n")
        self.assertEqual(chats[0]["duration_seconds"], 2)
        self.assertTrue(chats[0]["created_at"])

    def test_list_users_orders_by_latest_exchange(self):
        a1 = self.history.append("alice", "q1", "a1", 1)
        a2 = self.history.append("alice", "q2", "a2", 1)
        b1 = self.history.append("bob", "q3", "a3", 1)
        self._backdate(a1, "2024-01-01 10:00:00")
        self._backdate(a2, "2024-01-03 10:00:00")
        self._backdate(b1, "2024-01-02 10:00:00")

        users = self.history.list_users()
        self.assertEqual([u["username"] for u in users], ["alice", "bob"])
        self.assertEqual(users[0]["chat_count"], 2)
        self.assertEqual(users[0]["last_chat_time"], "2024-01-03 10:00:00")
        self.assertEqual(users[1]["chat_count"], 1)

    def test_list_chats_newest_first_and_scoped_to_user(self):
        first = self.history.append("alice", "old", "x", 0)
        second = self.history.append("alice", "new", "y", 0)
        self.history.append("bob", "other", "z", 0)
        self._backdate(first, "2024-01-01 00:00:00")
        self._backdate(second, "2024-01-01 00:00:05")

        chats = self.history.list_chats("alice")
        self.assertEqual([c["question"] for c in chats], ["new", "old"])
        self.assertEqual(self.history.list_chats("nobody"), [])

    def test_same_timestamp_falls_back_to_insertion_order(self):
        first = self.history.append("alice", "first", "x", 0)
        second = self.history.append("alice", "second", "y", 0)
        self._backdate(first, "2024-01-01 00:00:00")
        self._backdate(second, "2024-01-01 00:00:00")
        self.assertEqual([c["question"] for c in self.history.list_chats("alice")], ["second", "first"])

    def test_non_ascii_usernames_round_trip(self):
        self.history.append("张三", "你好", "您好", 1)
        self.assertEqual(self.history.list_users()[0]["username"], "张三")
        self.assertEqual(self.history.list_chats("张三")[0]["answer"], "您好")

    def test_reopening_keeps_rows_and_migrations_once(self):
        self.history.append("alice", "q", "a", 0)
        self.history.close()
        self.history = HistoryLog(self.db_path)
        self.assertEqual(self.history.count(), 1)
        with self.history._connection() as conn:
            self.assertEqual(applied_versions(conn, "history_log"), {1})

    def test_closed_log_rejects_writes(self):
        self.history.close()
        with self.assertRaises(RuntimeError):
            self.history.append("alice", "q", "a", 0)


class TestSqliteMigrations(unittest.TestCase):
    def test_pending_migrations_apply_in_version_order(self):
        conn = sqlite3.connect(":memory:")
        seen = []
        migrations = [
            SqliteMigration(version=2, name="second", runner=lambda c: seen.append(2)),
            SqliteMigration(version=1, name="first", statements=("CREATE TABLE t (x INTEGER)",)),
        ]
        self.assertEqual(apply_sqlite_migrations(conn, component="demo", migrations=migrations), [1, 2])
        self.assertEqual(seen, [2])
        self.assertEqual(apply_sqlite_migrations(conn, component="demo", migrations=migrations), [])
        self.assertEqual(applied_versions(conn, "other"), set())
        conn.close()


if __name__ == "__main__":
    unittest.main()
