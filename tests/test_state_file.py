from __future__ import annotations

import json
import multiprocessing
import os
import tempfile
import unittest

from utils.state_file import StateFileCorruptError, StateFileLockError, read_json, state_file_lock, write_json


def _hold_lock_worker(path: str, ready: multiprocessing.Event, release: multiprocessing.Event) -> None:
    with state_file_lock(path, timeout_seconds=2.0, poll_seconds=0.01):
        ready.set()
        release.wait(2.0)


class StateFileTests(unittest.TestCase):
    def test_write_then_read(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "nested", "purchased.json")
            payload = {"0xabc": {"boughtAt": 1, "buyTxHash": "0x01"}}
            write_json(state_path, payload)
            self.assertEqual(read_json(state_path), payload)
            leftovers = [name for name in os.listdir(os.path.dirname(state_path)) if name.endswith(".tmp")]
            self.assertEqual(leftovers, [])

    def test_read_missing_returns_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            self.assertIsNone(read_json(os.path.join(tmp_dir, "absent.json")))

    def test_read_corrupt_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "purchased.json")
            with open(state_path, "w", encoding="utf-8") as f:
                f.write('{"0xabc": ')
            with self.assertRaises(StateFileCorruptError):
                read_json(state_path)

    def test_bom_prefixed_file_is_read(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "purchased.json")
            with open(state_path, "w", encoding="utf-8-sig") as f:
                json.dump({"k": 1}, f)
            self.assertEqual(read_json(state_path), {"k": 1})

    def test_state_lock_is_exclusive(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "purchased.json")
            ctx = multiprocessing.get_context("spawn")
            ready = ctx.Event()
            release = ctx.Event()
            proc = ctx.Process(target=_hold_lock_worker, args=(state_path, ready, release))
            proc.start()
            try:
                self.assertTrue(ready.wait(5.0), "worker did not acquire state lock in time")
                with self.assertRaises(StateFileLockError):
                    with state_file_lock(state_path, timeout_seconds=0.08, poll_seconds=0.01):
                        pass
            finally:
                release.set()
                proc.join(5.0)
                if proc.is_alive():
                    proc.terminate()
                    proc.join(1.0)
            self.assertEqual(proc.exitcode, 0)


if __name__ == "__main__":
    unittest.main()
