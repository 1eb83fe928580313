import os
import threading
import time

from syncwatch.monitor.log_watcher import LogFileWatcher, WatcherCursor


class LineCollector:
    def __init__(self):
        self.lines = []
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, lines):
        with self._lock:
            self.calls += 1
            self.lines.extend(lines)


def append(path, text):
    with open(path, "a", encoding="utf-8") as f:
        f.write(text)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_appended_lines_delivered_once_in_order(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("")
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected)

    append(log, "one\ntwo\n")
    assert watcher.poll() == 2
    append(log, "three\n")
    assert watcher.poll() == 1
    assert watcher.poll() == 0

    assert collected.lines == ["one", "two", "three"]


def test_partial_line_is_held_back(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("")
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected)

    append(log, "Starting bi")
    assert watcher.poll() == 0
    append(log, "sync\n")
    watcher.poll()

    assert collected.lines == ["Starting bisync"]


def test_missing_file_is_not_an_error(tmp_path):
    log = tmp_path / "later.log"
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected)

    assert watcher.poll() == 0
    log.write_text("hello\n")
    assert watcher.poll() == 1
    assert collected.lines == ["hello"]


def test_truncation_restarts_from_beginning(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("a fairly long first line\nsecond line\n")
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected)
    watcher.poll()

    with open(log, "w", encoding="utf-8") as f:
        f.write("new\n")
    watcher.poll()

    assert collected.lines == ["a fairly long first line", "second line", "new"]


def test_replacement_is_read_from_start(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("old line\n")
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected)
    watcher.poll()

    replacement = tmp_path / "sync.log.new"
    replacement.write_text("fresh one\nfresh two\n")
    os.replace(replacement, log)
    watcher.poll()

    assert collected.lines == ["old line", "fresh one", "fresh two"]


def test_start_replays_last_lines(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("".join(f"line {i}\n" for i in range(100)))
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected, poll_interval=60, replay_lines=5)

    watcher.start()
    try:
        assert collected.lines == [f"line {i}" for i in range(95, 100)]
        append(log, "after start\n")
        watcher.wake()
        assert wait_for(lambda: collected.lines[-1:] == ["after start"])
    finally:
        watcher.stop()

    assert collected.lines.count("after start") == 1


def test_replayed_lines_use_replay_callback(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("history one\nhistory two\n")
    live = LineCollector()
    replayed = LineCollector()
    watcher = LogFileWatcher(log, live, poll_interval=60, on_replay=replayed)

    watcher.start()
    try:
        append(log, "new line\n")
        watcher.wake()
        assert wait_for(lambda: live.lines == ["new line"])
    finally:
        watcher.stop()

    assert replayed.lines == ["history one", "history two"]
    assert live.lines == ["new line"]


def test_replay_window_skips_cut_line(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("x" * 100 + "\nkept\n")
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected, poll_interval=60, replay_max_bytes=20)

    watcher.start()
    watcher.stop()

    assert collected.lines == ["kept"]


def test_given_cursor_reads_only_new_lines(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("seen\n")
    st = os.stat(log)
    cursor = WatcherCursor(offset=st.st_size, device=st.st_dev, inode=st.st_ino, mtime=st.st_mtime)
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected, cursor=cursor)

    append(log, "new\n")
    watcher.poll()

    assert collected.lines == ["new"]
    assert watcher.cursor.offset == os.stat(log).st_size


def test_no_delivery_after_stop(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("")
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected, poll_interval=0.05)

    watcher.start()
    watcher.stop()
    calls = collected.calls
    append(log, "late\n")

    assert watcher.poll() == 0
    time.sleep(0.2)
    assert collected.calls == calls
    assert "late" not in collected.lines


def test_callback_error_does_not_stop_watching(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("")
    seen = []

    def flaky(lines):
        seen.extend(lines)
        if len(seen) == 1:
            raise RuntimeError("boom")

    watcher = LogFileWatcher(log, flaky)
    append(log, "first\n")
    watcher.poll()
    append(log, "second\n")
    watcher.poll()

    assert seen == ["first", "second"]


def test_start_is_idempotent(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("only\n")
    collected = LineCollector()
    watcher = LogFileWatcher(log, collected, poll_interval=60)

    watcher.start()
    watcher.start()
    watcher.stop()
    watcher.stop()

    assert collected.lines == ["only"]


def test_restart_with_cursor_resumes_exactly(tmp_path):
    log = tmp_path / "sync.log"
    log.write_text("")
    first = LineCollector()
    watcher = LogFileWatcher(log, first)
    append(log, "a\nb\n")
    watcher.poll()
    append(log, "c\npart")
    watcher.poll()
    cursor = watcher.cursor

    # Written while nothing was watching
    append(log, "ial\nd\n")
    second = LineCollector()
    resumed = LogFileWatcher(log, second, cursor=cursor)
    resumed.poll()

    assert first.lines == ["a", "b", "c"]
    assert second.lines == ["partial", "d"]
