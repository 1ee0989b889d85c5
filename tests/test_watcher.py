from pathlib import Path
from types import SimpleNamespace

from sluggy import watcher as watcher_module
from sluggy.config import BuildConfig
from sluggy.watcher import ChangeBatch, ChangeWatcher, Debouncer, _EventHandler


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_watcher(tmp_path, clock=None, **overrides):
    config = BuildConfig.from_mapping(overrides, tmp_path)
    return ChangeWatcher(config, debounce_window=0.25, clock=clock or FakeClock())


def test_debouncer_coalesces_bursts():
    clock = FakeClock()
    debouncer = Debouncer(0.25, clock)
    files = [Path("/site/content/a.md"), Path("/site/content/b.md"), Path("/site/css/main.css")]

    for i in range(50):
        debouncer.add(files[i % 3])
        clock.advance(0.01)
        assert debouncer.flush_due() is None

    clock.advance(0.2)
    assert debouncer.flush_due() is None
    assert 0 < debouncer.time_until_due() <= 0.25

    clock.advance(0.1)
    batch = debouncer.flush_due()
    assert batch == ChangeBatch(tuple(sorted(files)))
    assert len(batch) == 3
    assert debouncer.flush_due() is None
    assert debouncer.time_until_due() is None


def test_events_after_flush_start_a_new_batch():
    clock = FakeClock()
    debouncer = Debouncer(0.25, clock)
    debouncer.add(Path("/a"))
    clock.advance(1)
    assert list(debouncer.flush_due()) == [Path("/a")]

    debouncer.add(Path("/b"))
    clock.advance(0.3)
    assert list(debouncer.flush_due()) == [Path("/b")]


def test_record_applies_ignore_rules(tmp_path):
    clock = FakeClock()
    watcher = make_watcher(tmp_path, clock, ignore=["*.log", "content/private/*"])
    root = watcher.config.source_root

    watcher.record(root / "out" / "index.html")
    watcher.record(root / "content" / "node_modules" / "x.js")
    watcher.record(root / "content" / ".git" / "HEAD")
    watcher.record(root / "content" / "debug.log")
    watcher.record(root / "content" / "private" / "notes.md")
    watcher.record(root / "content" / "index.md")

    clock.advance(1)
    assert watcher.pump() == ChangeBatch((root / "content" / "index.md",))
    assert watcher.batches.get_nowait() == ChangeBatch((root / "content" / "index.md",))
    assert watcher.pump() is None


def test_event_handler_records_moves(tmp_path):
    clock = FakeClock()
    watcher = make_watcher(tmp_path, clock)
    handler = _EventHandler(watcher)
    root = watcher.config.source_root
    old = str(root / "content" / "old.md")
    new = str(root / "content" / "new.md")

    handler.on_any_event(
        SimpleNamespace(event_type="moved", is_directory=False, src_path=old, dest_path=new)
    )
    handler.on_any_event(
        SimpleNamespace(event_type="modified", is_directory=True, src_path=str(root / "content"), dest_path="")
    )
    handler.on_any_event(
        SimpleNamespace(event_type="closed", is_directory=False, src_path=new, dest_path="")
    )

    clock.advance(1)
    assert watcher.pump().paths == (Path(new), Path(old))


def test_start_schedules_existing_source_dirs(monkeypatch, tmp_path):
    scheduled = []

    class DummyObserver:
        def schedule(self, handler, path, recursive=False):
            scheduled.append((path, recursive))

        def start(self):
            pass

        def stop(self):
            pass

        def join(self):
            pass

    monkeypatch.setattr(watcher_module, "Observer", DummyObserver)
    (tmp_path / "content").mkdir()
    (tmp_path / "templates").mkdir()

    with make_watcher(tmp_path) as watcher:
        assert watcher._flusher is not None
    assert sorted(scheduled) == [
        (str(tmp_path.resolve() / "content"), True),
        (str(tmp_path.resolve() / "templates"), True),
    ]
    assert watcher._observer is None
