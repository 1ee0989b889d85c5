import gzip
import threading
from pathlib import Path

import pytest

from sluggy.config import BuildConfig, load_config
from sluggy.errors import BuildError
from sluggy.orchestrator import BuildState, Orchestrator, full_build
from sluggy.utils import hash_bytes

SITE_FILES = {
    "sluggy.yaml": "minify: false\nencodings: [gzip]\nworkers: 4\n",
    "templates/default.html": (
        "<html><head><title>{{ page.title }}</title></head>"
        "<body>{% include '_nav.html' %}{{ page_content }}</body></html>"
    ),
    "templates/_nav.html": "<nav>{{ data.site_name }}</nav>",
    "content/index.md": "# Home\n\nWelcome.\n",
    "content/about.md": "---\ntitle: About\n---\nAbout us.\n",
    "content/posts/2024-01-15-hello.md": "# Hello\n\nFirst post.\n",
    "data/site.yaml": "site_name: Demo\n",
    "css/main.css": "@import '_vars.css';\nbody { color: red; }\n",
    "css/_vars.css": ":root { --gap: 4px; }\n",
}

PAGE_IDS = ["content/about.md", "content/index.md", "content/posts/2024-01-15-hello.md"]


def create_site(root: Path, extra: dict[str, str] | None = None) -> Path:
    files = dict(SITE_FILES)
    files.update(extra or {})
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


def make_orchestrator(root: Path, **kwargs) -> Orchestrator:
    config = BuildConfig.from_mapping(load_config(root), root)
    return Orchestrator(config, **kwargs)


def read_tree(directory: Path) -> dict[str, bytes]:
    return {
        path.relative_to(directory).as_posix(): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }


def test_full_build_writes_pages_styles_and_variants(tmp_path):
    create_site(tmp_path)
    report = full_build(tmp_path)

    assert report.ok, report.errors
    assert report.written == ["/", "/about/", "/css/main.css", "/posts/hello/"]
    out = tmp_path / "out"
    about = (out / "about" / "index.html").read_text(encoding="utf-8")
    assert "<title>About</title>" in about
    assert "<nav>Demo</nav>" in about
    assert "<p>About us.</p>" in about
    assert '<h1 id="home">Home</h1>' in (out / "index.html").read_text(encoding="utf-8")
    assert (out / "posts" / "hello" / "index.html").exists()

    css = (out / "css" / "main.css").read_text(encoding="utf-8")
    assert "@import" not in css
    assert "--gap" in css
    assert "color:red" in css
    assert not (out / "css" / "_vars.css").exists()

    body = (out / "about" / "index.html").read_bytes()
    assert gzip.decompress((out / "about" / "index.html.gz").read_bytes()) == body


def test_full_build_is_byte_identical_across_runs(tmp_path):
    create_site(tmp_path)
    full_build(tmp_path, tmp_path / "first")
    full_build(tmp_path, tmp_path / "second")

    assert read_tree(tmp_path / "first") == read_tree(tmp_path / "second")


def test_repeated_build_in_session_recomputes_nothing(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()

    again = orch.full_build()
    assert again.ok
    assert again.rebuilt == []
    assert again.written == []
    assert again.removed == []
    assert "content/about.md" in again.skipped
    assert orch.stale_routes() == []


def test_partial_change_rebuilds_dependents_once(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()

    nav = orch.config.source_root / "templates" / "_nav.html"
    nav.write_text("<nav>{{ data.site_name }} v2</nav>", encoding="utf-8")
    report = orch.incremental_build([nav])

    assert report.ok
    assert report.rebuilt == sorted(PAGE_IDS + ["templates/_nav.html", "templates/default.html"])
    assert report.written == ["/", "/about/", "/posts/hello/"]
    assert orch.session.cache.computations_for("templates/_nav.html", "render") == 2
    assert orch.session.cache.computations_for("css/main.css", "render") == 1
    assert "Demo v2" in (tmp_path / "out" / "about" / "index.html").read_text(encoding="utf-8")

    full_build(tmp_path, tmp_path / "fresh")
    assert read_tree(tmp_path / "out") == read_tree(tmp_path / "fresh")


def test_data_change_reaches_pages_through_partial(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()

    site_data = orch.config.source_root / "data" / "site.yaml"
    site_data.write_text("site_name: Renamed\n", encoding="utf-8")
    report = orch.incremental_build([site_data])

    assert report.ok
    assert "content/index.md" in report.rebuilt
    assert "<nav>Renamed</nav>" in (tmp_path / "out" / "index.html").read_text(encoding="utf-8")


def test_cycle_is_reported_and_produces_no_artifacts(tmp_path):
    create_site(
        tmp_path,
        {
            "templates/a.html": "{% include 'b.html' %}A",
            "templates/b.html": "{% include 'a.html' %}B",
            "content/loop.md": "---\ntemplate: a.html\n---\nLoop\n",
        },
    )
    report = full_build(tmp_path)

    errors = {e.entity_id: e for e in report.errors}
    assert not report.ok
    for member in ("templates/a.html", "templates/b.html"):
        assert errors[member].kind == "CycleError"
        assert "templates/a.html" in errors[member].message
        assert "templates/b.html" in errors[member].message
    assert "depends on failed entity" in errors["content/loop.md"].message
    assert report.errors_for("content/index.md") == []
    assert [e.kind for e in report.errors_for("templates/a.html")] == ["CycleError"]
    assert not (tmp_path / "out" / "loop").exists()
    assert (tmp_path / "out" / "about" / "index.html").exists()


def test_dangling_template_resolves_once_created(tmp_path):
    create_site(tmp_path, {"content/orphan.md": "---\ntemplate: missing.html\n---\nHi\n"})
    orch = make_orchestrator(tmp_path)
    report = orch.full_build()

    errors = {e.entity_id: e for e in report.errors}
    assert errors["content/orphan.md"].kind == "DanglingReferenceError"
    assert "templates/missing.html" in errors["content/orphan.md"].message
    assert orch.current_artifact("/orphan/") is None

    layout = orch.config.source_root / "templates" / "missing.html"
    layout.write_text("<main>{{ page_content }}</main>", encoding="utf-8")
    report = orch.incremental_build([layout])

    assert report.ok, report.errors
    assert "/orphan/" in report.written
    assert "<main>" in orch.current_artifact("/orphan/").body.decode("utf-8")


def test_removed_source_removes_route_and_files(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()

    about = orch.config.source_root / "content" / "about.md"
    about.unlink()
    report = orch.incremental_build([about])

    assert report.removed == ["/about/"]
    assert orch.current_artifact("/about/") is None
    assert not (tmp_path / "out" / "about").exists()
    assert (tmp_path / "out" / "index.html").exists()


def test_source_error_keeps_previous_artifact(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()
    previous = orch.current_artifact("/about/")

    about = orch.config.source_root / "content" / "about.md"
    about.write_text("---\ntitle: [broken\n---\nx\n", encoding="utf-8")
    report = orch.incremental_build([about])

    assert [e.kind for e in report.errors] == ["FrontMatterError"]
    assert report.errors[0].entity_id == "content/about.md"
    assert orch.current_artifact("/about/") == previous
    assert (tmp_path / "out" / "about" / "index.html").exists()
    assert orch.stale_routes() == []

    about.write_text("---\ntitle: About\n---\nFixed.\n", encoding="utf-8")
    report = orch.incremental_build([about])
    assert report.ok
    assert b"Fixed." in orch.current_artifact("/about/").body


def test_change_during_render_supersedes_commit(tmp_path):
    create_site(tmp_path)
    armed = {"on": False, "fired": 0}
    about = tmp_path.resolve() / "content" / "about.md"

    def on_state(state):
        if armed["on"] and state is BuildState.RENDERING and not armed["fired"]:
            armed["fired"] += 1
            about.write_text("---\ntitle: About\n---\nChanged while rendering.\n", encoding="utf-8")
            orch.notify([about])

    orch = make_orchestrator(tmp_path, on_state=on_state)
    orch.full_build()

    index = orch.config.source_root / "content" / "index.md"
    index.write_text("# Home\n\nUpdated.\n", encoding="utf-8")
    armed["on"] = True
    report = orch.incremental_build([index])

    assert report.superseded == 1
    assert report.ok
    assert not orch.has_pending()
    assert orch.state is BuildState.IDLE
    assert b"Changed while rendering." in orch.current_artifact("/about/").body
    assert b"Updated." in orch.current_artifact("/").body


def test_route_claimed_twice_errors_on_later_id(tmp_path):
    create_site(
        tmp_path,
        {
            "content/a.md": "---\nroute: /same/\n---\nFirst\n",
            "content/b.md": "---\nroute: /same/\n---\nSecond\n",
        },
    )
    report = full_build(tmp_path)

    errors = {e.entity_id: e for e in report.errors}
    assert list(errors) == ["content/b.md"]
    assert "content/a.md" in errors["content/b.md"].message
    assert "First" in (tmp_path / "out" / "same" / "index.html").read_text(encoding="utf-8")


def test_drafts_only_published_when_included(tmp_path):
    create_site(tmp_path, {"content/wip.md": "---\ndraft: true\n---\nWIP\n"})
    full_build(tmp_path)
    assert not (tmp_path / "out" / "wip").exists()

    config = load_config(tmp_path)
    config["include_drafts"] = True
    full_build(tmp_path, config=config)
    assert (tmp_path / "out" / "wip" / "index.html").exists()


def test_snapshot_taken_before_commit_is_unchanged(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()
    snapshot = orch.session.store.snapshot()
    before = snapshot["/about/"].artifact

    about = orch.config.source_root / "content" / "about.md"
    about.write_text("---\ntitle: About\n---\nNew text.\n", encoding="utf-8")
    orch.incremental_build([about])

    assert snapshot["/about/"].artifact is before
    assert orch.current_artifact("/about/") is not before
    with pytest.raises(TypeError):
        snapshot["/about/"] = None


def test_incremental_build_without_prior_build_runs_full(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    report = orch.incremental_build([])
    assert report.ok
    assert orch.current_artifact("/about/") is not None


def test_missing_source_root_raises_build_error(tmp_path):
    with pytest.raises(BuildError) as excinfo:
        full_build(tmp_path / "nowhere", clean_output=False)
    assert isinstance(excinfo.value.original_error, FileNotFoundError)


def test_refuses_to_wipe_source_tree(tmp_path):
    create_site(tmp_path)
    with pytest.raises(BuildError):
        full_build(tmp_path, output_root=tmp_path)
    assert (tmp_path / "content" / "about.md").exists()


def test_single_edit_rewrites_only_its_route(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()
    before = dict(orch.session.store.snapshot())

    about = orch.config.source_root / "content" / "about.md"
    about.write_text("---\ntitle: About\n---\nEdited once.\n", encoding="utf-8")
    report = orch.incremental_build([about])

    assert report.ok
    assert report.rebuilt == ["content/about.md"]
    assert report.written == ["/about/"]
    assert report.removed == []
    after = orch.session.store.snapshot()
    assert set(after) == set(before)
    for route, entry in before.items():
        if route == "/about/":
            continue
        assert after[route] is entry
        assert after[route].cache_key == entry.cache_key
    assert after["/about/"].cache_key != before["/about/"].cache_key
    assert b"Edited once." in after["/about/"].artifact.body


def test_readers_see_whole_artifacts_during_rebuilds(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()
    about = orch.config.source_root / "content" / "about.md"
    committed = {orch.current_artifact("/about/").body}
    observed = set()
    torn = []
    stop = threading.Event()

    def read():
        while not stop.is_set():
            artifact = orch.current_artifact("/about/")
            if hash_bytes(artifact.body) != artifact.content_hash:
                torn.append(artifact)
            elif gzip.decompress(artifact.variants["gzip"]) != artifact.body:
                torn.append(artifact)
            observed.add(artifact.body)

    reader = threading.Thread(target=read)
    reader.start()
    try:
        for n in range(5):
            about.write_text(f"---\ntitle: About\n---\nVersion {n}.\n", encoding="utf-8")
            assert orch.incremental_build([about]).ok
            committed.add(orch.current_artifact("/about/").body)
    finally:
        stop.set()
        reader.join()

    assert torn == []
    assert observed
    assert observed <= committed


def test_current_errors_is_published_at_commit(tmp_path):
    create_site(tmp_path)
    orch = make_orchestrator(tmp_path)
    orch.full_build()
    assert orch.session.current_errors() == ()

    about = orch.config.source_root / "content" / "about.md"
    about.write_text("---\ntitle: [broken\n---\nx\n", encoding="utf-8")
    orch.incremental_build([about])
    published = orch.session.current_errors()

    assert isinstance(published, tuple)
    assert [e.entity_id for e in published] == ["content/about.md"]
    orch.session.errors.clear()
    assert orch.session.current_errors() is published

    about.write_text("---\ntitle: About\n---\nFixed.\n", encoding="utf-8")
    orch.incremental_build([about])
    assert orch.session.current_errors() == ()
    assert [e.entity_id for e in published] == ["content/about.md"]


SECTION_FILES = {
    "content/posts/section.yaml": "title: Posts\nlink_text: Blog\nindex_template: listing.html\n",
    "content/posts/index.md": "---\ntitle: All posts\n---\n",
    "content/posts/second.md": "---\ntitle: Second\ndate: 2024-02-01\n---\nMore.\n",
    "templates/listing.html": (
        "<h1>{{ section.title }}</h1>"
        "<ul>{% for p in section.pages %}<li>{{ p.title }}</li>{% endfor %}</ul>"
    ),
    "content/menu.jinja": (
        "{% for s in sections() %}[{{ s.link_text }}:{{ s|length }}]{% endfor %}"
        "{{ ('posts/second.md'|entry).title }}"
    ),
}


def test_section_index_lists_entries_newest_first(tmp_path):
    create_site(tmp_path, SECTION_FILES)
    orch = make_orchestrator(tmp_path)
    report = orch.full_build()

    assert report.ok, report.errors
    listing = orch.current_artifact("/posts/").body.decode("utf-8")
    assert "<h1>Posts</h1><ul><li>Second</li><li>Hello</li></ul>" in listing
    menu = orch.current_artifact("/menu/").body.decode("utf-8")
    assert "[Blog:2]Second" in menu
    assert "/posts/second/" in report.written


def test_editing_an_entry_rebuilds_its_section_index(tmp_path):
    create_site(tmp_path, SECTION_FILES)
    orch = make_orchestrator(tmp_path)
    orch.full_build()

    second = orch.config.source_root / "content" / "posts" / "second.md"
    second.write_text("---\ntitle: Second, edited\ndate: 2024-02-01\n---\nMore.\n", encoding="utf-8")
    report = orch.incremental_build([second])

    assert report.ok, report.errors
    assert report.written == ["/menu/", "/posts/", "/posts/second/"]
    assert "content/posts/section.yaml" in report.rebuilt
    assert "content/posts/2024-01-15-hello.md" not in report.rebuilt
    assert "<li>Second, edited</li>" in orch.current_artifact("/posts/").body.decode("utf-8")
    assert "Second, edited" in orch.current_artifact("/menu/").body.decode("utf-8")

    full_build(tmp_path, tmp_path / "fresh")
    assert read_tree(tmp_path / "out") == read_tree(tmp_path / "fresh")


def test_section_membership_follows_added_and_removed_entries(tmp_path):
    create_site(tmp_path, SECTION_FILES)
    orch = make_orchestrator(tmp_path)
    orch.full_build()

    third = orch.config.source_root / "content" / "posts" / "third.md"
    third.write_text("---\ntitle: Third\ndate: 2024-03-01\n---\n", encoding="utf-8")
    report = orch.incremental_build([third])
    assert "<li>Third</li><li>Second</li>" in orch.current_artifact("/posts/").body.decode("utf-8")
    assert "/posts/" in report.written

    third.unlink()
    report = orch.incremental_build([third])
    assert report.removed == ["/posts/third/"]
    assert "Third" not in orch.current_artifact("/posts/").body.decode("utf-8")


def test_slug_pattern_shapes_routes_and_follows_manifest_edits(tmp_path):
    create_site(
        tmp_path,
        {
            "content/journal/section.yaml": "slug_pattern: '^(\\d{4})-(\\d{2})-\\d{2}-(?P<slug>.*)'\n",
            "content/journal/2024-03-09-Road-Trip.md": "# Road trip\n",
        },
    )
    orch = make_orchestrator(tmp_path)
    report = orch.full_build()
    assert report.ok, report.errors
    assert "/journal/2024/03/road-trip/" in report.written

    manifest = orch.config.source_root / "content" / "journal" / "section.yaml"
    manifest.write_text("title: Journal\n", encoding="utf-8")
    report = orch.incremental_build([manifest])

    assert report.ok, report.errors
    assert report.removed == ["/journal/2024/03/road-trip/"]
    assert "/journal/road-trip/" in report.written


def test_broken_manifest_fails_its_entries(tmp_path):
    create_site(tmp_path, {"content/posts/section.yaml": "slug_pattern: '(no slug)'\n"})
    report = full_build(tmp_path)

    errors = {e.entity_id: e for e in report.errors}
    assert "content/posts/section.yaml" in errors
    assert "content/posts/section.yaml" in errors["content/posts/2024-01-15-hello.md"].message
    assert (tmp_path / "out" / "about" / "index.html").exists()
