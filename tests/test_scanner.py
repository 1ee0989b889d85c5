import pytest

from sluggy.config import BuildConfig
from sluggy.errors import AmbiguousKindError
from sluggy.scanner import Scanner, SourceKind


def write(root, rel, text="x"):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def make_scanner(tmp_path):
    config = BuildConfig.from_mapping({}, tmp_path)
    return Scanner(config), config.source_root


def test_classify_by_directory(tmp_path):
    scanner, root = make_scanner(tmp_path)

    assert scanner.classify(root / "content" / "post.md") is SourceKind.CONTENT
    assert scanner.classify(root / "content" / "feed.xml.jinja") is SourceKind.CONTENT
    assert scanner.classify(root / "content" / "about.html") is SourceKind.CONTENT
    assert scanner.classify(root / "content" / "diagram.png") is SourceKind.ASSET
    assert scanner.classify(root / "content" / "posts" / "section.yaml") is SourceKind.SECTION
    assert scanner.classify(root / "content" / "posts" / "notes.yaml") is SourceKind.ASSET
    assert scanner.classify(root / "templates" / "base.html") is SourceKind.TEMPLATE
    assert scanner.classify(root / "templates" / "_nav.html") is SourceKind.PARTIAL
    assert scanner.classify(root / "templates" / "partials" / "nav.html") is SourceKind.PARTIAL
    assert scanner.classify(root / "css" / "main.css") is SourceKind.STYLE
    assert scanner.classify(root / "css" / "fonts" / "a.woff2") is SourceKind.ASSET
    assert scanner.classify(root / "data" / "site.yaml") is SourceKind.DATA
    assert scanner.classify(root / "assets" / "app.js") is SourceKind.ASSET
    assert scanner.classify(root / "README.md") is None
    assert scanner.classify(root / "out" / "index.html") is None


def test_classify_rejects_ambiguous_files(tmp_path):
    scanner, root = make_scanner(tmp_path)

    with pytest.raises(AmbiguousKindError):
        scanner.classify(root / "templates" / "notes.md")
    with pytest.raises(AmbiguousKindError):
        scanner.classify(root / "data" / "table.csv")


def test_scan_records_files_and_errors(tmp_path):
    scanner, root = make_scanner(tmp_path)
    write(root, "content/index.md", "# Home")
    write(root, "content/.hidden.md")
    write(root, "content/draft.md~")
    write(root, "templates/default.html", "{{ page_content }}")
    write(root, "templates/notes.md")
    write(root, "data/site.yaml", "title: x")
    write(root, "out/index.html", "built")

    result = scanner.scan()

    assert result.added == ["content/index.md", "data/site.yaml", "templates/default.html"]
    assert [e.entity_id for e in result.errors] == ["templates/notes.md"]
    assert result.errors[0].kind == "AmbiguousKindError"
    assert "templates/notes.md" in result.examined
    record = scanner.files["content/index.md"]
    assert record.kind is SourceKind.CONTENT
    assert record.text == "# Home"
    assert record.path == root / "content" / "index.md"


def test_rescan_reports_only_real_changes(tmp_path):
    scanner, root = make_scanner(tmp_path)
    page = write(root, "content/index.md", "one")
    image = write(root, "content/logo.png", "png")
    scanner.scan()

    assert scanner.rescan([page]).changed == []

    page.write_text("two", encoding="utf-8")
    image.unlink()
    new = write(root, "content/new.md", "new")
    result = scanner.rescan([page, image, new])

    assert result.modified == ["content/index.md"]
    assert result.removed == ["content/logo.png"]
    assert result.added == ["content/new.md"]
    assert "content/logo.png" not in scanner.files


def test_rescan_of_removed_directory_removes_its_files(tmp_path):
    scanner, root = make_scanner(tmp_path)
    write(root, "content/posts/a.md")
    write(root, "content/posts/b.md")
    write(root, "content/index.md")
    scanner.scan()

    for path in (root / "content" / "posts").iterdir():
        path.unlink()
    (root / "content" / "posts").rmdir()
    result = scanner.rescan([root / "content" / "posts"])

    assert result.removed == ["content/posts/a.md", "content/posts/b.md"]
    assert list(scanner.files) == ["content/index.md"]


def test_second_scan_without_changes_is_empty(tmp_path):
    scanner, root = make_scanner(tmp_path)
    write(root, "content/index.md", "# Home")
    scanner.scan()

    second = scanner.scan()
    assert second.changed == []
    assert second.errors == []


def test_scan_requires_source_root(tmp_path):
    config = BuildConfig.from_mapping({}, tmp_path / "missing")
    with pytest.raises(FileNotFoundError):
        Scanner(config).scan()
