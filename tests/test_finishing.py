import io
from html.parser import HTMLParser

import pytest
from PIL import Image

from sluggy.adapters import RenderedOutput
from sluggy.config import BuildConfig
from sluggy.errors import TransformError
from sluggy.finishing import (
    FinishingPipeline,
    HtmlMinifier,
    ImageOptimizer,
    Passthrough,
    ScriptMinifier,
    StylesheetFinisher,
    compress,
    decompress,
)

PAGE = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8">
    <title>Hello</title>
  </head>
  <body>
    <nav class="top main"><a href="/about/">About</a></nav>
    <p id="intro">Hello   <b>World</b> and <i>friends</i></p>
    <ul>
      <li>One</li>
      <li>Two</li>
    </ul>
  </body>
</html>
"""


class TreeCollector(HTMLParser):
    """Flattens a document into comparable events."""

    IGNORED = {"html", "head", "body"}

    def __init__(self):
        super().__init__()
        self.events = []

    def handle_starttag(self, tag, attrs):
        if tag not in self.IGNORED:
            self.events.append(("start", tag, sorted(attrs)))

    def handle_endtag(self, tag):
        if tag not in self.IGNORED:
            self.events.append(("end", tag))

    def handle_data(self, data):
        text = " ".join(data.split())
        if text:
            self.events.append(("text", text))


def tree(html):
    collector = TreeCollector()
    collector.feed(html)
    collector.close()
    return collector.events


DEFAULTED_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <link rel="stylesheet" type="text/css" href="/a.css">
    <script type="text/javascript" src="/app.js"></script>
  </head>
  <body>
    <form action="/search/" method="get"><input type="text" name="q"></form>
  </body>
</html>
"""

# Attributes minify-html omits because they restate the HTML default.
DEFAULT_ATTRIBUTES = {
    ("script", "type", "text/javascript"),
    ("link", "type", "text/css"),
    ("form", "method", "get"),
}


def without_defaults(events):
    cleaned = []
    for event in events:
        if event[0] == "start":
            tag = event[1]
            event = ("start", tag, [(n, v) for n, v in event[2] if (tag, n, v) not in DEFAULT_ATTRIBUTES])
        cleaned.append(event)
    return cleaned


def output(route, content_type, body, entity_id="content/x.md"):
    return RenderedOutput(entity_id, route, content_type, body)


def test_html_minifier_preserves_the_tree():
    minified = HtmlMinifier().process(output("/", "text/html; charset=utf-8", PAGE.encode()))
    assert len(minified) < len(PAGE.encode())
    assert tree(minified.decode()) == tree(PAGE)


def test_html_minifier_only_drops_default_valued_attributes():
    minified = HtmlMinifier().process(
        output("/search/", "text/html; charset=utf-8", DEFAULTED_PAGE.encode())
    ).decode()

    events = tree(minified)
    assert events == without_defaults(tree(DEFAULTED_PAGE))
    assert ("start", "input", [("name", "q"), ("type", "text")]) in events


def test_stylesheet_finisher_validates_and_minifies():
    finisher = StylesheetFinisher()
    css = output("/css/main.css", "text/css", b"body {\n  color : red ;\n}\n/* note */\n")
    minified = finisher.process(css)
    assert minified.startswith(b"body{color:red")
    assert b"note" not in minified
    assert b"\n" not in minified
    assert StylesheetFinisher(minify=False).process(css) == css.body

    broken = output("/css/bad.css", "text/css", b"h1 { color: red; }\nthis is not css", "css/bad.css")
    with pytest.raises(TransformError) as excinfo:
        finisher.process(broken)
    assert excinfo.value.entity_id == "css/bad.css"
    assert "line 2" in str(excinfo.value)


def test_stylesheet_finisher_resolves_browser_targets():
    css = output("/css/app.css", "text/css", b".box {\n  user-select: none;\n}\n", "css/app.css")

    prefixed = StylesheetFinisher(browsers=("safari 13",)).process(css)
    assert b"-webkit-user-select:none" in prefixed
    assert b"\n" not in prefixed

    readable = StylesheetFinisher(minify=False, browsers=("safari 13",)).process(css)
    assert b"-webkit-user-select" in readable

    assert b"-webkit-" not in StylesheetFinisher().process(css)


def test_pipeline_rejects_invalid_browser_queries(tmp_path):
    with pytest.raises(ValueError) as excinfo:
        FinishingPipeline(BuildConfig.from_mapping({"browsers": ["netscape navigator 2"]}, tmp_path))
    assert "browsers" in str(excinfo.value)

    pipeline = FinishingPipeline(BuildConfig.from_mapping({"browsers": "safari 13"}, tmp_path))
    artifact = pipeline.finish(output("/css/app.css", "text/css", b".box { user-select: none; }", "css/app.css"))
    assert b"-webkit-user-select" in artifact.body


def test_script_minifier():
    script = output("/assets/app.js", "application/javascript", b"function add(a, b) {\n  return a + b;\n}\n")
    minified = ScriptMinifier().process(script)
    assert minified.startswith(b"function add(a,b){return a+b")
    assert b"\n" not in minified


def test_image_optimizer_passes_through_unreadable_bytes():
    garbage = output("/logo.png", "image/png", b"not really a png")
    assert ImageOptimizer().process(garbage) == b"not really a png"


def test_image_optimizer_never_grows_images():
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32), (200, 10, 10)).save(buffer, format="PNG", compress_level=0)
    original = buffer.getvalue()

    result = ImageOptimizer().process(output("/red.png", "image/png", original))
    assert len(result) <= len(original)
    with Image.open(io.BytesIO(result)) as img:
        assert img.size == (32, 32)
        assert img.getpixel((0, 0)) == (200, 10, 10)


@pytest.mark.parametrize("encoding", ["br", "gzip", "deflate"])
def test_compress_round_trip(encoding):
    data = b"<p>hello</p>" * 50
    encoded = compress(data, encoding)
    assert len(encoded) < len(data)
    assert decompress(encoded, encoding) == data
    assert compress(data, encoding) == encoded


def test_unknown_encoding_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        compress(b"x", "zstd")
    with pytest.raises(ValueError):
        FinishingPipeline(BuildConfig.from_mapping({"encodings": ["br", "lzma"]}, tmp_path))


def test_pipeline_produces_consistent_variants(tmp_path):
    pipeline = FinishingPipeline(BuildConfig.from_mapping({}, tmp_path))
    artifact = pipeline.finish(output("/", "text/html; charset=utf-8", PAGE.encode(), "content/index.md"))

    assert artifact.route == "/"
    assert artifact.entity_id == "content/index.md"
    assert set(artifact.variants) == {"br", "gzip", "deflate"}
    for encoding, data in artifact.variants.items():
        assert decompress(data, encoding) == artifact.body

    image = pipeline.finish(output("/logo.png", "image/png", b"garbage"))
    assert image.variants == {}
    assert image.body == b"garbage"

    with pytest.raises(ValueError):
        pipeline.finish(output(None, "text/html", b""))


def test_pipeline_without_minify_or_compress(tmp_path):
    config = BuildConfig.from_mapping({"minify": False, "compress": False}, tmp_path)
    pipeline = FinishingPipeline(config)
    page = output("/", "text/html; charset=utf-8", PAGE.encode())

    assert isinstance(pipeline.finisher_for(page), Passthrough)
    artifact = pipeline.finish(page)
    assert artifact.body == PAGE.encode()
    assert artifact.variants == {}
