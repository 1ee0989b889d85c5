"""Asset finishing pipeline for Sluggy.

Rendered output passes through exactly one finishing processor, chosen by
content type, and then through compression. The order is fixed: markup or
style minification first, compressed variants last, so every variant encodes
the final bytes.

Key classes:
- HtmlMinifier: minify-html with the document tree preserved.
- StylesheetFinisher: tinycss2 validation, lightningcss target resolution,
  then csscompressor.
- ScriptMinifier: rjsmin.
- ImageOptimizer: Lossless Pillow re-encode, kept only when smaller.
- FinishingPipeline: Selects a processor and produces a BuildArtifact.

Key functions:
- compress / decompress: One encoding of the variant set.
"""

from __future__ import annotations

import gzip
import io
import logging
import zlib
from abc import ABC, abstractmethod

import brotli
import csscompressor
import lightningcss
import minify_html
import rjsmin
import tinycss2
from PIL import Image, UnidentifiedImageError

from .adapters import RenderedOutput
from .config import BuildConfig
from .errors import TransformError
from .store import ENCODING_SUFFIXES, BuildArtifact
from .utils import can_compress, hash_bytes

logger = logging.getLogger(__name__)


def _mime(content_type: str) -> str:
    return content_type.split(";")[0].strip().lower()


class BaseFinisher(ABC):
    """One finishing step for a family of content types."""

    @property
    @abstractmethod
    def priority(self) -> int:
        """Return processor priority (higher = checked first)."""
        ...

    @abstractmethod
    def can_process(self, output: RenderedOutput) -> bool: ...

    @abstractmethod
    def process(self, output: RenderedOutput) -> bytes:
        """Return the finished bytes.

        Raises:
            TransformError: If the transform rejects the input.
        """
        ...


class HtmlMinifier(BaseFinisher):
    """Minifies HTML while keeping every element.

    Closing tags and the html/head opening tags are kept, so the minified
    document parses to the same tree as the input. Attributes survive with
    one exception: minify-html drops attributes spelled out with their
    default value (`type="text/javascript"` on scripts, `type="text/css"`,
    `method="get"`), which does not change how the document behaves.
    `<input type="text">` is kept because CSS attribute selectors match it.
    """

    def __init__(self, minify_css: bool = True):
        self.minify_css = minify_css

    @property
    def priority(self) -> int:
        return 100

    def can_process(self, output: RenderedOutput) -> bool:
        return _mime(output.content_type) == "text/html"

    def process(self, output: RenderedOutput) -> bytes:
        try:
            minified = minify_html.minify(
                output.body.decode("utf-8"),
                keep_closing_tags=True,
                keep_html_and_head_opening_tags=True,
                keep_input_type_text_attr=True,
                minify_css=self.minify_css,
                minify_js=True,
            )
        except Exception as exc:
            raise TransformError(output.entity_id, f"HTML minification failed: {exc}", exc) from exc
        return minified.encode("utf-8")


def validate_css(entity_id: str, css: str) -> None:
    """Check that a stylesheet parses without top-level errors.

    Raises:
        TransformError: Naming the first parse error and its position.
    """
    for node in tinycss2.parse_stylesheet(css, skip_comments=True, skip_whitespace=True):
        if node.type == "error":
            raise TransformError(
                entity_id,
                f"invalid CSS at line {node.source_line}, column {node.source_column}: "
                f"{node.message}",
            )


def resolve_targets(entity_id: str, css: str, browsers: tuple[str, ...]) -> str:
    """Prefix and lower a stylesheet for a browserslist target set.

    Args:
        entity_id: Stylesheet id, used in error messages.
        css: Stylesheet text.
        browsers: Browserslist queries, e.g. ``("> 0.2% and not dead",)``.

    Returns:
        The stylesheet with vendor prefixes and syntax lowering applied for
        the targets, pretty-printed.

    Raises:
        TransformError: If lightningcss rejects the stylesheet or the queries.
    """
    try:
        return lightningcss.process_stylesheet(
            css,
            filename=entity_id,
            browsers_list=list(browsers),
            minify=False,
        )
    except ValueError as exc:
        raise TransformError(entity_id, f"CSS target resolution failed: {exc}", exc) from exc


def check_browsers(browsers: tuple[str, ...]) -> None:
    """Raise ValueError if lightningcss cannot resolve the browser queries."""
    if browsers:
        lightningcss.process_stylesheet("", browsers_list=list(browsers), minify=True)


class StylesheetFinisher(BaseFinisher):
    """Validates stylesheets, resolves them against the target browsers and
    minifies them with csscompressor.

    An empty ``browsers`` tuple skips target resolution.
    """

    def __init__(self, minify: bool = True, browsers: tuple[str, ...] = ()):
        self.minify = minify
        self.browsers = tuple(browsers)

    @property
    def priority(self) -> int:
        return 90

    def can_process(self, output: RenderedOutput) -> bool:
        return _mime(output.content_type) == "text/css"

    def process(self, output: RenderedOutput) -> bytes:
        css = output.body.decode("utf-8")
        validate_css(output.entity_id, css)
        if self.browsers:
            css = resolve_targets(output.entity_id, css, self.browsers)
        if not self.minify:
            return css.encode("utf-8") if self.browsers else output.body
        minified = csscompressor.compress(css)
        validate_css(output.entity_id, minified)
        return minified.encode("utf-8")


class ScriptMinifier(BaseFinisher):
    """Minifies JavaScript with rjsmin."""

    @property
    def priority(self) -> int:
        return 80

    def can_process(self, output: RenderedOutput) -> bool:
        return _mime(output.content_type) in ("application/javascript", "text/javascript")

    def process(self, output: RenderedOutput) -> bytes:
        try:
            text = output.body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TransformError(output.entity_id, "script is not valid UTF-8", exc) from exc
        return rjsmin.jsmin(text).encode("utf-8")


class ImageOptimizer(BaseFinisher):
    """Re-encodes PNG and JPEG images losslessly with Pillow.

    The original bytes are kept when re-encoding does not make them smaller
    or Pillow cannot read the image.
    """

    FORMATS = {"image/png": "PNG", "image/jpeg": "JPEG"}

    @property
    def priority(self) -> int:
        return 70

    def can_process(self, output: RenderedOutput) -> bool:
        return _mime(output.content_type) in self.FORMATS

    def process(self, output: RenderedOutput) -> bytes:
        image_format = self.FORMATS[_mime(output.content_type)]
        try:
            with Image.open(io.BytesIO(output.body)) as img:
                buffer = io.BytesIO()
                options = {"optimize": True}
                if image_format == "JPEG":
                    options["quality"] = "keep"
                img.save(buffer, format=image_format, **options)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.warning("Could not optimise %s, copying as-is: %s", output.entity_id, exc)
            return output.body
        optimised = buffer.getvalue()
        return optimised if len(optimised) < len(output.body) else output.body


class Passthrough(BaseFinisher):
    """Fallback for everything else."""

    @property
    def priority(self) -> int:
        return 0

    def can_process(self, output: RenderedOutput) -> bool:
        return True

    def process(self, output: RenderedOutput) -> bytes:
        return output.body


def compress(data: bytes, encoding: str) -> bytes:
    """Encode ``data``; gzip output carries mtime 0 so it is byte-stable.

    Raises:
        ValueError: For an unknown encoding.
    """
    if encoding == "br":
        return brotli.compress(data, quality=11)
    if encoding == "gzip":
        return gzip.compress(data, compresslevel=9, mtime=0)
    if encoding == "deflate":
        return zlib.compress(data, 9)
    raise ValueError(f"Unknown encoding {encoding!r}")


def decompress(data: bytes, encoding: str) -> bytes:
    if encoding == "br":
        return brotli.decompress(data)
    if encoding == "gzip":
        return gzip.decompress(data)
    if encoding == "deflate":
        return zlib.decompress(data)
    raise ValueError(f"Unknown encoding {encoding!r}")


class FinishingPipeline:
    """Turns RenderedOutput into BuildArtifacts.

    Attributes:
        config: Build configuration; its switches enable each stage.
    """

    def __init__(self, config: BuildConfig):
        unknown = [e for e in config.encodings if e not in ENCODING_SUFFIXES]
        if unknown:
            raise ValueError(f"Unknown encodings in configuration: {', '.join(unknown)}")
        try:
            check_browsers(config.browsers)
        except ValueError as exc:
            raise ValueError(f"Invalid browsers in configuration: {exc}") from exc
        self.config = config
        self._finishers: list[BaseFinisher] = []
        if config.minify:
            self._finishers.append(HtmlMinifier(minify_css=config.minify_css))
            self._finishers.append(ScriptMinifier())
            self._finishers.append(ImageOptimizer())
        self._finishers.append(
            StylesheetFinisher(minify=config.minify_css, browsers=config.browsers)
        )
        self._finishers.append(Passthrough())
        self._finishers.sort(key=lambda f: f.priority, reverse=True)

    def finisher_for(self, output: RenderedOutput) -> BaseFinisher:
        for finisher in self._finishers:
            if finisher.can_process(output):
                return finisher
        return Passthrough()

    def finish(self, output: RenderedOutput) -> BuildArtifact:
        """Minify then compress a rendered output.

        Args:
            output: Routable render result.

        Returns:
            The finished BuildArtifact.

        Raises:
            TransformError: If a minifier or compressor rejects the input.
        """
        if output.route is None:
            raise ValueError(f"{output.entity_id} has no route to finish")
        body = self.finisher_for(output).process(output)
        variants: dict[str, bytes] = {}
        if self.config.compress and can_compress(output.content_type):
            for encoding in self.config.encodings:
                try:
                    variants[encoding] = compress(body, encoding)
                except (brotli.error, zlib.error, OSError) as exc:
                    raise TransformError(
                        output.entity_id, f"{encoding} compression failed: {exc}", exc
                    ) from exc
        return BuildArtifact(
            route=output.route,
            content_type=output.content_type,
            body=body,
            variants=variants,
            content_hash=hash_bytes(body),
            entity_id=output.entity_id,
        )
