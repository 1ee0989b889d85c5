"""Configuration loading for Sluggy.

Site configuration lives in ``sluggy.yaml`` at the project root. Values are
merged over DEFAULT_CONFIG, a handful of environment variables can override
them, and the result is frozen into a BuildConfig the rest of the engine reads.

Key functions:
- load_config: Read sluggy.yaml and apply defaults and environment overrides.
- BuildConfig.from_mapping: Resolve directories and normalise values.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "sluggy.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "content_dir": "content",
    "templates_dir": "templates",
    "styles_dir": "css",
    "assets_dir": "assets",
    "data_dir": "data",
    "output_dir": "out",
    "base_url": "/",
    "default_template": "default.html",
    "minify": True,
    "minify_css": True,
    "compress": True,
    "encodings": ["br", "gzip", "deflate"],
    "compressed_dir": "",
    "browsers": ["> 0.2% and not dead"],
    "workers": None,
    "debounce_ms": 250,
    "ignore": [],
    "include_drafts": False,
    "port": 8000,
    "ws_port": None,
    "host": "0.0.0.0",
    "content_encoding": "br",
}

# Paths the watcher never reacts to, on top of the output directory.
DEFAULT_IGNORES = (".git", ".hg", "__pycache__", "node_modules", ".DS_Store")


def load_config(project_root: Path, config_path: Path | None = None) -> dict[str, Any]:
    """Load site configuration from sluggy.yaml.

    Args:
        project_root: Root directory of the project.
        config_path: Optional explicit config file; must exist when given.

    Returns:
        Dictionary containing configuration values, with defaults applied.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
    """
    path = config_path or project_root / CONFIG_FILENAME
    config = DEFAULT_CONFIG.copy()
    if config_path is not None and not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    if path.exists():
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                config.update(loaded)
    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: dict[str, Any]) -> None:
    base_url = os.environ.get("BASE_URL")
    if base_url:
        config["base_url"] = base_url
    port = os.environ.get("PORT")
    if port:
        try:
            config["port"] = int(port)
        except ValueError as exc:
            raise ValueError(f"Failed to parse PORT {port!r}") from exc
    host = os.environ.get("HOST")
    if host:
        config["host"] = host


def normalize_base_url(base_url: str | None) -> str:
    """Ensure the base URL ends with exactly one slash.

    Examples:
        >>> normalize_base_url("https://example.com")
        'https://example.com/'

        >>> normalize_base_url(None)
        '/'
    """
    if not base_url:
        return "/"
    return base_url if base_url.endswith("/") else f"{base_url}/"


@dataclass(frozen=True)
class BuildConfig:
    """Resolved, immutable build configuration.

    Attributes:
        source_root: Project root the source directories are relative to.
        output_root: Directory the output tree is written to.
        base_url: Base URL used for ``@/`` rewriting; always ends with '/'.
        workers: Size of the render worker pool.
        browsers: Browserslist queries stylesheets are resolved against;
            empty to skip target resolution.
    """

    source_root: Path
    output_root: Path
    content_dir: str = "content"
    templates_dir: str = "templates"
    styles_dir: str = "css"
    assets_dir: str = "assets"
    data_dir: str = "data"
    base_url: str = "/"
    default_template: str = "default.html"
    minify: bool = True
    minify_css: bool = True
    compress: bool = True
    encodings: tuple[str, ...] = ("br", "gzip", "deflate")
    compressed_dir: str = ""
    browsers: tuple[str, ...] = ("> 0.2% and not dead",)
    workers: int = 4
    debounce_ms: int = 250
    ignore: tuple[str, ...] = field(default_factory=tuple)
    include_drafts: bool = False
    port: int = 8000
    ws_port: int | None = None
    host: str = "0.0.0.0"
    content_encoding: str = "br"

    @classmethod
    def from_mapping(
        cls,
        config: dict[str, Any],
        source_root: Path,
        output_root: Path | None = None,
    ) -> BuildConfig:
        """Build a BuildConfig from a loaded configuration mapping.

        Args:
            config: Mapping as returned by load_config.
            source_root: Project root directory.
            output_root: Optional override for the output directory.

        Returns:
            Frozen BuildConfig.
        """
        merged = DEFAULT_CONFIG.copy()
        merged.update(config)
        source_root = Path(source_root).resolve()
        if output_root is None:
            output_root = source_root / str(merged["output_dir"])
        workers = merged.get("workers") or min(32, (os.cpu_count() or 1) + 4)
        ws_port = merged.get("ws_port")
        browsers = merged.get("browsers") or ()
        if isinstance(browsers, str):
            browsers = (browsers,)
        return cls(
            source_root=source_root,
            output_root=Path(output_root).resolve(),
            content_dir=str(merged["content_dir"]),
            templates_dir=str(merged["templates_dir"]),
            styles_dir=str(merged["styles_dir"]),
            assets_dir=str(merged["assets_dir"]),
            data_dir=str(merged["data_dir"]),
            base_url=normalize_base_url(merged.get("base_url")),
            default_template=str(merged["default_template"]),
            minify=bool(merged["minify"]),
            minify_css=bool(merged["minify_css"]),
            compress=bool(merged["compress"]),
            encodings=tuple(merged.get("encodings") or ()),
            compressed_dir=str(merged.get("compressed_dir") or ""),
            browsers=tuple(str(b) for b in browsers),
            workers=int(workers),
            debounce_ms=int(merged["debounce_ms"]),
            ignore=tuple(merged.get("ignore") or ()),
            include_drafts=bool(merged["include_drafts"]),
            port=int(merged["port"]),
            ws_port=int(ws_port) if ws_port is not None else None,
            host=str(merged["host"]),
            content_encoding=str(merged["content_encoding"]),
        )

    @property
    def source_dirs(self) -> dict[str, Path]:
        """Map of source directory role to absolute path."""
        return {
            "content": self.source_root / self.content_dir,
            "templates": self.source_root / self.templates_dir,
            "styles": self.source_root / self.styles_dir,
            "assets": self.source_root / self.assets_dir,
            "data": self.source_root / self.data_dir,
        }

    def fingerprint(self) -> str:
        """Hash of every setting that changes rendered or finished bytes.

        Folded into every cache key so a config change never serves output
        produced under different settings.
        """
        relevant = {
            "base_url": self.base_url,
            "default_template": self.default_template,
            "minify": self.minify,
            "minify_css": self.minify_css,
            "compress": self.compress,
            "encodings": list(self.encodings),
            "browsers": list(self.browsers),
            "include_drafts": self.include_drafts,
        }
        payload = json.dumps(relevant, sort_keys=True).encode("utf-8")
        return hashlib.sha256(payload).hexdigest()
