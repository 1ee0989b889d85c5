"""Sluggy incremental static site builder.

Sluggy turns a tree of Markdown, HTML and Jinja content, templates, styles,
data files and assets into a static site. Every source file is a node in a
dependency graph; a change rebuilds only what transitively depends on it, and
finished output is minified and pre-compressed.

The main entry points are ``sluggy.orchestrator.full_build`` for one-shot
builds, ``Orchestrator`` for long-lived incremental sessions, and the CLI in
``sluggy.cli``.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
