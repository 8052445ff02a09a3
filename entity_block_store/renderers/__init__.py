"""Renderer implementations."""

from .markdown import EntityMarkdownRenderer, RenderOptions

__all__ = ["EntityMarkdownRenderer", "RenderOptions"]
