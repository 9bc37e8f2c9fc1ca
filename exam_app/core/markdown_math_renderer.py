"""Markdown + LaTeX rendering of question and option text.

Question text is authored as Markdown with ``$...$`` math. The renderer only
turns Markdown into HTML; math is left in place for MathJax on the student
page. Raw HTML in exam text is escaped rather than passed through.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from markdown_it import MarkdownIt


@dataclass(slots=True)
class MarkdownMathRenderer:
    """Converts markdown-with-math into HTML fragments."""

    enable_html: bool = False
    _markdown: MarkdownIt = field(init=False, repr=False)
    _inline: MarkdownIt = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._markdown = (
            MarkdownIt("commonmark", {"html": self.enable_html})
            .enable("table")
            .enable("strikethrough")
        )
        self._inline = MarkdownIt("commonmark", {"html": self.enable_html})

    def render_fragment(self, markdown_text: str) -> str:
        """Render a markdown string into a block-level HTML fragment."""
        sanitized = markdown_text.strip()
        if not sanitized:
            return "<p><em>No content provided.</em></p>"
        return self._markdown.render(sanitized)

    def render_inline(self, markdown_text: str) -> str:
        """Render short text such as an option label without a wrapping paragraph."""
        return self._inline.renderInline(markdown_text.strip())


renderer = MarkdownMathRenderer()
