from exam_app.core.markdown_math_renderer import MarkdownMathRenderer


def test_fragment_keeps_math_for_the_browser():
    html = MarkdownMathRenderer().render_fragment("Solve $2x = 6$ for **x**.")

    assert html.startswith("<p>")
    assert "$2x = 6$" in html
    assert "<strong>x</strong>" in html


def test_blank_text_gets_placeholder():
    assert MarkdownMathRenderer().render_fragment("   ") == "<p><em>No content provided.</em></p>"


def test_inline_option_has_no_paragraph_and_escapes_html():
    html = MarkdownMathRenderer().render_inline("<b>Pacific</b>")

    assert "<p>" not in html
    assert "&lt;b&gt;" in html
