"""Markdown and HTML digest rendering tests."""
from knew.core.article import AnalysisResult, Article, Claim, FollowSubscription
from knew.core.digest import Digest
from knew.formatters.html import DEFAULT_CSS, HtmlConverter
from knew.formatters.markdown import DigestFormatter


def sample_digest(articles=None):
    if articles is None:
        articles = [Article(
            id="1",
            title="Storm hits coast",
            url="https://news.example/1",
            text="<p>Heavy rain fell across the region overnight.</p>",
            publish_date="2026-10-18 08:00:00",
            authors=["A. Writer"],
            source_country="us",
        )]
    follows = [
        FollowSubscription(id="1", type="state", value="Florida", created_at=0.0),
        FollowSubscription(id="2", type="topic", value="weather", created_at=0.0),
    ]
    return Digest(generated_date="2026-10-18", articles=articles, follows=follows)


def test_digest_markdown_lists_articles_and_follows():
    markdown = DigestFormatter().format_digest(sample_digest())

    assert markdown.startswith("# Your Daily Brief - October 18, 2026\n")
    assert "**States:** Florida" in markdown
    assert "**Topics:** weather" in markdown
    assert "### [Storm hits coast](https://news.example/1)" in markdown
    assert "**Country:** US" in markdown
    assert "Heavy rain fell across the region overnight." in markdown
    assert "<p>" not in markdown


def test_analysis_is_rendered_when_present():
    analysis = AnalysisResult(
        bias="Center",
        sentiment="negative",
        summary="A storm.",
        claims=[Claim(text="Rain fell", verification="verified")],
    )
    digest = sample_digest()

    markdown = DigestFormatter().format_digest(digest, {digest.articles[0].url: analysis})

    assert "- **Bias:** Center" in markdown
    assert "- *verified*: Rain fell" in markdown


def test_snippet_is_truncated():
    article = Article(id="1", title="T", url="u", text="word " * 100)

    rendered = DigestFormatter(snippet_words=5).format_article(article)

    assert "word word word word word..." in rendered


def test_empty_digest_has_placeholder():
    markdown = DigestFormatter().format_digest(sample_digest(articles=[]))

    assert "*No articles found for your follows today.*" in markdown
    assert "**Articles:** 0" in markdown


def test_html_conversion_and_write(tmp_path):
    converter = HtmlConverter()
    html = converter.convert("# Brief\n\n- one", title="My Brief")

    assert "<title>My Brief</title>" in html
    assert "<h1>Brief</h1>" in html
    assert "<li>one</li>" in html

    target = tmp_path / "brief.html"
    assert converter.write("# Brief", str(target))
    assert "<h1>Brief</h1>" in target.read_text(encoding="utf-8")
    assert not converter.write("# Brief", str(tmp_path / "missing" / "brief.html"))


def test_missing_css_file_uses_default(tmp_path):
    converter = HtmlConverter(css_file=str(tmp_path / "nope.css"))
    assert converter.css_content == DEFAULT_CSS

    css = tmp_path / "style.css"
    css.write_text("body { color: red; }")
    assert HtmlConverter(css_file=str(css)).css_content == "body { color: red; }"
