"""
HTML rendering of digests for KNEW.
"""
import logging
from typing import Optional

import mistune

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_CSS = """
body {
    font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif;
    max-width: 900px;
    margin: 0 auto;
    padding: 20px;
    line-height: 1.6;
    color: #333;
}

h1 {
    border-bottom: 2px solid #0066cc;
    padding-bottom: 0.3em;
}

h3 a {
    color: #1a1a1a;
    text-decoration: none;
}

h3 a:hover {
    text-decoration: underline;
}

ul {
    background-color: #f8f9fa;
    border-left: 4px solid #0066cc;
    border-radius: 4px;
    padding: 10px 10px 10px 2em;
}

hr {
    border: none;
    border-top: 1px solid #e9ecef;
    margin: 30px 0;
}
"""


class HtmlConverter:
    """
    Converts digest Markdown into a standalone HTML page.
    """
    def __init__(self, css_file: Optional[str] = None):
        """
        Initialize the HtmlConverter.

        Args:
            css_file: Path to a CSS file; the built-in styles are used when
                it is missing
        """
        self.css_file = css_file
        self.css_content = self._load_css()
        self._markdown = mistune.create_markdown(escape=False)

    def _load_css(self) -> str:
        if not self.css_file:
            return DEFAULT_CSS
        try:
            with open(self.css_file, 'r', encoding='utf-8') as f:
                return f.read()
        except FileNotFoundError:
            logger.warning(f"CSS file {self.css_file} not found. Using default styles.")
            return DEFAULT_CSS

    def convert(self, markdown_text: str, title: str = "Daily Brief") -> str:
        """
        Render Markdown to a complete HTML document.

        Args:
            markdown_text: Markdown source
            title: Document title

        Returns:
            HTML string
        """
        body = self._markdown(markdown_text)
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
{self.css_content}
    </style>
</head>
<body>
{body}
</body>
</html>"""

    def write(self, markdown_text: str, html_file_path: str, title: str = "Daily Brief") -> bool:
        """
        Render Markdown and write it to ``html_file_path``.

        Returns:
            True if successful, False otherwise
        """
        try:
            with open(html_file_path, 'w', encoding='utf-8') as html_file:
                html_file.write(self.convert(markdown_text, title))
        except OSError as e:
            logger.error(f"Error writing {html_file_path}: {e}")
            return False
        logger.info(f"Wrote digest to {html_file_path}")
        return True
