"""Best-effort extraction of embedded CSS/JS from a generated HTML page.

Regex based, aimed at the flat single-file documents the generator produces.
Nested or unbalanced tags are not handled and give approximate results.
"""

import datetime
import io
import re
import zipfile
from dataclasses import dataclass
from typing import List

from helpers import format_file_size

STYLE_RE = re.compile(r'<style[^>]*>([\s\S]*?)</style>', re.IGNORECASE)
SCRIPT_RE = re.compile(r'<script([^>]*)>([\s\S]*?)</script>', re.IGNORECASE)
# an unterminated body (truncated generation) runs to </html> or the end of the text
BODY_RE = re.compile(r'<body[^>]*>([\s\S]*?)(?:</body>|</html>|$)', re.IGNORECASE)
SRC_ATTR_RE = re.compile(r'\bsrc\s*=', re.IGNORECASE)


@dataclass
class SplitAssets:
    html: str
    css: str
    js: str


@dataclass
class ExportFile:
    filename: str
    content: str
    mime_type: str


def _is_inline(script_attrs: str) -> bool:
    return not SRC_ATTR_RE.search(script_attrs)


def _collect(html: str):
    css = ''.join(m.group(1) + '\n' for m in STYLE_RE.finditer(html))
    js = ''.join(m.group(2) + '\n' for m in SCRIPT_RE.finditer(html) if _is_inline(m.group(1)))
    return css.strip(), js.strip()


def split_assets(html: str) -> SplitAssets:
    """Split a page into body markup, concatenated CSS and inline JS."""
    html = html or ''
    css, js = _collect(html)

    body = STYLE_RE.sub('', html)
    body = SCRIPT_RE.sub('', body)
    m = BODY_RE.search(body)
    if m:
        body = m.group(1)
    return SplitAssets(html=body.strip(), css=css, js=js)


def externalize_assets(html: str) -> SplitAssets:
    """Move embedded styles and inline scripts out of a full page.

    The returned `html` stays a complete document that links `styles.css` and
    `script.js` instead; external `<script src>` tags are left in place.
    """
    html = html or ''
    css, js = _collect(html)
    page = html
    if css:
        page = STYLE_RE.sub('', page)
        page, n = re.subn(r'</head>', '    <link rel="stylesheet" href="styles.css">\n</head>', page, count=1, flags=re.IGNORECASE)
        if not n:
            page = '<link rel="stylesheet" href="styles.css">\n' + page
    if js:
        page = SCRIPT_RE.sub(lambda m: m.group(0) if not _is_inline(m.group(1)) else '', page)
        page, n = re.subn(r'</body>', '    <script src="script.js"></script>\n</body>', page, count=1, flags=re.IGNORECASE)
        if not n:
            page = page + '\n<script src="script.js"></script>'
    return SplitAssets(html=page.strip(), css=css, js=js)


def generate_readme(project_name: str, today: datetime.date = None) -> str:
    today = today or datetime.date.today()
    return (
        f"# {project_name}\n\n"
        f"A website generated with AI Website Builder on {today.isoformat()}.\n\n"
        "## Files\n\n"
        "- `index.html` - Main HTML file\n"
        "- `styles.css` - Stylesheet (if extracted)\n"
        "- `script.js` - JavaScript file (if extracted)\n\n"
        "## How to Use\n\n"
        "1. Open `index.html` in a web browser\n"
        "2. Or serve the files using a local web server for better performance\n\n"
        "## Browser Support\n\n"
        "This website uses modern web technologies and is compatible with:\n"
        "- Chrome 60+\n"
        "- Firefox 60+\n"
        "- Safari 12+\n"
        "- Edge 79+\n"
    )


def build_project_files(html: str, project_name: str = 'my-website') -> List[ExportFile]:
    parts = externalize_assets(html)
    files = [ExportFile('index.html', parts.html, 'text/html')]
    if parts.css:
        files.append(ExportFile('styles.css', parts.css, 'text/css'))
    if parts.js:
        files.append(ExportFile('script.js', parts.js, 'text/javascript'))
    files.append(ExportFile('README.md', generate_readme(project_name), 'text/markdown'))
    return files


def build_project_zip(html: str, project_name: str = 'my-website') -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w', zipfile.ZIP_DEFLATED) as zf:
        for f in build_project_files(html, project_name):
            zf.writestr(f.filename, f.content)
    return buf.getvalue()


def file_stats(content: str, filename: str) -> dict:
    size = len(content.encode('utf-8'))
    return {
        'filename': filename,
        'size': size,
        'size_formatted': format_file_size(size),
        'lines': len(content.split('\n')),
        'words': len(content.split()),
        'characters': len(content),
        'characters_no_spaces': len(re.sub(r'\s', '', content)),
    }
