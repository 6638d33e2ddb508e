import re
from html import unescape

from bs4 import BeautifulSoup, NavigableString

_BLOCK_TAGS = ["p", "div", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre", "section", "article"]


def extract_title(html: str) -> str:
    soup = BeautifulSoup(html, "lxml")
    title_tag = soup.find("title")
    return title_tag.get_text(strip=True) if title_tag else ""


def html_to_text(html: str) -> str:
    """Convert an HTML document to readable plain text.

    Block elements become paragraphs, list items become ``- `` bullets and
    link targets are kept next to their text.
    """
    soup = BeautifulSoup(html, "lxml")

    for tag in soup.find_all(["script", "style", "head", "noscript"]):
        tag.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")

    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert(0, NavigableString("\n"))
        tag.append(NavigableString("\n"))

    for a in soup.find_all("a", href=True):
        href = a["href"]
        link_text = a.get_text(strip=True)
        if href and href != link_text and not href.startswith(("#", "javascript:")):
            a.replace_with(f"{link_text} ({href})" if link_text else href)

    for li in soup.find_all("li"):
        li.insert(0, NavigableString("\n- "))

    for cell in soup.find_all(["td", "th"]):
        cell.append(NavigableString("\t"))

    body = soup.find("body")
    text = unescape((body or soup).get_text())

    text = re.sub(r"\t+", "  ", text)
    text = re.sub(r"[ \xa0]{3,}", "  ", text)
    text = re.sub(r"\n[ \t]+\n", "\n\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
