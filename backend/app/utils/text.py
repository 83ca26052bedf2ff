"""
Text helpers for catalog data: slugs and description HTML.
"""
import re

from bs4 import BeautifulSoup


ALLOWED_TAGS = {
    "p", "br", "strong", "b", "em", "i", "u", "s",
    "ul", "ol", "li", "a", "span", "h3", "h4", "blockquote",
}
# Dropped with their contents; everything else not allowed is unwrapped
REMOVED_TAGS = {"script", "style", "iframe", "object", "embed", "form", "input", "button", "noscript"}
ALLOWED_URL_SCHEMES = ("http://", "https://", "mailto:")


def slugify(value: str) -> str:
    """Lowercase, strip punctuation, join words with single hyphens"""
    value = value.lower().strip()
    value = re.sub(r"[^\w\s-]", "", value)
    value = re.sub(r"[\s_-]+", "-", value)
    return value.strip("-")


def sanitize_description(html: str) -> str:
    """
    Keep basic formatting markup from a Square description and drop the rest.

    Args:
        html: description_html or plain description text

    Returns:
        Sanitized HTML (possibly empty)
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")

    for tag in soup.find_all(REMOVED_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue

        href = tag.attrs.get("href") if tag.name == "a" else None
        tag.attrs = {}
        if href and href.strip().lower().startswith(ALLOWED_URL_SCHEMES):
            tag.attrs["href"] = href.strip()

    return str(soup).strip()
