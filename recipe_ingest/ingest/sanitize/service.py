from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from loguru import logger

REMOVE_TAGS = (
    "script",
    "style",
    "noscript",
    "iframe",
    "form",
    "svg",
    "button",
    "input",
    "select",
    "textarea",
    "template",
    "object",
    "embed",
)

NAVIGATION_MARKERS = frozenset(
    {
        "nav",
        "navbar",
        "navigation",
        "menu",
        "sidebar",
        "footer",
        "header",
        "breadcrumb",
        "breadcrumbs",
        "social",
        "share",
        "sharing",
        "newsletter",
        "subscribe",
        "comment",
        "comments",
        "related",
        "advert",
        "advertisement",
        "ads",
        "cookie",
        "popup",
        "modal",
    }
)

# page chrome, dropped unless it wraps the main content
STRUCTURAL_TAGS = ("nav", "header", "footer", "aside")

PROTECTED_TAGS = frozenset({"html", "body", "main", "article"})

# class or id tokens naming the content itself, e.g. "content-sidebar-wrap", "recipe-header"
CONTENT_MARKERS = frozenset(
    {"content", "main", "recipe", "ingredient", "ingredients", "instruction", "instructions", "directions"}
)
CONTENT_DESCENDANTS = ("main", "article", "h1")
# a marked container holding more than this share of the page text is kept
MAX_CHROME_TEXT_SHARE = 0.5

BLOCK_TAGS = (
    "div",
    "p",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "article",
    "section",
    "main",
    "blockquote",
    "pre",
    "table",
    "tr",
    "ul",
    "ol",
    "dl",
    "dt",
    "dd",
)

RECIPE_TYPES = frozenset({"recipe", "howto"})

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_INLINE_WS_RE = re.compile(r"[ \t\f\v\r ]+")
_MANY_NEWLINES_RE = re.compile(r"\n{3,}")


@dataclass(slots=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None
    author: str | None = None
    site_name: str | None = None
    canonical_url: str | None = None
    language: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "title": self.title,
            "description": self.description,
            "author": self.author,
            "siteName": self.site_name,
            "canonicalUrl": self.canonical_url,
            "language": self.language,
        }


@dataclass(slots=True)
class SanitizedContent:
    text_content: str = ""
    json_ld_snippets: list[str] = field(default_factory=list)
    recipe_json_ld: str | None = None
    metadata: PageMetadata = field(default_factory=PageMetadata)
    original_length: int = 0
    sanitized_length: int = 0

    @property
    def has_recipe_json_ld(self) -> bool:
        return bool(self.recipe_json_ld)


def _type_matches(type_value: Any) -> bool:
    values = type_value if isinstance(type_value, list) else [type_value]
    for value in values:
        if not isinstance(value, str):
            continue
        # schema:Recipe, https://schema.org/Recipe, Recipe
        short = re.split(r"[/:#]", value.strip())[-1].lower()
        if short in RECIPE_TYPES:
            return True
    return False


def is_recipe_node(node: Any) -> bool:
    return isinstance(node, dict) and _type_matches(node.get("@type"))


def find_recipe_node(payload: Any) -> dict[str, Any] | None:
    """Locate a recipe-typed node in a parsed JSON-LD document (@graph, arrays, objects)."""
    if isinstance(payload, dict):
        graph = payload.get("@graph")
        if isinstance(graph, list):
            for item in graph:
                if is_recipe_node(item):
                    return item
        if is_recipe_node(payload):
            return payload
    if isinstance(payload, list):
        for item in payload:
            if is_recipe_node(item):
                return item
            nested = find_recipe_node(item) if isinstance(item, dict) else None
            if nested is not None:
                return nested
    return None


def find_recipe_json_ld(snippets: list[str]) -> str | None:
    for snippet in snippets:
        try:
            payload = json.loads(snippet)
        except json.JSONDecodeError:
            continue
        node = find_recipe_node(payload)
        if node is None:
            continue
        if node is payload:
            return snippet
        return json.dumps(node, ensure_ascii=False)
    return None


def _normalize_whitespace(text: str) -> str:
    if not text:
        return ""
    text = _INLINE_WS_RE.sub(" ", text)
    lines = [line.strip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = _MANY_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def _marker_tokens(tag: Tag) -> set[str]:
    values: list[str] = []
    classes = tag.get("class")
    if isinstance(classes, list):
        values.extend(classes)
    elif isinstance(classes, str):
        values.append(classes)
    element_id = tag.get("id")
    if isinstance(element_id, str):
        values.append(element_id)
    tokens: set[str] = set()
    for value in values:
        tokens.update(t for t in _TOKEN_SPLIT_RE.split(value.lower()) if t)
    return tokens


def _has_navigation_marker(tag: Tag) -> bool:
    if tag.name in PROTECTED_TAGS:
        return False
    return not _marker_tokens(tag).isdisjoint(NAVIGATION_MARKERS)


def _wraps_content(tag: Tag, page_text_length: int) -> bool:
    """True when removing ``tag`` would take the main content with it."""
    if not _marker_tokens(tag).isdisjoint(CONTENT_MARKERS):
        return True
    if tag.find(list(CONTENT_DESCENDANTS)) is not None:
        return True
    if page_text_length <= 0:
        return False
    return len(tag.get_text(strip=True)) > page_text_length * MAX_CHROME_TEXT_SHARE


class SanitizeService:
    """Strips untrusted HTML down to readable text plus embedded JSON-LD and page metadata."""

    def sanitize(self, html: str | None) -> SanitizedContent:
        if not html or not html.strip():
            return SanitizedContent()

        original_length = len(html)
        logger.debug(f"Sanitizing HTML content: {original_length} characters")
        soup = BeautifulSoup(html, "html.parser")

        snippets = self.extract_json_ld(soup)
        recipe_json_ld = find_recipe_json_ld(snippets)
        metadata = self.extract_metadata(soup)

        self._remove_unwanted(soup)
        text = _normalize_whitespace(self._to_plain_text(soup))

        logger.debug(
            f"Sanitization complete: {original_length} -> {len(text)} characters, "
            f"{len(snippets)} JSON-LD snippets"
        )
        return SanitizedContent(
            text_content=text,
            json_ld_snippets=snippets,
            recipe_json_ld=recipe_json_ld,
            metadata=metadata,
            original_length=original_length,
            sanitized_length=len(text),
        )

    @staticmethod
    def extract_json_ld(soup: BeautifulSoup) -> list[str]:
        snippets: list[str] = []
        for script in soup.find_all("script"):
            script_type = (script.get("type") or "").strip().lower()
            if script_type != "application/ld+json":
                continue
            content = script.get_text().strip()
            if not content:
                continue
            try:
                json.loads(content)
            except json.JSONDecodeError:
                logger.debug("Invalid JSON in ld+json script tag")
                continue
            snippets.append(content)
        return snippets

    @staticmethod
    def extract_metadata(soup: BeautifulSoup) -> PageMetadata:
        metadata = PageMetadata()
        if soup.title and soup.title.string:
            metadata.title = soup.title.string.strip() or None

        og_title: str | None = None
        for meta in soup.find_all("meta"):
            name = (meta.get("name") or "").strip().lower()
            prop = (meta.get("property") or "").strip().lower()
            content = meta.get("content")
            if content is None:
                continue
            content = content.strip()
            if name == "description" or prop == "og:description":
                metadata.description = metadata.description or content
            elif name == "author":
                metadata.author = content
            elif prop == "og:site_name":
                metadata.site_name = content
            elif prop == "og:title":
                og_title = content
        if not metadata.title and og_title:
            metadata.title = og_title

        for link in soup.find_all("link"):
            rel = link.get("rel") or []
            rels = rel if isinstance(rel, list) else str(rel).split()
            if "canonical" in [r.lower() for r in rels] and link.get("href"):
                metadata.canonical_url = link["href"].strip()
                break

        if soup.html is not None and soup.html.get("lang"):
            metadata.language = soup.html["lang"].strip()
        return metadata

    @staticmethod
    def _remove_unwanted(soup: BeautifulSoup) -> None:
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()
        for tag in soup.find_all(list(REMOVE_TAGS)):
            tag.extract()

        page_text_length = len(soup.get_text(strip=True))
        for tag in soup.find_all(True):
            if tag.parent is None:
                continue
            if tag.name not in STRUCTURAL_TAGS and not _has_navigation_marker(tag):
                continue
            if _wraps_content(tag, page_text_length):
                continue
            tag.extract()

    @staticmethod
    def _to_plain_text(soup: BeautifulSoup) -> str:
        for br in soup.find_all("br"):
            br.replace_with(NavigableString("\n"))
        for li in soup.find_all("li"):
            li.insert(0, NavigableString("\n• "))
            li.append(NavigableString("\n"))
        for block in soup.find_all(list(BLOCK_TAGS)):
            block.insert_before(NavigableString("\n"))
            block.insert_after(NavigableString("\n"))
        return soup.get_text()
