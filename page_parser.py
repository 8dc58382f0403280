#!/usr/bin/env python3
"""
HTML list and detail page parsing.

Everything here is synchronous and CPU-bound; pages are small enough that the
runner calls these directly. Only enrich_attachments is async because it
confirms candidates with a HEAD probe.
"""

import re
from dataclasses import dataclass, field
from datetime import date as _date
from typing import Awaitable, Callable, List, Optional

from bs4 import BeautifulSoup
from readability import Document

from config import get_logger
from utils import collapse_whitespace, resolve_url, strip_tracking_params

logger = get_logger("page_parser")

ATTACHMENT_EXTENSIONS = (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".zip", ".rar")
NOISE_SELECTOR = "nav, footer, header, aside, .nav, .footer, .header, .sidebar, script, style, .related, .comment"
PAGE_LIKE_URL = re.compile(r"\.(html|htm|jsp|asp|aspx)(\?.*)?$", re.IGNORECASE)
ONCLICK_URL = re.compile(r"""['"](https?://[^'"]+)['"]""")
LIST_DATE = re.compile(r"(\d{4})[-./](\d{2})[-./](\d{2})")
PAGE_DATE = re.compile(r"(\d{4})[-年./](\d{1,2})[-月./](\d{1,2})")

NAVIGATION_WORDS = ("招生章程", "名单公示", "录取查询", "历年录取分数线")
MIN_CONTENT_CHARS = 50


@dataclass
class Attachment:
    name: str
    url: str

    def to_dict(self) -> dict:
        return {"name": self.name, "url": self.url}


@dataclass
class ListItem:
    url: str
    title: Optional[str] = None
    date: Optional[_date] = None


@dataclass
class DetailPage:
    title: str
    content: str
    date: Optional[_date]
    attachments: List[Attachment] = field(default_factory=list)


def _make_date(match) -> Optional[_date]:
    try:
        return _date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def parse_page_date(text: Optional[str]) -> Optional[_date]:
    """First YYYY-MM-DD style date in the text (also 年/月 and . or / separators)."""
    if not text:
        return None
    match = PAGE_DATE.search(text)
    return _make_date(match) if match else None


def _clean_link(href: Optional[str], base_url: str) -> Optional[str]:
    resolved = resolve_url(href, base_url) if href else None
    return strip_tracking_params(resolved) if resolved else None


def discover_links(html: str, base_url: str, pattern: Optional[str] = None) -> List[str]:
    """All anchors on the page, absolute and de-tracked.

    With a pattern, keep URLs the regex matches anywhere. Without one, keep
    URLs noticeably longer than the base URL that carry no fragment.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    regex = re.compile(pattern) if pattern else None
    links: List[str] = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        url = _clean_link(anchor.get("href"), base_url)
        if not url or url in seen:
            continue
        if regex is not None:
            keep = regex.search(url) is not None
        else:
            keep = len(url) > len(base_url) + 5 and "#" not in url
        if keep:
            seen.add(url)
            links.append(url)
    return links


def _href_from(element) -> Optional[str]:
    if element is None:
        return None
    href = element.get("href") or element.get("data-href") or element.get("data-url")
    if href:
        return href
    match = ONCLICK_URL.search(element.get("onclick") or "")
    return match.group(1) if match else None


def parse_list(html: str, base_url: str, crawl_config) -> List[ListItem]:
    """Extract (url, title, date) rows from a list page.

    Without a configured item selector this degrades to discover_links with
    the source's detail pattern.
    """
    selectors = crawl_config.list_selectors
    if not selectors.item:
        return [ListItem(url=u) for u in discover_links(html, base_url, crawl_config.detail_pattern)]

    soup = BeautifulSoup(html or "", "html.parser")
    regex = re.compile(crawl_config.detail_pattern) if crawl_config.detail_pattern else None
    items: List[ListItem] = []

    for container in soup.select(selectors.item):
        if selectors.url:
            target = container.select_one(selectors.url)
        else:
            target = container if container.name == "a" else container.find("a")
        url = _clean_link(_href_from(target), base_url)
        if not url:
            continue
        if regex is not None and not regex.search(url):
            continue

        if selectors.title:
            title_el = container.select_one(selectors.title)
            title = title_el.get_text(strip=True) if title_el else ""
        else:
            anchor = container if container.name == "a" else container.find("a")
            title = anchor.get_text(strip=True) if anchor else ""

        if selectors.date:
            date_el = container.select_one(selectors.date)
            item_date = parse_page_date(date_el.get_text(strip=True).replace(".", "-")) if date_el else None
        else:
            match = LIST_DATE.search(container.get_text(" "))
            item_date = _make_date(match) if match else None

        items.append(ListItem(url=url, title=title or None, date=item_date))

    return items


def _readability_fallback(soup: BeautifulSoup, url: str):
    """(title, text) from readability over the page with chrome elements removed."""
    for tag in soup.select(NOISE_SELECTOR):
        tag.decompose()
    try:
        document = Document(str(soup), url=url)
        summary_html = document.summary(html_partial=True)
        title = document.short_title() or ""
    except (ValueError, RuntimeError) as e:
        logger.debug(f"Readability could not parse {url}: {e}")
        return "", ""
    text = BeautifulSoup(summary_html, "html.parser").get_text(" ")
    return title.strip(), text


def _collect_attachments(elements, base_url: str) -> List[Attachment]:
    found: List[Attachment] = []
    for element in elements:
        url = resolve_url(element.get("href"), base_url)
        if url:
            found.append(Attachment(name=element.get_text(strip=True) or "Attachment", url=url))
    return found


def parse_detail(html: str, url: str, selectors=None) -> DetailPage:
    """Title, plain-text body, date and attachment links of a detail page."""
    soup = BeautifulSoup(html or "", "html.parser")
    title = ""
    content = ""
    page_date: Optional[_date] = None
    attachments: List[Attachment] = []

    title_sel = selectors and (selectors.detail_title or selectors.title)
    content_sel = selectors and (selectors.detail_content or selectors.content)
    date_sel = selectors and (selectors.detail_date or selectors.date)

    if title_sel:
        node = soup.select_one(title_sel)
        title = node.get_text(strip=True) if node else ""
    if content_sel:
        node = soup.select_one(content_sel)
        # Inner HTML here; reduced to text once fallbacks are settled
        content = node.decode_contents() if node else ""
    if date_sel:
        node = soup.select_one(date_sel)
        page_date = parse_page_date(node.get_text(strip=True)) if node else None
    if selectors and selectors.attachments:
        attachments = _collect_attachments(soup.select(selectors.attachments), url)

    if not title or not content or len(content) < MIN_CONTENT_CHARS:
        fallback_title, fallback_text = _readability_fallback(BeautifulSoup(html or "", "html.parser"), url)
        if not title:
            title = fallback_title
        if not content:
            content = fallback_text
            content_sel = None

    if page_date is None:
        page_date = parse_page_date(html)

    if not attachments:
        candidates = [a for a in soup.find_all("a", href=True) if a["href"].endswith(ATTACHMENT_EXTENSIONS)]
        attachments = _collect_attachments(candidates, url)

    if content_sel:
        content = BeautifulSoup(content, "html.parser").get_text(" ")

    return DetailPage(
        title=collapse_whitespace(title),
        content=collapse_whitespace(content),
        date=page_date,
        attachments=attachments,
    )


def looks_like_navigation(body: str) -> bool:
    """True for short bodies that read like a section index rather than an article."""
    if len(body) < 1000 and any(word in body for word in NAVIGATION_WORDS):
        return True
    return len(body) < 200 and "导航" in body


def _usable_href(href: Optional[str]) -> bool:
    return bool(href) and not href.startswith(("javascript:", "#", "mailto:"))


async def enrich_attachments(
    html: str,
    base_url: str,
    existing: List[Attachment],
    probe: Callable[[str], Awaitable[bool]],
) -> List[Attachment]:
    """Find download links the selectors missed and keep those the probe confirms."""
    soup = BeautifulSoup(html or "", "html.parser")
    known = {a.url for a in existing}
    candidates: List[Attachment] = []

    def consider(anchor, name: str) -> None:
        href = anchor.get("href")
        if not _usable_href(href):
            return
        url = resolve_url(href, base_url)
        if url and url not in known:
            known.add(url)
            candidates.append(Attachment(name=name, url=url))

    for anchor in soup.find_all("a"):
        text = anchor.get_text(strip=True)
        if "下载" in text or "附件" in text:
            consider(anchor, text)

    for element in soup.find_all(True):
        if element.find(True) is None and "附件" in element.get_text() and element.parent is not None:
            for anchor in element.parent.find_all("a"):
                consider(anchor, anchor.get_text(strip=True) or "Attachment")

    confirmed: List[Attachment] = []
    for candidate in candidates:
        if PAGE_LIKE_URL.search(candidate.url) and "?" not in candidate.url:
            continue
        if await probe(candidate.url):
            confirmed.append(candidate)
    if confirmed:
        logger.debug(f"Confirmed {len(confirmed)} extra attachments on {base_url}")
    return list(existing) + confirmed
