#!/usr/bin/env python3
"""
Typed crawl configuration for HTML sources.

Sources store their crawl configuration as a JSON blob. It is parsed once per
run into a CrawlConfig, after which the per-source override table is applied.
Seeding from sources.yaml also lives here.
"""

import json
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from config import config, get_logger
from utils import validate_url

logger = get_logger("source_config")

TRANSPORTS = ("http", "curl")
SOURCE_KINDS = ("RSS", "HTML")


@dataclass
class ListSelectors:
    item: Optional[str] = None
    title: Optional[str] = None
    date: Optional[str] = None
    url: Optional[str] = None


@dataclass
class DetailSelectors:
    title: Optional[str] = None
    date: Optional[str] = None
    content: Optional[str] = None
    attachments: Optional[str] = None
    detail_title: Optional[str] = None
    detail_date: Optional[str] = None
    detail_content: Optional[str] = None


@dataclass
class CrawlConfig:
    list_urls: List[str] = field(default_factory=list)
    detail_pattern: Optional[str] = None
    list_selectors: ListSelectors = field(default_factory=ListSelectors)
    selectors: DetailSelectors = field(default_factory=DetailSelectors)
    headers: Dict[str, str] = field(default_factory=dict)
    transport: str = "http"
    curl_args: List[str] = field(default_factory=list)
    force_source_url_in_digest: bool = False
    title_blocklist: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CrawlConfig":
        """Build and validate a config from a plain mapping.

        Raises ValueError for an unknown transport or an invalid detail pattern.
        """
        data = dict(data or {})
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown crawl config keys: {', '.join(sorted(unknown))}")

        transport = str(data.get("transport") or "http").lower()
        if transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport '{transport}' (expected one of {', '.join(TRANSPORTS)})")

        pattern = data.get("detail_pattern") or None
        if pattern:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid detail_pattern {pattern!r}: {e}") from e

        return cls(
            list_urls=[str(u) for u in data.get("list_urls") or []],
            detail_pattern=pattern,
            list_selectors=ListSelectors(**_pick(data.get("list_selectors"), ListSelectors)),
            selectors=DetailSelectors(**_pick(data.get("selectors"), DetailSelectors)),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            transport=transport,
            curl_args=[str(a) for a in data.get("curl_args") or []],
            force_source_url_in_digest=bool(data.get("force_source_url_in_digest", False)),
            title_blocklist=[str(k) for k in data.get("title_blocklist") or []],
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, sort_keys=True)


def _pick(section: Any, cls) -> Dict[str, Any]:
    if not isinstance(section, dict):
        return {}
    return {k: v for k, v in section.items() if k in cls.__dataclass_fields__ and v}


# Per-source quirks, applied once after the stored config is parsed

_TSINGHUA_GENERIC_PATTERN = r"https://www\.join-tsinghua\.edu\.cn/.*"


def _patch_tsinghua(cfg: CrawlConfig) -> None:
    if not cfg.detail_pattern or cfg.detail_pattern == _TSINGHUA_GENERIC_PATTERN:
        cfg.detail_pattern = r"https://www\.join-tsinghua\.edu\.cn/info/.*\.htm"


def _patch_tju(cfg: CrawlConfig) -> None:
    # Only real /info/ items or the list page itself; the section navigation is noise
    cfg.detail_pattern = r"https://zs\.tju\.edu\.cn/(info/.*|ym21/bkzn/tzgg\.htm)"
    cfg.force_source_url_in_digest = True


def _patch_zju(cfg: CrawlConfig) -> None:
    cfg.force_source_url_in_digest = True


def _patch_muc(cfg: CrawlConfig) -> None:
    blocklist = ["联系", "联系方式", "联系我们", "录取分数", "分数线", "学院",
                 "招生计划", "历史数据", "查询系统", "登录"]
    for keyword in blocklist:
        if keyword not in cfg.title_blocklist:
            cfg.title_blocklist.append(keyword)


SOURCE_OVERRIDES: Dict[str, Callable[[CrawlConfig], None]] = {
    "清华大学-通知公告": _patch_tsinghua,
    "天津大学-通知公告": _patch_tju,
    "浙江大学-最新公告": _patch_zju,
    "中央民族大学-通知公告": _patch_muc,
}


def load_crawl_config(source: Dict[str, Any]) -> CrawlConfig:
    """Parse a source row's stored crawl config and apply its override, if any.

    A blob that is not valid JSON degrades to an empty config; one that is
    JSON but fails validation raises ValueError.
    """
    raw = source.get("crawl_config") or "{}"
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid crawl config JSON for {source.get('name')}: {e}")
        data = {}
    if not isinstance(data, dict):
        data = {}

    cfg = CrawlConfig.from_dict(data)
    patch = SOURCE_OVERRIDES.get(source.get("name") or "")
    if patch:
        patch(cfg)
        logger.debug(f"Applied source override for {source.get('name')}")
    return cfg


def normalize_source_entry(name: str, entry: Dict[str, Any]) -> Dict[str, Any]:
    """Turn one sources.yaml entry into register_source keyword arguments."""
    kind = str(entry.get("kind", "HTML")).upper()
    if kind not in SOURCE_KINDS:
        raise ValueError(f"Source '{name}' has unknown kind '{kind}'")
    url = str(entry["url"]).strip()
    if not validate_url(url):
        raise ValueError(f"Source '{name}' has invalid url '{url}'")
    crawl = entry.get("crawl") or {}
    crawl_config = CrawlConfig.from_dict(crawl).to_json() if crawl else None
    return {
        "name": name,
        "kind": kind,
        "url": url,
        "region_tag": entry.get("region"),
        "category_tag": entry.get("category"),
        "priority": int(entry.get("priority", 0)),
        "is_active": bool(entry.get("active", True)),
        "fetch_interval_minutes": int(entry.get("interval", 60)),
        "crawl_config": crawl_config,
    }


async def seed_sources(db, sources: Optional[Dict[str, Dict[str, Any]]] = None) -> int:
    """Register every source from sources.yaml; returns how many were stored."""
    sources = config.SOURCES if sources is None else sources
    count = 0
    for name, entry in sources.items():
        try:
            params = normalize_source_entry(name, entry)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"Skipping source '{name}': {e}")
            continue
        await db.execute("register_source", **params)
        count += 1
    logger.info(f"Seeded {count} sources")
    return count
