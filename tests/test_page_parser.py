from datetime import date
from typing import Optional, get_type_hints

import pytest

import page_parser

from page_parser import (
    Attachment,
    DetailPage,
    ListItem,
    discover_links,
    enrich_attachments,
    looks_like_navigation,
    parse_detail,
    parse_list,
    parse_page_date,
)
from source_config import CrawlConfig

BASE = "https://zs.example.edu/tzgg.htm"

LIST_HTML = """
<html><body>
  <a href="/">首页</a>
  <a href="#top">回到顶部</a>
  <a href="info/1001.htm?utm_source=wx&id=7">2025年强基计划招生简章</a>
  <a href="info/1001.htm?utm_source=wx&id=7">2025年强基计划招生简章（重复）</a>
  <a href="https://zs.example.edu/tzgg/list/2.htm">下一页</a>
</body></html>
"""


def test_discover_links_without_pattern_uses_length_heuristic():
    links = discover_links(LIST_HTML, BASE)

    assert links == ["https://zs.example.edu/info/1001.htm?id=7", "https://zs.example.edu/tzgg/list/2.htm"]


def test_discover_links_with_pattern_matches_anywhere():
    links = discover_links(LIST_HTML, BASE, r"info/\d+\.htm")

    assert links == ["https://zs.example.edu/info/1001.htm?id=7"]


def test_parse_list_with_selectors_and_click_targets():
    html = """
    <ul class="news">
      <li><a href="info/1.htm">综合评价招生简章</a><span class="time">2025.03.05</span></li>
      <li><span onclick="window.open('https://zs.example.edu/info/2.htm')">录取查询说明</span><span class="time">2025-03-01</span></li>
      <li><div data-href="/info/3.htm">夏令营通知 2025-02-20</div></li>
      <li><span>无链接条目</span></li>
    </ul>
    """
    cfg = CrawlConfig.from_dict({"list_selectors": {"item": "ul.news li"}, "detail_pattern": r"/info/\d+\.htm"})

    items = parse_list(html, BASE, cfg)

    assert [i.url for i in items] == ["https://zs.example.edu/info/1.htm"]
    assert items[0].title == "综合评价招生简章"
    assert items[0].date == date(2025, 3, 5)

    cfg = CrawlConfig.from_dict({
        "list_selectors": {"item": "ul.news li", "url": "[onclick], a, [data-href]", "date": ".time"},
    })
    items = parse_list(html, BASE, cfg)

    assert [i.url for i in items] == [
        "https://zs.example.edu/info/1.htm",
        "https://zs.example.edu/info/2.htm",
        "https://zs.example.edu/info/3.htm",
    ]
    assert items[0].date == date(2025, 3, 5)
    assert items[1].date == date(2025, 3, 1)


def test_parse_list_without_item_selector_falls_back_to_link_discovery():
    items = parse_list(LIST_HTML, BASE, CrawlConfig.from_dict({"detail_pattern": r"info/\d+"}))

    assert [i.url for i in items] == ["https://zs.example.edu/info/1001.htm?id=7"]
    assert items[0].title is None


def test_parse_page_date_variants():
    assert parse_page_date("发布时间：2025年3月5日") == date(2025, 3, 5)
    assert parse_page_date("2025/03/05 10:00") == date(2025, 3, 5)
    assert parse_page_date("没有日期") is None


def test_parse_detail_with_selectors():
    html = """
    <html><body>
      <h1 class="t">关于2025年强基计划报名的通知</h1>
      <div class="meta">发布日期：2025-03-05</div>
      <div class="c"><p>各位考生：</p><p>2025年强基计划报名将于4月10日开始，请考生通过报名系统完成网上报名并按要求上传材料。</p>
      <a href="/files/jianzhang.pdf">招生简章.pdf</a></div>
    </body></html>
    """
    cfg = CrawlConfig.from_dict({"selectors": {"title": "h1.t", "date": ".meta", "content": "div.c"}})

    page = parse_detail(html, "https://zs.example.edu/info/1.htm", cfg.selectors)

    assert page.title == "关于2025年强基计划报名的通知"
    assert page.date == date(2025, 3, 5)
    assert page.content.startswith("各位考生：")
    assert "<p>" not in page.content
    assert page.attachments == [Attachment(name="招生简章.pdf", url="https://zs.example.edu/files/jianzhang.pdf")]


def test_parse_detail_falls_back_to_readability_and_page_date():
    paragraph = (
        "The admissions office announces that applications for the summer research programme open "
        "on the tenth of April, and every applicant must submit a statement, two references and a transcript. "
    )
    html = f"""
    <html><head><title>Summer programme applications open</title></head><body>
      <nav><a href="/">Home</a><a href="/about">About</a></nav>
      <div id="article">
        <p>{paragraph}</p>
        <p>{paragraph}</p>
        <p>{paragraph}</p>
        <p>Published 2025-03-05 by the admissions office.</p>
      </div>
      <footer>Copyright footer text</footer>
    </body></html>
    """

    page = parse_detail(html, "https://zs.example.edu/info/9.htm")

    assert "Summer programme applications open" in page.title
    assert "applications for the summer research programme" in page.content
    assert "Copyright footer" not in page.content
    assert page.date == date(2025, 3, 5)
    assert page.attachments == []


def test_looks_like_navigation():
    assert looks_like_navigation("招生章程 名单公示 录取查询")
    assert looks_like_navigation("网站导航")
    assert not looks_like_navigation("关于2025年强基计划报名的通知，报名时间为4月10日至4月30日。" * 5)


@pytest.mark.asyncio
async def test_enrich_attachments_confirms_candidates_with_probe():
    html = """
    <div class="content">
      <p>详情见下方附件</p>
      <a href="/download.jsp?id=3">报名表下载</a>
      <a href="/info/other.htm">相关新闻下载专区</a>
      <a href="javascript:void(0)">附件打印</a>
      <a href="/files/a.pdf">招生简章.pdf</a>
    </div>
    """
    probed = []

    async def probe(url):
        probed.append(url)
        return "download.jsp" in url

    existing = [Attachment("招生简章.pdf", "https://zs.example.edu/files/a.pdf")]
    result = await enrich_attachments(html, "https://zs.example.edu/info/1.htm", existing, probe)

    assert [a.url for a in result] == [
        "https://zs.example.edu/files/a.pdf",
        "https://zs.example.edu/download.jsp?id=3",
    ]
    assert "https://zs.example.edu/info/other.htm" not in probed


def test_row_date_fields_are_calendar_dates():
    assert get_type_hints(ListItem)["date"] == Optional[date]
    assert get_type_hints(DetailPage)["date"] == Optional[date]
    assert not hasattr(page_parser, "Day")
