"""Web 工具：web_search（Brave Search API）与 web_fetch。"""

import html
import json
import os
import re
from typing import Any
from urllib.parse import urlparse

import httpx

from relaybot.agent.tools.base import Tool

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_7_2) AppleWebKit/537.36 relaybot"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
MAX_REDIRECTS = 5


def _strip_tags(text: str) -> str:
    """去掉 HTML 标签（以及 script/style 内容）并反转义实体。"""
    text = re.sub(r"<script[\s\S]*?</script>", "", text, flags=re.I)
    text = re.sub(r"<style[\s\S]*?</style>", "", text, flags=re.I)
    text = re.sub(r"<[^>]+>", "", text)
    return html.unescape(text).strip()


def _normalize(text: str) -> str:
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _validate_url(url: str) -> tuple[bool, str]:
    try:
        parsed = urlparse(url)
    except ValueError as e:
        return False, str(e)
    if parsed.scheme not in ("http", "https"):
        return False, f"只允许 http/https，得到的是 '{parsed.scheme or '无'}'"
    if not parsed.netloc:
        return False, "缺少域名"
    return True, ""


class WebSearchTool(Tool):
    """使用 Brave Search API 搜索网络。"""
    
    def __init__(self, api_key: str | None = None, max_results: int = 5):
        self.api_key = api_key or os.environ.get("BRAVE_API_KEY", "")
        self.max_results = max_results
    
    @property
    def name(self) -> str:
        return "web_search"
    
    @property
    def description(self) -> str:
        return "搜索网络。返回标题、URL 和摘要。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "搜索查询"},
                "count": {"type": "integer", "description": "结果数量（1-10）", "minimum": 1, "maximum": 10},
            },
            "required": ["query"],
        }
    
    async def execute(self, query: str, count: int | None = None, **kwargs: Any) -> str:
        if not self.api_key:
            return "错误：未配置 BRAVE_API_KEY"
        n = min(max(count or self.max_results, 1), 10)
        async with httpx.AsyncClient(timeout=10.0) as client:
            r = await client.get(
                BRAVE_SEARCH_URL,
                params={"q": query, "count": n},
                headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
            )
            r.raise_for_status()
        
        results = r.json().get("web", {}).get("results", [])
        if not results:
            return f"没有找到关于 {query} 的结果"
        lines = [f"{query} 的搜索结果：\n"]
        for i, item in enumerate(results[:n], 1):
            lines.append(f"{i}. {item.get('title', '')}\n   {item.get('url', '')}")
            if item.get("description"):
                lines.append(f"   {_strip_tags(item['description'])}")
        return "\n".join(lines)


class WebFetchTool(Tool):
    """获取 URL 并提取可读文本。"""
    
    def __init__(self, max_chars: int = 50_000):
        self.max_chars = max_chars
    
    @property
    def name(self) -> str:
        return "web_fetch"
    
    @property
    def description(self) -> str:
        return "获取 URL 并提取可读内容（HTML 转为纯文本）。"
    
    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "要获取的 URL"},
                "max_chars": {"type": "integer", "minimum": 100},
            },
            "required": ["url"],
        }
    
    async def execute(self, url: str, max_chars: int | None = None, **kwargs: Any) -> str:
        ok, error = _validate_url(url)
        if not ok:
            return json.dumps({"error": f"URL 校验失败：{error}", "url": url}, ensure_ascii=False)
        limit = max_chars or self.max_chars
        
        async with httpx.AsyncClient(
            follow_redirects=True, max_redirects=MAX_REDIRECTS, timeout=30.0
        ) as client:
            r = await client.get(url, headers={"User-Agent": USER_AGENT})
            r.raise_for_status()
        
        ctype = r.headers.get("content-type", "")
        if "application/json" in ctype:
            text, extractor = json.dumps(r.json(), indent=2, ensure_ascii=False), "json"
        elif "text/html" in ctype or r.text[:256].lower().lstrip().startswith(("<!doctype", "<html")):
            text, extractor = _normalize(_strip_tags(r.text)), "html"
        else:
            text, extractor = r.text, "raw"
        
        truncated = len(text) > limit
        return json.dumps({
            "url": url,
            "final_url": str(r.url),
            "status": r.status_code,
            "extractor": extractor,
            "truncated": truncated,
            "length": min(len(text), limit),
            "text": text[:limit],
        }, ensure_ascii=False)
