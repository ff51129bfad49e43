#!/usr/bin/env python3
"""
Utility classes and functions shared across the pipeline.

Includes the launch-interval rate limiter, HTML sanitizing and plain-text conversion
used for article snapshots, tolerant JSON extraction from model output, and the
resource-name normalization that lets mentions of the same tool merge.
"""

from asyncio import Lock, sleep
from time import monotonic
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urljoin, urlparse
import json
import re

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger
from errors import MalformedLLMResponseError

logger = get_logger("utils")


class RateLimiter:
    """Enforces a minimum interval between successive acquisitions.

    Independent of any concurrency cap: callers may hold a semaphore and still
    be spaced out in time by this limiter.
    """

    def __init__(self, requests_per_minute: float = 0, min_interval: Optional[float] = None):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum acquisitions per minute. 0 disables limiting.
            min_interval: Explicit spacing in seconds; overrides requests_per_minute.
        """
        if min_interval is not None:
            self.min_interval = max(float(min_interval), 0.0)
        else:
            self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0.0
        self.last_request_time: Optional[float] = None
        self._lock = Lock()

    async def acquire(self) -> None:
        """Wait until at least ``min_interval`` seconds have passed since the previous acquisition."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            if self.last_request_time is not None:
                elapsed = monotonic() - self.last_request_time
                if elapsed < self.min_interval:
                    wait_time = self.min_interval - elapsed
                    logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                    await sleep(wait_time)
            self.last_request_time = monotonic()


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to ``max_length`` characters, appending ``suffix`` when cut.

    The suffix is appended after the kept characters, so the result may be longer
    than ``max_length`` by ``len(suffix)``; prompt builders rely on the full
    ``max_length`` characters of content being preserved.
    """
    if not text or len(text) <= max_length:
        return text or ""
    return text[:max_length] + suffix


def format_duration(seconds: float) -> str:
    """Format a duration in seconds as e.g. "1h 23m 45s"."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def redact_proxy_url(proxy_url: Optional[str]) -> Optional[str]:
    """Provide a credential-free proxy identifier for logging."""
    if not proxy_url:
        return None
    try:
        parsed = urlparse(proxy_url)
        if parsed.scheme and parsed.hostname:
            host = parsed.hostname
            if parsed.port:
                host = f"{host}:{parsed.port}"
            return f"{parsed.scheme}://{host}"
    except ValueError:
        pass
    return proxy_url


# HTML -> Markdown -> plain text

MD_CODE_BLOCK_PATTERN = re.compile(r'```[^\n]*\n?(.*?)```', re.DOTALL)
MD_IMAGE_PATTERN = re.compile(r'!\[[^\]]*\]\([^)]*\)')
MD_LINK_PATTERN = re.compile(r'\[([^\]]+)\]\([^)]*\)')
MD_HEADING_PATTERN = re.compile(r'^#+\s+', re.MULTILINE)
MD_EMPHASIS_PATTERN = re.compile(r'(?<!\\)(\*\*|__|\*|~~|`)')
MD_LIST_PATTERN = re.compile(r'^\s*[-*+]\s+', re.MULTILINE)
MD_NUMBERED_LIST_PATTERN = re.compile(r'^\s*\d+\.\s+', re.MULTILINE)
MD_BLOCKQUOTE_PATTERN = re.compile(r'^>\s?', re.MULTILINE)
MD_ESCAPE_PATTERN = re.compile(r'\\([\\`*_{}\[\]()#+\-.!>])')


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    - Removes dangerous and non-content elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src against ``base_url``; without one, non-absolute
      links become ``#`` and non-absolute images are dropped
    """
    if not html_content:
        return ""

    try:
        soup = BeautifulSoup(html_content, 'html.parser')

        for tag in soup([
            "script", "style", "iframe", "form", "object", "embed", "noscript",
            "frame", "frameset", "applet", "meta", "base", "link", "svg"
        ]):
            tag.decompose()

        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                if attr.lower().startswith('on'):
                    del tag[attr]
                elif attr.lower() in ('href', 'src') and str(tag[attr]).lower().startswith('javascript:'):
                    del tag[attr]

        for img in soup.find_all('img'):
            src = img.get('src', '')
            if re.search(r'(pixel|tracker|counter|spacer|blank|trans)', src, re.I) or \
               (re.search(r'\.(gif|png)$', src, re.I) and (img.get('height') in ('0', '1'))):
                img.decompose()

        for tag in soup.find_all(['a', 'img']):
            for attr in ('href', 'src'):
                if not tag.has_attr(attr) or not tag[attr]:
                    continue
                value = str(tag[attr])
                if value.startswith(('http://', 'https://', 'mailto:')):
                    continue
                resolved = urljoin(base_url, value) if base_url else None
                if resolved and resolved.startswith(('http://', 'https://')):
                    tag[attr] = resolved
                elif attr == 'href':
                    tag[attr] = '#'
                else:
                    del tag[attr]

        # wrap_width=0 keeps long URLs on one line
        return md(str(soup), heading_style="ATX", wrap_width=0)
    except Exception as e:
        logger.error(f"Error cleaning HTML to Markdown: {e}")
        return html_content


def markdown_to_plain_text(markdown_text: str) -> str:
    """Convert Markdown to plain text by removing formatting elements."""
    if not markdown_text:
        return ""

    text = MD_CODE_BLOCK_PATTERN.sub(r'\1', markdown_text)
    text = MD_IMAGE_PATTERN.sub('', text)
    text = MD_LINK_PATTERN.sub(r'\1', text)
    text = MD_HEADING_PATTERN.sub('', text)
    text = MD_EMPHASIS_PATTERN.sub('', text)
    text = MD_LIST_PATTERN.sub('', text)
    text = MD_NUMBERED_LIST_PATTERN.sub('', text)
    text = MD_BLOCKQUOTE_PATTERN.sub('', text)
    text = MD_ESCAPE_PATTERN.sub(r'\1', text)

    text = re.sub(r'[ \t]+\n', '\n', text)
    text = re.sub(r'[ \t]{2,}', ' ', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


def html_to_plain_text(html_content: Optional[str], base_url: Optional[str] = None) -> str:
    """Convert an article body (HTML or already-plain text) into a plain-text snapshot."""
    if not html_content:
        return ""
    if '<' not in html_content:
        return re.sub(r'\n{3,}', '\n\n', html_content).strip()
    return markdown_to_plain_text(clean_html_to_markdown(html_content, base_url=base_url))


# Tolerant JSON extraction

TRAILING_COMMA_PATTERN = re.compile(r',\s*([}\]])')


def _scan_balanced_object(text: str, start: int) -> Optional[str]:
    """Return the balanced ``{...}`` starting at ``start``, honoring JSON string escapes."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json_object(text: Optional[str], required_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Extract the first balanced JSON object from free-form model output.

    Prose, code fences and trailing commas around or inside the object are tolerated.
    When ``required_keys`` is given, objects lacking any of them are skipped.

    Raises:
        MalformedLLMResponseError: no parseable object with the required keys was found.
    """
    if not text or not text.strip():
        raise MalformedLLMResponseError("Empty LLM response", raw=text or "")

    required = tuple(required_keys)
    pos = text.find('{')
    while pos != -1:
        candidate = _scan_balanced_object(text, pos)
        if candidate:
            for attempt in (candidate, TRAILING_COMMA_PATTERN.sub(r'\1', candidate)):
                try:
                    obj = json.loads(attempt)
                except ValueError:
                    continue
                if isinstance(obj, dict) and all(k in obj for k in required):
                    return obj
                break
        pos = text.find('{', pos + 1)

    if required:
        message = f"Failed to parse LLM response: no JSON object with keys {', '.join(required)}"
    else:
        message = "Failed to parse LLM response: no JSON object found"
    raise MalformedLLMResponseError(message, raw=text)


# Resource-name normalization

KNOWN_COMPANIES = (
    "Anthropic", "OpenAI", "Google", "Google DeepMind", "DeepMind", "Microsoft", "Meta",
    "Facebook", "Amazon", "AWS", "Apple", "NVIDIA", "IBM", "Oracle", "Intel", "AMD",
    "Mistral", "Mistral AI", "Cohere", "Hugging Face", "HuggingFace", "xAI", "DeepSeek",
    "Alibaba", "Baidu", "Tencent", "ByteDance", "Moonshot", "Zhipu", "Stability AI",
    "GitHub", "GitLab", "Vercel", "Netlify", "Cloudflare", "HashiCorp", "JetBrains",
    "Docker", "Mozilla", "Adobe", "Salesforce", "Shopify", "Stripe", "Databricks",
    "Snowflake", "MongoDB", "Elastic", "Redis", "Supabase", "Perplexity", "Replit",
)

_COMPANY_ALTERNATION = "|".join(
    re.escape(name) for name in sorted(KNOWN_COMPANIES, key=len, reverse=True)
)

RESOURCE_SUFFIX_PATTERNS = (
    re.compile(rf"\s+by\s+(?:{_COMPANY_ALTERNATION})\s*$", re.IGNORECASE),
    re.compile(rf"\s+from\s+(?:{_COMPANY_ALTERNATION})\s*$", re.IGNORECASE),
    re.compile(rf"\s*\(\s*(?:by\s+|from\s+)?(?:{_COMPANY_ALTERNATION})\s*\)\s*$", re.IGNORECASE),
    re.compile(rf"\s+[-\u2013\u2014|]\s+(?:{_COMPANY_ALTERNATION})\s*$", re.IGNORECASE),
    re.compile(rf"^(?:{_COMPANY_ALTERNATION})['\u2019]s\s+", re.IGNORECASE),
)


def normalize_resource_name(name: Optional[str]) -> str:
    """Strip known company qualifiers so "Claude by Anthropic" and "Claude" share a key.

    Best-effort: only the companies in KNOWN_COMPANIES are recognized.
    """
    if not name:
        return ""
    normalized = re.sub(r'\s+', ' ', str(name)).strip()
    changed = True
    while changed:
        changed = False
        for pattern in RESOURCE_SUFFIX_PATTERNS:
            stripped = pattern.sub('', normalized).strip()
            if stripped and stripped != normalized:
                normalized = stripped
                changed = True
    return normalized
