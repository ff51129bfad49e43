#!/usr/bin/env python3
"""
Two-phase LLM analysis of one feed's batch of articles.

Phase filter sends the whole batch in a single call and classifies every article as
interesting or not. Phase summarize then makes one call per interesting article to
get a summary, topic tags and the technical resources it mentions. Tags and resources
are persisted as they are extracted; resource names are normalized so repeated
mentions merge into one row.

Failure policy:
  - The filter phase is all-or-nothing: an unusable response raises and nothing is recorded.
  - A failed summarize call falls back to a plain summary call; if that fails too the
    article keeps its filter outcome without a summary.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from jinja2 import Environment, StrictUndefined, Template

from config import config, get_logger, _safe_read_yaml
from errors import DatabaseError, LLMRequestError, MalformedLLMResponseError, RSSInsightError
from llm_client import LLMClient, TokenUsage
from models import RELEVANCE_LEVELS, RESOURCE_TYPES
from telemetry import trace_span
from utils import extract_json_object, html_to_plain_text, normalize_resource_name, truncate_string

logger = get_logger("analyzer")

PHASE_FILTER = "filter"
PHASE_SUMMARIZE = "summarize"

REQUIRED_PROMPTS = ("filter", "summarize", "simple_summary", "merge_description")


@dataclass
class AnalysisProgress:
    phase: str
    current: int
    total: int
    article_title: Optional[str] = None
    tokens: TokenUsage = field(default_factory=TokenUsage)


ProgressCallback = Callable[[AnalysisProgress], None]


@dataclass
class ExtractedResource:
    name: str
    type: str
    url: Optional[str] = None
    github_url: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    relevance: str = "mentioned"
    context: Optional[str] = None


@dataclass
class SummaryPayload:
    summary: str
    key_points: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    resources: List[ExtractedResource] = field(default_factory=list)


@dataclass
class AnalysisResult:
    article_id: int
    is_interesting: bool
    reason: str = ""
    is_newsletter: bool = False
    summary: Optional[str] = None
    key_points: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    resources: Optional[List[ExtractedResource]] = None
    error: Optional[str] = None


def load_prompts(prompt_path: Optional[str] = None) -> Dict[str, Dict[str, str]]:
    """Load prompt templates from prompt.yaml."""
    prompts = _safe_read_yaml(prompt_path or config.PROMPT_CONFIG_PATH)
    if not isinstance(prompts, dict):
        logger.error(f"Prompt configuration at {prompt_path or config.PROMPT_CONFIG_PATH} is missing or invalid")
        return {}
    return prompts


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return False


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


class ArticleAnalyzer:
    """Filters, summarizes and extracts resources for batches of articles."""

    def __init__(self, db, llm: Optional[LLMClient] = None, prompts: Optional[Dict[str, Dict[str, str]]] = None) -> None:
        self.db = db
        self.llm = llm
        self.prompts = prompts if prompts is not None else load_prompts()
        self._env = Environment(undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True, autoescape=False)
        self._templates: Dict[str, Template] = {}
        missing = [name for name in REQUIRED_PROMPTS if name not in self.prompts]
        if missing:
            logger.error(f"Prompt configuration is missing: {', '.join(missing)}")

    async def _get_llm(self) -> LLMClient:
        if self.llm is None:
            self.llm = await LLMClient.from_config(self.db)
        return self.llm

    def _messages(self, name: str, /, **context) -> List[Dict[str, str]]:
        prompt = self.prompts.get(name)
        if not isinstance(prompt, dict) or not prompt.get("user"):
            raise RSSInsightError(f"Prompt '{name}' is missing from the prompt configuration")
        if name not in self._templates:
            self._templates[name] = self._env.from_string(prompt["user"])
        messages = []
        if prompt.get("system"):
            messages.append({"role": "system", "content": prompt["system"].strip()})
        messages.append({"role": "user", "content": self._templates[name].render(**context).strip()})
        return messages

    @trace_span(
        "analyzer.analyze_articles",
        tracer_name="analyzer",
        attr_from_args=lambda self, articles, want_summary=True, on_progress=None, token_usage=None: {
            "articles.count": len(articles or []),
            "analysis.want_summary": bool(want_summary),
        },
    )
    async def analyze_articles(
        self,
        articles: List[Dict[str, Any]],
        want_summary: bool = True,
        on_progress: Optional[ProgressCallback] = None,
        token_usage: Optional[TokenUsage] = None,
    ) -> List[AnalysisResult]:
        """Analyze one batch and persist the outcome of every classified article.

        Raises:
            LLMNotConfiguredError: LLM settings are incomplete (before any request).
            LLMRequestError / MalformedLLMResponseError: the filter phase failed.
        """
        if not articles:
            return []
        await self._get_llm()
        usage = token_usage if token_usage is not None else TokenUsage()

        await self._ensure_snapshots(articles)
        results = await self.filter_articles(articles, usage, on_progress)

        by_id = {article["id"]: article for article in articles}
        to_summarize = [r for r in results if r.is_interesting] if want_summary else []
        if to_summarize and on_progress:
            on_progress(AnalysisProgress(PHASE_SUMMARIZE, 0, len(to_summarize), tokens=replace(usage)))

        done = 0
        for result in results:
            article = by_id[result.article_id]
            if want_summary and result.is_interesting:
                await self._summarize_into(result, article, usage)
                done += 1
                if on_progress:
                    on_progress(AnalysisProgress(
                        PHASE_SUMMARIZE, done, len(to_summarize),
                        article_title=(article.get("title") or "")[:50],
                        tokens=replace(usage),
                    ))
            await self.db.execute(
                'update_article_analysis',
                article_id=result.article_id,
                is_interesting=result.is_interesting,
                reason=result.reason,
                summary=result.summary,
            )
        return results

    async def _ensure_snapshots(self, articles: List[Dict[str, Any]]) -> None:
        """Give every article a plain-text snapshot so prompts never carry raw markup."""
        for article in articles:
            if article.get("text_snapshot") or not article.get("content"):
                continue
            text = html_to_plain_text(article["content"], base_url=article.get("link"))
            if text:
                await self.db.execute('save_article_snapshot', article_id=article["id"], text=text)
                article["text_snapshot"] = text

    async def filter_articles(
        self,
        articles: List[Dict[str, Any]],
        token_usage: TokenUsage,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[AnalysisResult]:
        """Classify the whole batch in one call. Results follow the input order."""
        total = len(articles)
        if on_progress:
            on_progress(AnalysisProgress(PHASE_FILTER, 0, total, tokens=replace(token_usage)))

        preferences = await self.db.execute('get_all_preferences')
        messages = self._messages(
            "filter",
            interests=[p for p in preferences if p["type"] == "interest"],
            ignores=[p for p in preferences if p["type"] == "ignore"],
            articles=[
                {
                    "id": article["id"],
                    "title": article.get("title") or "Untitled",
                    "content": truncate_string(article.get("text_snapshot") or "", config.FILTER_CONTENT_CHARS),
                }
                for article in articles
            ],
        )
        text = await self.llm.complete(messages, purpose="filter", token_usage=token_usage)
        data = extract_json_object(text, required_keys=("results",))
        entries = data.get("results")
        if not isinstance(entries, list):
            raise MalformedLLMResponseError("Failed to parse LLM response: 'results' is not a list", raw=text)

        batch_ids = {article["id"] for article in articles}
        classified: Dict[int, AnalysisResult] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                article_id = int(entry.get("id"))
            except (TypeError, ValueError):
                logger.warning(f"Filter result without a usable id: {entry!r}")
                continue
            if article_id not in batch_ids or article_id in classified:
                continue
            classified[article_id] = AnalysisResult(
                article_id=article_id,
                is_interesting=_as_bool(entry.get("interesting")),
                reason=_as_str(entry.get("reason")) or "",
                is_newsletter=_as_bool(entry.get("isNewsletter")),
            )

        if not classified:
            raise MalformedLLMResponseError("Failed to parse LLM response: no result matched the batch", raw=text)
        if len(classified) < total:
            logger.warning(f"Filter classified {len(classified)} of {total} articles; the rest stay unanalyzed")

        if on_progress:
            on_progress(AnalysisProgress(PHASE_FILTER, total, total, tokens=replace(token_usage)))
        return [classified[a["id"]] for a in articles if a["id"] in classified]

    async def _summarize_into(self, result: AnalysisResult, article: Dict[str, Any], token_usage: TokenUsage) -> None:
        try:
            payload = await self.summarize_and_extract(article, result.is_newsletter, token_usage)
        except (LLMRequestError, MalformedLLMResponseError) as e:
            logger.warning(f"Summarize failed for article {article['id']}: {e}; falling back to simple summary")
            result.error = str(e)
            try:
                result.summary = await self.simple_summary(article, token_usage)
            except LLMRequestError as fallback_error:
                logger.warning(f"Simple summary failed for article {article['id']}: {fallback_error}")
            return

        result.summary = payload.summary
        result.key_points = payload.key_points
        result.tags = payload.tags
        result.resources = payload.resources
        await self._persist_extraction(article["id"], payload, token_usage)

    async def summarize_and_extract(
        self,
        article: Dict[str, Any],
        is_newsletter: bool,
        token_usage: TokenUsage,
    ) -> SummaryPayload:
        """Request a structured summary plus resources for one article."""
        content = truncate_string(
            article.get("text_snapshot") or article.get("content") or "(no content)",
            config.SUMMARY_CONTENT_CHARS,
            "...(content truncated)",
        )
        messages = self._messages(
            "summarize",
            title=article.get("title") or "Untitled",
            content=content,
            is_newsletter=is_newsletter,
        )
        text = await self.llm.complete(messages, purpose="summarize", token_usage=token_usage)
        data = extract_json_object(text, required_keys=("summary",))
        summary = _as_str(data.get("summary"))
        if not summary:
            raise MalformedLLMResponseError("Failed to parse LLM response: empty summary", raw=text)

        raw_resources = data.get("resources")
        if raw_resources is not None and not isinstance(raw_resources, list):
            logger.warning(f"Ignoring non-list resources in summary for article {article['id']}: {type(raw_resources).__name__}")
            raw_resources = None
        resources = []
        for item in raw_resources or []:
            resource = self._parse_resource(item)
            if resource:
                resources.append(resource)
        return SummaryPayload(
            summary=summary,
            key_points=_as_str_list(data.get("keyPoints")),
            tags=[t.lower() for t in _as_str_list(data.get("articleTags"))],
            resources=resources,
        )

    def _parse_resource(self, item: Any) -> Optional[ExtractedResource]:
        if not isinstance(item, dict):
            return None
        name = normalize_resource_name(_as_str(item.get("name")))
        if not name:
            return None
        resource_type = (_as_str(item.get("type")) or "other").lower()
        relevance = (_as_str(item.get("relevance")) or "mentioned").lower()
        return ExtractedResource(
            name=name,
            type=resource_type if resource_type in RESOURCE_TYPES else "other",
            url=_as_str(item.get("url")),
            github_url=_as_str(item.get("github_url")),
            description=_as_str(item.get("description")),
            tags=[t.lower() for t in _as_str_list(item.get("tags"))],
            relevance=relevance if relevance in RELEVANCE_LEVELS else "mentioned",
            context=_as_str(item.get("context")),
        )

    async def _persist_extraction(self, article_id: int, payload: SummaryPayload, token_usage: TokenUsage) -> None:
        """Store article tags, merge resources, and link the ones the article is about."""
        for tag_name in payload.tags:
            try:
                tag = await self.db.execute('get_or_create_tag', name=tag_name, category="topic")
                await self.db.execute('link_article_tag', article_id=article_id, tag_id=tag["id"], source="llm", confidence=1.0)
            except DatabaseError as e:
                logger.warning(f"Could not tag article {article_id} with {tag_name!r}: {e}")

        for extracted in payload.resources:
            try:
                resource = await self.add_or_update_resource_with_merge(extracted, token_usage)
                if extracted.relevance == "main":
                    await self.db.execute(
                        'link_article_resource',
                        article_id=article_id,
                        resource_id=resource["id"],
                        context=extracted.context,
                        relevance="main",
                    )
                for tag_name in extracted.tags:
                    tag = await self.db.execute('get_or_create_tag', name=tag_name, category="tech")
                    await self.db.execute('link_resource_tag', resource_id=resource["id"], tag_id=tag["id"])
            except DatabaseError as e:
                logger.warning(f"Could not store resource {extracted.name!r} for article {article_id}: {e}")

    async def add_or_update_resource_with_merge(self, extracted: ExtractedResource, token_usage: TokenUsage) -> Dict[str, Any]:
        """Create the resource, or count a re-sighting and merge differing descriptions."""
        mention = await self.db.execute(
            'record_resource_mention',
            name=extracted.name,
            type=extracted.type,
            url=extracted.url,
            github_url=extracted.github_url,
            description=extracted.description,
            tags=extracted.tags,
        )
        resource = mention["resource"]
        old_description = (mention["previous_description"] or "").strip()
        new_description = (extracted.description or "").strip()
        if old_description and new_description and old_description != new_description:
            try:
                merged = await self.merge_descriptions(
                    resource["name"], resource["type"], old_description, new_description, token_usage
                )
                if merged != old_description:
                    await self.db.execute('update_resource_description', resource_id=resource["id"], description=merged)
                    resource["description"] = merged
            except LLMRequestError as e:
                logger.warning(f"Description merge failed for {resource['name']!r}; keeping existing: {e}")
        return resource

    async def merge_descriptions(
        self,
        name: str,
        resource_type: str,
        existing: str,
        new: str,
        token_usage: Optional[TokenUsage] = None,
    ) -> str:
        messages = self._messages("merge_description", name=name, type=resource_type, existing=existing, new=new)
        text = await (await self._get_llm()).complete(messages, purpose="merge_description", token_usage=token_usage)
        return text.strip().strip('"').strip() or existing

    async def simple_summary(self, article: Dict[str, Any], token_usage: Optional[TokenUsage] = None) -> str:
        content = truncate_string(
            article.get("text_snapshot") or article.get("content") or "(no content)",
            config.SUMMARY_CONTENT_CHARS,
            "...(content truncated)",
        )
        messages = self._messages("simple_summary", title=article.get("title") or "Untitled", content=content)
        text = await (await self._get_llm()).complete(messages, purpose="simple_summary", token_usage=token_usage)
        return text.strip()
