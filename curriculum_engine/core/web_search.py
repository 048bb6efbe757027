"""Web search for stage context: Serper results enriched via Firecrawl or Jina."""

import re
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

import httpx

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.errors import (
    MissingRequiredFieldError,
    ProviderRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ValidationError,
)
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.stages import STAGE_CONTEXTS
from curriculum_engine.db.projects import require_project

logger = get_logger(__name__)

SERPER_ENDPOINT = "https://google.serper.dev/search"
FIRECRAWL_ENDPOINT = "https://api.firecrawl.dev/v1/scrape"
JINA_READER_BASE = "https://r.jina.ai"

SERPER_TIMEOUT = 12.0
FIRECRAWL_TIMEOUT = 15.0
JINA_TIMEOUT = 12.0

MAX_QUERY_LEN = 2000
MAX_CONTENT_LEN = 3000
MAX_K_LIMIT = 20

SCHOOL_NAME_KEY = re.compile(r"school.*name|学校名称|school_name", re.I)
REGION_KEY = re.compile(r"school_region|region|地区|城市|province|city", re.I)
MISSING_SCHOOL_MESSAGE = "请先填写学校名称（Q1）后再进行网络搜索"


def clamp_text(value: str, max_len: int) -> str:
    return value[:max_len]


def normalize_max_k(value: Any, fallback: int) -> int:
    """Coerce to an int in 1..20, else the fallback."""
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return min(MAX_K_LIMIT, max(1, parsed))


def build_jina_url(target_url: str) -> str:
    scheme = "https" if target_url.lower().startswith("https://") else "http"
    without_scheme = re.sub(r"^https?://", "", target_url, flags=re.I)
    return f"{JINA_READER_BASE}/{scheme}://{without_scheme}"


def find_field_value(data: Any, pattern: re.Pattern) -> str | None:
    """Depth-first search for the first non-blank string under a matching key."""
    if not isinstance(data, dict):
        return None
    for key, value in data.items():
        if pattern.search(str(key)) and isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            nested = find_field_value(value, pattern)
            if nested:
                return nested
    return None


def extract_school_info(
    project: dict[str, Any], stage: str, form_data: dict[str, Any] | None = None
) -> tuple[str, str]:
    """School name and region, from Q1 input first, then the current input."""
    stages = project.get("stages") or {}
    q1_input = (stages.get("Q1") or {}).get("input")
    stage_input = form_data or (stages.get(stage) or {}).get("input")

    school_name = find_field_value(q1_input, SCHOOL_NAME_KEY) or find_field_value(
        stage_input, SCHOOL_NAME_KEY
    )
    region = find_field_value(q1_input, REGION_KEY) or find_field_value(stage_input, REGION_KEY)
    return (school_name or "").strip(), (region or "").strip()


def _input_text(data: dict[str, Any] | None) -> str:
    if not isinstance(data, dict):
        return ""
    values = [v for v in data.values() if isinstance(v, str) and v.strip()]
    return " ".join(values)[:MAX_QUERY_LEN]


def _ensure_included(base: str, extra: str) -> str:
    if not extra or extra.lower() in base.lower():
        return base
    return f"{extra} {base}".strip()


def build_search_query(
    stage: str,
    query: str | None = None,
    school_name: str = "",
    region: str = "",
    input_data: dict[str, Any] | None = None,
) -> str:
    """Explicit query or stage topic + input, always mentioning school and region."""
    default_query = f"{STAGE_CONTEXTS.get(stage.upper(), '')} {_input_text(input_data)}".strip()
    result = (query or "").strip() or default_query
    result = _ensure_included(result, school_name)
    result = _ensure_included(result, region)
    return clamp_text(result, MAX_QUERY_LEN)


# =============================================================================
# Providers
# =============================================================================


async def serper_search(query: str, top_k: int) -> list[dict[str, Any]]:
    """
    Organic Google results via Serper.

    Raises:
        ValueError: If SERPER_API_KEY is not configured
        ProviderTimeoutError: Search timed out
        ProviderUnavailableError: Connection failure, 5xx or 429
        ProviderRequestError: Other HTTP errors
    """
    settings = get_settings()
    if not settings.SERPER_API_KEY:
        raise ValueError("SERPER_API_KEY not configured")

    payload: dict[str, Any] = {"q": query, "num": top_k}
    if settings.WEB_SEARCH_LANGUAGE:
        payload["hl"] = settings.WEB_SEARCH_LANGUAGE
    region = settings.WEB_SEARCH_REGION.strip()
    if re.fullmatch(r"[A-Za-z]{2}", region):
        payload["gl"] = region.lower()

    try:
        async with httpx.AsyncClient(timeout=SERPER_TIMEOUT) as client:
            response = await client.post(
                SERPER_ENDPOINT,
                headers={"X-API-KEY": settings.SERPER_API_KEY, "Content-Type": "application/json"},
                json=payload,
            )
            response.raise_for_status()
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError("Serper search timed out", provider="serper") from e
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        message = f"Serper search failed ({status}): {e.response.text[:200]}"
        if status >= 500 or status == 429:
            raise ProviderUnavailableError(message, provider="serper", status_code=status) from e
        raise ProviderRequestError(message, provider="serper", status_code=status) from e
    except httpx.RequestError as e:
        raise ProviderUnavailableError(f"Serper connection failed: {e}", provider="serper") from e

    data = response.json()
    organic = data.get("organic") if isinstance(data, dict) else None
    return organic if isinstance(organic, list) else []


async def fetch_from_firecrawl(url: str) -> str | None:
    """Page markdown via Firecrawl; None when unavailable or failed."""
    settings = get_settings()
    if not settings.FIRECRAWL_API_KEY:
        return None

    try:
        async with httpx.AsyncClient(timeout=FIRECRAWL_TIMEOUT) as client:
            response = await client.post(
                FIRECRAWL_ENDPOINT,
                headers={"Authorization": f"Bearer {settings.FIRECRAWL_API_KEY}"},
                json={"url": url, "formats": ["markdown"]},
            )
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPStatusError as e:
        logger.warning(f"Firecrawl HTTP error for {url}: {e.response.status_code}")
        return None
    except httpx.TimeoutException:
        logger.warning(f"Firecrawl timeout for {url}")
        return None
    except (httpx.RequestError, ValueError) as e:
        logger.warning(f"Firecrawl error for {url}: {e}")
        return None

    if not isinstance(data, dict) or data.get("success") is False:
        return None
    page = data.get("data") or {}
    content = page.get("markdown") or page.get("content") or page.get("text") or ""
    return clamp_text(content.strip(), MAX_CONTENT_LEN) if content.strip() else None


async def fetch_from_jina(url: str) -> str | None:
    """Page text via the Jina reader; None when unavailable or failed."""
    settings = get_settings()
    if not settings.JINA_API_KEY:
        return None

    try:
        async with httpx.AsyncClient(timeout=JINA_TIMEOUT) as client:
            response = await client.get(
                build_jina_url(url),
                headers={"Authorization": f"Bearer {settings.JINA_API_KEY}"},
            )
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.warning(f"Jina HTTP error for {url}: {e.response.status_code}")
        return None
    except httpx.TimeoutException:
        logger.warning(f"Jina timeout for {url}")
        return None
    except httpx.RequestError as e:
        logger.warning(f"Jina error for {url}: {e}")
        return None

    text = response.text.strip()
    return clamp_text(text, MAX_CONTENT_LEN) if text else None


async def enrich_results(results: list[dict[str, Any]], fetch_content: bool = True) -> list[dict[str, Any]]:
    """Replace snippets with page content: Firecrawl first, Jina as fallback."""
    if not fetch_content:
        return results

    settings = get_settings()
    enriched = []
    for item in results:
        content, provider = "", ""
        if settings.WEB_SEARCH_USE_FIRECRAWL:
            content = await fetch_from_firecrawl(item["url"]) or ""
            provider = "firecrawl" if content else ""
        if not content and settings.WEB_SEARCH_USE_JINA:
            content = await fetch_from_jina(item["url"]) or ""
            provider = "jina" if content else ""

        metadata = dict(item.get("metadata") or {})
        metadata["content_provider"] = provider or metadata.get("provider")
        enriched.append({**item, "content": content or item["content"], "metadata": metadata})
    return enriched


def normalize_organic(organic: list[dict[str, Any]], top_k: int) -> list[dict[str, Any]]:
    """Shape provider hits, drop those without url or title, dedupe by url."""
    results: dict[str, dict[str, Any]] = {}
    for idx, item in enumerate(organic):
        url = item.get("link") or item.get("url") or ""
        title = item.get("title") or item.get("name") or url
        if not url or not title or url in results:
            continue
        snippet = item.get("snippet") or item.get("description") or ""
        results[url] = {
            "id": f"web_{idx + 1}",
            "title": title,
            "url": url,
            "snippet": snippet,
            "content": snippet,
            "score": max(0.0, 1 - idx / top_k),
            "source": "Web",
            "metadata": {
                "provider": "serper",
                "position": idx + 1,
                "domain": urlparse(url).hostname or "",
                "published_at": item.get("date") or "",
            },
        }
    return list(results.values())


async def run_web_search(
    project_id: UUID | str,
    stage: str,
    query: str | None = None,
    top_k: int | None = None,
    fetch_content: bool = True,
    form_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Search the web for a stage of a project.

    Returns:
        Dict with the ``query`` sent and the ranked ``results``

    Raises:
        ValidationError: If web search is disabled
        MissingRequiredFieldError: If no school name is known yet
        NotFoundError: If the project does not exist
        TransientProviderError / ProviderRequestError: Search provider failed
    """
    settings = get_settings()
    if not settings.WEB_SEARCH_ENABLED:
        raise ValidationError("Web search is disabled")

    project = require_project(project_id)
    school_name, region = extract_school_info(project, stage, form_data)
    if not school_name:
        raise MissingRequiredFieldError(MISSING_SCHOOL_MESSAGE, field="school_name")

    stage_input = form_data or ((project.get("stages") or {}).get(stage) or {}).get("input")
    search_query = build_search_query(stage, query, school_name, region, stage_input)
    k = normalize_max_k(top_k, normalize_max_k(settings.WEB_SEARCH_MAX_K, 5))

    organic = await serper_search(search_query, k)
    results = await enrich_results(normalize_organic(organic, k), fetch_content)

    logger.info(
        f"Web search for {stage} returned {len(results)} results",
        extra={"project_id": str(project_id), "stage": stage},
    )
    return {"query": search_query, "results": results}
