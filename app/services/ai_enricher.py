"""AI enrichment of raw batch upload items (name + link -> resource fields)."""
import logging
from typing import Optional

import httpx

from app.schemas.batch_task import EnrichedResource, ResourceItem
from app.services.ai_client import ChatCompletionClient, extract_json_object
from app.services.exceptions import EnrichmentError

logger = logging.getLogger(__name__)

MAX_TAGS = 5
DEFAULT_CATEGORY_NAMES = ("Other", "General")

# Category name -> keywords looked for in the lower-cased item name
KEYWORD_CATEGORIES = (
    ("Movies", ("movie", "film", "video")),
    ("Music", ("music", "song", "album")),
    ("Software", ("software", "tool", "app")),
    ("Games", ("game",)),
    ("Learning", ("tutorial", "course", "learn")),
)

ENRICH_PROMPT = """You are a resource analysis assistant. Analyse the resource below and
produce a title, a description, the best matching category and a few tags.

Resource name: {name}
Resource link: {link}

Available categories: {categories}

Reply with JSON only:
{{
  "title": "short, clear title",
  "description": "what the resource is and who it is for",
  "category": "exactly one of the available categories",
  "tags": ["tag1", "tag2", "tag3"]
}}

Rules:
1. Keep the title concise.
2. The category must be one of the available categories.
3. Give 3 to 5 useful search tags."""


def default_category_id(category_map: dict[str, int]) -> int:
    for name in DEFAULT_CATEGORY_NAMES:
        if name in category_map:
            return category_map[name]
    return next(iter(category_map.values()), 1)


def default_enriched_resource(
    item: ResourceItem, category_map: dict[str, int]
) -> EnrichedResource:
    """Deterministic fields used when AI enrichment is skipped or fails."""
    category_id = default_category_id(category_map)
    name = item.name.lower()
    for category_name, keywords in KEYWORD_CATEGORIES:
        if any(keyword in name for keyword in keywords):
            category_id = category_map.get(category_name, category_id)
            break

    return EnrichedResource(
        title=item.name[:100],
        description=f"{item.name} - shared resource",
        link=item.link,
        category_id=category_id,
        tags=[],
    )


def enrich_resource(
    item: ResourceItem,
    category_map: dict[str, int],
    client: Optional[ChatCompletionClient],
) -> EnrichedResource:
    """
    Ask the model for title, description, category and tags of one item.

    Without a configured client the defaults are returned directly.

    Raises:
        EnrichmentError: the call failed or the reply could not be used
    """
    if client is None:
        logger.warning(f"⚠️ AI API key not configured, using defaults for '{item.name}'")
        return default_enriched_resource(item, category_map)

    prompt = ENRICH_PROMPT.format(
        name=item.name,
        link=item.link,
        categories=", ".join(category_map.keys()),
    )
    try:
        reply = client.complete(prompt, temperature=0.7, max_tokens=500)
        analysis = extract_json_object(reply)
    except (httpx.HTTPError, ValueError) as e:
        raise EnrichmentError(f"AI enrichment failed for '{item.name}': {e}") from e

    fallback = default_enriched_resource(item, category_map)
    category_id = category_map.get(analysis.get("category"), fallback.category_id)
    tags = analysis.get("tags")
    if isinstance(tags, list):
        tags = [str(tag).strip() for tag in tags if str(tag).strip()][:MAX_TAGS]
    else:
        tags = []

    return EnrichedResource(
        title=str(analysis.get("title") or item.name)[:500],
        description=str(analysis.get("description") or fallback.description),
        link=item.link,
        category_id=category_id,
        tags=tags,
    )
