from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable

import httpx

from recipe_ingest.ingest.fetch.service import FetchService
from recipe_ingest.ingest.guardrail.similarity import SimilarityDetector
from recipe_ingest.models.recipe import Ingredient, Recipe, RecipeDraft, RecipeSource
from recipe_ingest.models.task import IngestMode, IngestPayload, Task, TaskStatus, utcnow
from recipe_ingest.tools.search_provider import (
    SearchCandidate,
    SearchProviderCapabilities,
    SearchRequest,
    SearchResult,
)

PUBLIC_IP = "93.184.216.34"

PANCAKE_JSON_LD = {
    "@context": "https://schema.org",
    "@type": "Recipe",
    "name": "Fluffy Pancakes",
    "description": "Light and fluffy buttermilk pancakes for slow weekend mornings.",
    "author": {"@type": "Person", "name": "Jane Cook"},
    "recipeIngredient": ["2 cups all-purpose flour", "1 1/2 cups buttermilk", "2 large eggs"],
    "recipeInstructions": [
        {"@type": "HowToStep", "text": "Whisk the flour with the baking powder."},
        {"@type": "HowToStep", "text": "Add buttermilk and eggs, then cook on a hot griddle."},
    ],
    "prepTime": "PT10M",
    "cookTime": "PT15M",
    "recipeYield": "4 servings",
    "recipeCuisine": "American",
    "keywords": "breakfast, pancakes",
    "image": "https://example.com/pancakes.jpg",
}

PANCAKE_HTML = f"""<!DOCTYPE html>
<html lang="en">
<head>
  <title>Fluffy Pancakes | Example Kitchen</title>
  <meta name="description" content="Our favourite pancakes">
  <meta property="og:site_name" content="Example Kitchen">
  <script type="application/ld+json">{json.dumps(PANCAKE_JSON_LD)}</script>
</head>
<body>
  <nav class="site-nav">Home Recipes About</nav>
  <main>
    <h1>Fluffy Pancakes</h1>
    <p>These pancakes are a family favourite.</p>
  </main>
  <footer>Copyright Example Kitchen</footer>
</body>
</html>"""

SOUP_TEXT_HTML = """<html><head><title>Tomato Soup</title></head>
<body>
  <article>
    <h1>Grandma's Tomato Soup</h1>
    <p>A warming soup for cold evenings.</p>
    <h2>Ingredients</h2>
    <ul><li>6 ripe tomatoes</li><li>1 onion</li><li>2 cups vegetable stock</li></ul>
    <h2>Instructions</h2>
    <ol><li>Roast the tomatoes.</li><li>Simmer with onion and stock for 20 minutes.</li></ol>
  </article>
</body></html>"""

SOUP_LLM_RESPONSE = json.dumps(
    {
        "name": "Tomato Soup",
        "description": "Roasted tomato soup simmered with onion.",
        "prepTimeMinutes": 10,
        "cookTimeMinutes": 20,
        "servings": 4,
        "ingredients": [
            {"name": "tomatoes", "quantity": 6, "unit": None, "notes": "ripe"},
            {"name": "onion", "quantity": 1, "unit": None, "notes": None},
            "2 cups vegetable stock",
        ],
        "instructions": ["Roast the tomatoes until soft.", "Simmer everything for twenty minutes."],
        "cuisine": "European",
        "tags": ["soup"],
        "imageUrl": None,
    }
)


class FakeLlm:
    """Scripted completion client. Items are strings, exceptions, or callables of the messages."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        caller: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> str:
        self.calls.append(
            {
                "system": system,
                "messages": [dict(m) for m in messages],
                "caller": caller,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if not self.responses:
            raise AssertionError(f"unexpected LLM call from {caller}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(messages)
        return item


class FakeSearchProvider:
    def __init__(
        self,
        provider_id: str = "fake",
        candidates: list[SearchCandidate] | None = None,
        *,
        enabled: bool = True,
        error_code: str | None = None,
    ):
        self.provider_id = provider_id
        self.display_name = f"Fake {provider_id}"
        self._enabled = enabled
        self.candidates = candidates or []
        self.error_code = error_code
        self.requests: list[SearchRequest] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def capabilities(self) -> SearchProviderCapabilities:
        return SearchProviderCapabilities(max_results_per_request=10, rate_limit_per_minute=60)

    async def search(self, request: SearchRequest) -> SearchResult:
        self.requests.append(request)
        if self.error_code:
            return SearchResult.failed(self.provider_id, f"{self.provider_id} failed", self.error_code)
        return SearchResult.succeeded(self.provider_id, list(self.candidates))


def resolver_for(*addresses: str):
    async def resolve(host: str, port: int) -> list[str]:
        return list(addresses)

    return resolve


async def no_sleep(seconds: float, cancel=None) -> None:
    return None


def html_transport(routes: dict[str, Any] | Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
    """Serve canned pages keyed by path. Requests arrive at the pinned IP with the original Host header."""
    if callable(routes):
        return httpx.MockTransport(routes)

    def handler(request: httpx.Request) -> httpx.Response:
        body = routes.get(request.url.path)
        if body is None:
            return httpx.Response(404, text="not found")
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, text=body, headers={"content-type": "text/html; charset=utf-8"})

    return httpx.MockTransport(handler)


def make_fetch_service(transport: httpx.MockTransport, *addresses: str, **kwargs: Any) -> FetchService:
    kwargs.setdefault("respect_robots_txt", False)
    return FetchService(
        resolver=resolver_for(*(addresses or (PUBLIC_IP,))),
        transport=transport,
        sleep=no_sleep,
        **kwargs,
    )


def make_recipe(**overrides: Any) -> Recipe:
    values: dict[str, Any] = {
        "id": "recipe-1",
        "name": "Tomato Soup",
        "description": "A simple roasted tomato soup for weeknights.",
        "ingredients": [
            Ingredient(name="tomatoes", quantity=6),
            Ingredient(name="onion", quantity=1),
            Ingredient(name="vegetable stock", quantity=2, unit="cups"),
        ],
        "instructions": ["Roast the tomatoes.", "Simmer with the stock for 20 minutes."],
        "cuisine": "European",
        "prep_time_minutes": 10,
        "cook_time_minutes": 20,
        "servings": 4,
        "tags": ["soup"],
        "image_url": "https://example.com/soup.jpg",
    }
    values.update(overrides)
    return Recipe(**values)


def make_draft(url: str = "https://example.com/soup", **overrides: Any) -> RecipeDraft:
    source = RecipeSource(url=url, url_hash="hash-" + url.rsplit("/", 1)[-1], extraction_method="Llm")
    recipe = make_recipe(**overrides)
    recipe.source = source
    return RecipeDraft(recipe=recipe, source=source)


GUARDRAIL_SOURCE = (
    "Roast the ripe tomatoes on a large tray with olive oil garlic and thyme until their "
    "skins blister and the juices start to caramelize around the edges of the pan"
)
REPHRASED_DESCRIPTION = "Blistered tomatoes get a slow roast with herbs for deep flavour"


def strict_detector() -> SimilarityDetector:
    """Low thresholds so short fixtures can reach warning and violation levels."""
    return SimilarityDetector(
        token_overlap_warning=8,
        token_overlap_error=15,
        ngram_warning=0.9,
        ngram_error=0.95,
        ngram_size=5,
        min_token_length=2,
    )


def copied_draft() -> RecipeDraft:
    return make_draft(description=GUARDRAIL_SOURCE, instructions=["Blend until smooth and serve hot"])


def review_ready_task(
    draft: RecipeDraft | None = None,
    *,
    task_id: str = "task-1",
    ready_at: datetime | None = None,
) -> Task:
    draft = draft or make_draft()
    ready_at = ready_at or utcnow()
    return Task(
        task_id=task_id,
        thread_id="thread-1",
        payload=IngestPayload(mode=IngestMode.URL, url=draft.source.url),
        status=TaskStatus.REVIEW_READY,
        current_phase="ReviewReady",
        progress=100,
        result=json.dumps(draft.to_dict()),
        metadata={"reviewReadyAt": ready_at.isoformat(), "guardrailBlocked": str(draft.guardrail_blocked).lower()},
        created_at=ready_at,
        last_updated=ready_at,
    )
