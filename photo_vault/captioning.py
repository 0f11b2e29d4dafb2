"""Captioning backend: caption, tags and embedding for an image via OpenAI."""

import json
import logging
from dataclasses import asdict, dataclass, field

from openai import OpenAI

from config import CAPTION_MODEL, CONTENT_TYPES, EMBEDDING_MODEL, VIBE_TAGS

logger = logging.getLogger(__name__)

ANALYZE_PROMPT = f"""
Respond ONLY with JSON:
{{
  "caption": string,
  "tags": string[],
  "colors": string[],
  "content_type": {" | ".join(f'"{t}"' for t in CONTENT_TYPES)},
  "domain_tags": string[],
  "has_people": boolean,
  "people_count": number,
  "is_screenshot": boolean,
  "vibe_tags": string[]
}}

Guidance:
- Only use "fashion" if clothing or outfits are a primary subject.
- Use "screenshot" when there is obvious UI/app/browser chrome.
- Prefer 1-3 vibe_tags chosen from: {json.dumps(VIBE_TAGS)}.
- Prefer 3-8 domain_tags that describe what is in the image (e.g. outfit, sneakers, jersey, runway, mirror selfie).
- Keep arrays small and focused. Avoid null; use empty arrays/strings/false when absent.
- Output valid JSON only.
""".strip()


@dataclass
class ImageAnalysis:
    caption: str = ""
    tags: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    content_type: str = ""
    domain_tags: list[str] = field(default_factory=list)
    has_people: bool = False
    people_count: int = 0
    is_screenshot: bool = False
    vibe_tags: list[str] = field(default_factory=list)
    embedding: list[float] | None = None

    def to_fields(self) -> dict:
        return asdict(self)


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def parse_analysis(content: str | None) -> ImageAnalysis:
    """Build an ImageAnalysis from the model's JSON reply.

    A malformed reply yields an empty analysis, which leaves the photo pending.
    """
    if not content:
        return ImageAnalysis()
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Unparseable analysis reply: %.200s", content)
        return ImageAnalysis()
    if not isinstance(parsed, dict):
        logger.warning("Analysis reply is not an object: %.200s", content)
        return ImageAnalysis()

    try:
        people_count = int(parsed.get("people_count") or 0)
    except (TypeError, ValueError):
        people_count = 0

    return ImageAnalysis(
        caption=str(parsed.get("caption") or ""),
        tags=_str_list(parsed.get("tags")),
        colors=_str_list(parsed.get("colors")),
        content_type=str(parsed.get("content_type") or ""),
        domain_tags=_str_list(parsed.get("domain_tags")),
        has_people=bool(parsed.get("has_people")),
        people_count=people_count,
        is_screenshot=bool(parsed.get("is_screenshot")),
        vibe_tags=_str_list(parsed.get("vibe_tags")),
    )


def describe(analysis: ImageAnalysis) -> str:
    """Text that the photo's embedding is computed from."""
    people = f"yes ({analysis.people_count})" if analysis.has_people else "no"
    return "\n".join([
        f"Caption: {analysis.caption}",
        f"Content type: {analysis.content_type}",
        f"Domain tags: {', '.join(analysis.domain_tags)}",
        f"Vibes: {', '.join(analysis.vibe_tags)}",
        f"Tags: {', '.join(analysis.tags)}",
        f"Colors: {', '.join(analysis.colors)}",
        f"Has people: {people}",
        f"Is screenshot: {'yes' if analysis.is_screenshot else 'no'}",
    ])


def describe_row(row: dict) -> str:
    """Shorter description used when re-embedding after a tag edit."""
    return "\n".join([
        f"Caption: {row.get('caption') or ''}",
        f"Tags: {', '.join(row.get('tags') or [])}",
        f"Colors: {', '.join(row.get('colors') or [])}",
    ])


class Captioner:
    def __init__(self, openai_client: OpenAI | None = None):
        self._openai = openai_client or OpenAI()

    def analyze(self, image_url: str) -> ImageAnalysis:
        """Caption and tag one image. API errors propagate to the caller."""
        completion = self._openai.chat.completions.create(
            model=CAPTION_MODEL,
            response_format={"type": "json_object"},
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYZE_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
        )
        return parse_analysis(completion.choices[0].message.content)

    def embed(self, text: str) -> list[float]:
        response = self._openai.embeddings.create(model=EMBEDDING_MODEL, input=text)
        if not response.data:
            raise ValueError("Embedding response had no data")
        return list(response.data[0].embedding)
