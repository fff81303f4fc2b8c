"""Prompt Registry for AI calls.

Central place for every prompt template sent to the generative model.
Templates use ``str.format`` placeholders; literal braces are doubled.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PromptTemplate:
    """A prompt template with metadata."""

    key: str
    category: str
    name: str
    description: str
    template: str
    variables: list[str]

    def render(self, **values: str) -> str:
        missing = [v for v in self.variables if v not in values]
        if missing:
            raise KeyError(f"Prompt '{self.key}' is missing variables: {', '.join(missing)}")
        return self.template.format(**values)


_CATEGORIZE_BASE = """You are an expert content organizer. Analyze the following content and provide a single, most relevant category and a list of 2-4 relevant tags.

Available Categories: Work, Personal, Learning, Health, Finance, Travel, Technology, Entertainment, News, Reference.
If none of these fit well, you can suggest a new, simple, one-word category.
Tags should be lowercase, single words.

Content to analyze:
"""

DEFAULT_PROMPTS: dict[str, dict] = {
    "categorize_text": {
        "category": "enrichment",
        "name": "Categorize text",
        "description": "Category and tags for text. Also used for transcribed audio "
        "and summarized URLs.",
        "template": _CATEGORIZE_BASE + 'Type: Text Content\nContent: "{content}..."',
        "variables": ["content"],
    },
    "categorize_image": {
        "category": "enrichment",
        "name": "Categorize image",
        "description": "Category and tags for an uploaded or generated image. "
        "Sent together with the inline image.",
        "template": _CATEGORIZE_BASE
        + "Type: Image. Describe the image, then provide a category and tags for it.",
        "variables": [],
    },
    "organize": {
        "category": "organize",
        "name": "Organize all items",
        "description": "Batch categorization and prioritization of the whole collection.",
        "template": """You are an expert organizer. Given the following list of content items, please categorize each one and assign a priority from 1 (lowest) to 5 (highest).
The categories should be simple and general, like "Work", "Personal", "Learning", "Urgent", "Reference".

Content Items:
{items_json}

Please return your response as a JSON object with the key "organizedItems", which is an array of objects. Each object should have "id", "category", and "priority".""",
        "variables": ["items_json"],
    },
    "summarize_text": {
        "category": "summary",
        "name": "Summarize text",
        "description": "Concise summary of a note.",
        "template": """Please provide a concise summary of the following text. The summary should capture the key points and main ideas.

Content:
---
{content}
---""",
        "variables": ["content"],
    },
    "summarize_audio": {
        "category": "summary",
        "name": "Summarize transcript",
        "description": "Concise summary of a transcribed audio clip.",
        "template": """Please provide a concise summary of the following transcribed audio. The summary should capture the key points and main ideas.

Content:
---
{content}
---""",
        "variables": ["content"],
    },
    "summarize_url": {
        "category": "summary",
        "name": "Summarize URL",
        "description": "Summary of a web page. The model fetches the page itself "
        "through the search tool.",
        "template": "Provide a concise summary of the main content found at this URL: {url}",
        "variables": ["url"],
    },
    "transcribe_audio": {
        "category": "media",
        "name": "Transcribe audio",
        "description": "Sent with the inline audio clip.",
        "template": "Transcribe this audio.",
        "variables": [],
    },
    "analyze_image": {
        "category": "media",
        "name": "Analyze image",
        "description": "Default prompt for the on-demand image analysis.",
        "template": "Describe this image in detail.",
        "variables": [],
    },
}


def get_prompt(key: str) -> PromptTemplate:
    """Get a prompt template by key.

    Raises:
        KeyError: If the key is not registered.
    """
    data = DEFAULT_PROMPTS.get(key)
    if data is None:
        raise KeyError(f"Unknown prompt: {key}")
    return PromptTemplate(
        key=key,
        category=data["category"],
        name=data["name"],
        description=data["description"],
        template=data["template"],
        variables=list(data["variables"]),
    )


def render_prompt(key: str, **values: str) -> str:
    return get_prompt(key).render(**values)
