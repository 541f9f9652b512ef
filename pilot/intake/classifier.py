"""Task classification — keyword fast path with an LLM fallback for ambiguous text."""

from __future__ import annotations

import logging
import re

from pilot.common.llm_client import LLMClient
from pilot.common.protocol import Classification

logger = logging.getLogger(__name__)

VALID_TASK_TYPES = (
    "research", "booking", "form", "shopping", "email",
    "reminder", "writing", "voice", "general",
)

BROWSER_TASK_TYPES = frozenset({"research", "booking", "form", "shopping"})

# First match wins, so order matters: "find a form" is research.
KEYWORD_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("research", ("research", "find", "search", "look up")),
    ("booking", ("book", "reservation", "schedule appointment")),
    ("form", ("form", "fill", "apply", "submit")),
    ("shopping", ("buy", "purchase", "order", "shop")),
    ("email", ("email", "send", "write to")),
    ("reminder", ("remind", "alert", "notify")),
    ("writing", ("write", "draft", "compose")),
    ("voice", ("call", "phone", "dial")),
]

# Keywords match at the start of a word: "shop" hits "shopping", not "workshop".
KEYWORD_PATTERNS: list[tuple[str, re.Pattern]] = [
    (task_type, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + ")"))
    for task_type, keywords in KEYWORD_RULES
]

DOMAIN_RE = re.compile(r"(?:https?://)?(?:www\.)?([a-zA-Z0-9-]+(?:\.[a-zA-Z]{2,})+)")

CLASSIFY_PROMPT = """\
Classify this user task into exactly one category. Respond with ONLY the category name, nothing else.

Categories: {categories}

Task: "{task}"
"""


def keyword_type(text: str) -> str:
    lowered = text.lower()
    for task_type, pattern in KEYWORD_PATTERNS:
        if pattern.search(lowered):
            return task_type
    return "general"


def extract_domains(text: str) -> list[str]:
    domains: list[str] = []
    for match in DOMAIN_RE.finditer(text):
        domain = match.group(1).lower()
        if "@" in text[max(0, match.start() - 1):match.start()]:
            continue  # the host part of an email address
        if domain not in domains:
            domains.append(domain)
    return domains


class TaskClassifier:
    def __init__(self, llm: LLMClient | None = None, model: str | None = None):
        self.llm = llm
        self.model = model

    async def classify(self, text: str) -> Classification:
        task_type = keyword_type(text)

        if task_type == "general" and self.llm is not None:
            task_type = await self._classify_with_llm(text) or task_type

        return Classification(
            task_type=task_type,
            goal=text.strip(),
            needs_browser=task_type in BROWSER_TASK_TYPES,
            domains=extract_domains(text),
        )

    async def _classify_with_llm(self, text: str) -> str | None:
        prompt = CLASSIFY_PROMPT.format(categories=", ".join(VALID_TASK_TYPES), task=text[:500])
        result = await self.llm.generate(
            prompt=prompt,
            system="You are a task classifier. Respond with exactly one word: the task category.",
            model=self.model,
            temperature=0.0,
            max_tokens=10,
        )
        if result.get("error"):
            logger.warning(f"Classification LLM error, keeping keyword result: {result.get('message')}")
            return None

        candidate = re.sub(r"[^a-z]", "", str(result.get("content", "")).lower())
        if candidate in VALID_TASK_TYPES:
            logger.info(f"Classification fallback chose {candidate}")
            return candidate
        logger.warning(f"Classifier returned unknown type '{candidate}'")
        return None
